"""Runtime configuration for the sync service.

Settings come from environment variables. A ``.env`` file at the repository
root is loaded first if it exists.

Variables:
- LEDGER_CONNECTOR: Registered connector type ("accounting_api" or "memory")
- LEDGER_API_BASE_URL / LEDGER_TOKEN_URL: Ledger API and OAuth token endpoints
- LEDGER_CLIENT_ID / LEDGER_CLIENT_SECRET: OAuth client credentials
- LEDGER_TENANT_ID: Ledger organisation the connection is scoped to
- LEDGER_INTEGRATION_ID: Key the stored tokens and run locks are held under
- TOKEN_ENCRYPTION_KEY / TOKEN_STORE_PATH: Encrypted token storage
- SYNC_DB_PATH: SQLite database holding local records, sync state and log
- SYNC_PAGE_SIZE, SYNC_TOKEN_REFRESH_MINUTES, SYNC_LOOP_WINDOW_SECONDS,
  SYNC_MAX_RETRIES, SYNC_HEARTBEAT_SECONDS: Engine tuning
- LOG_LEVEL / LOG_JSON: Logging
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SyncSettings:
    """Service configuration."""
    connector: str = "memory"
    api_base_url: str = "https://api.xero.com/api.xro/2.0"
    token_url: str = "https://identity.xero.com/connect/token"
    client_id: str = ""
    client_secret: str = ""
    tenant_id: Optional[str] = None
    integration_id: str = "default"

    token_encryption_key: Optional[str] = None
    token_store_path: Optional[str] = None
    db_path: str = str(REPO_ROOT / "data" / "sync.db")

    page_size: int = 100
    token_refresh_minutes: int = 10
    loop_window_seconds: int = 900
    max_retries: int = 3
    rate_limit_budget: int = 20
    heartbeat_seconds: int = 15

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from the process environment."""
        defaults = cls()
        return cls(
            connector=os.getenv("LEDGER_CONNECTOR", defaults.connector).lower(),
            api_base_url=os.getenv("LEDGER_API_BASE_URL", defaults.api_base_url),
            token_url=os.getenv("LEDGER_TOKEN_URL", defaults.token_url),
            client_id=os.getenv("LEDGER_CLIENT_ID", ""),
            client_secret=os.getenv("LEDGER_CLIENT_SECRET", ""),
            tenant_id=os.getenv("LEDGER_TENANT_ID") or None,
            integration_id=os.getenv("LEDGER_INTEGRATION_ID", defaults.integration_id),
            token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY") or None,
            token_store_path=os.getenv("TOKEN_STORE_PATH") or None,
            db_path=os.getenv("SYNC_DB_PATH", defaults.db_path),
            page_size=_env_int("SYNC_PAGE_SIZE", defaults.page_size),
            token_refresh_minutes=_env_int("SYNC_TOKEN_REFRESH_MINUTES", defaults.token_refresh_minutes),
            loop_window_seconds=_env_int("SYNC_LOOP_WINDOW_SECONDS", defaults.loop_window_seconds),
            max_retries=_env_int("SYNC_MAX_RETRIES", defaults.max_retries),
            rate_limit_budget=_env_int("SYNC_RATE_LIMIT_BUDGET", defaults.rate_limit_budget),
            heartbeat_seconds=_env_int("SYNC_HEARTBEAT_SECONDS", defaults.heartbeat_seconds),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            log_json=_env_bool("LOG_JSON", defaults.log_json),
        )
