"""Retry wrapper for ledger connectors.

Retries TransientNetworkError on entity calls with bounded exponential
backoff. Token refresh is attempted once and never replayed. Rate
limits and auth failures are passed through so the caller can decide
(the orchestrator sleeps on rate limits at run level, auth aborts the run).
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from connectors.ledger_base import (
    LedgerPage,
    RemoteLedgerClient,
    TokenSet,
    TransientNetworkError,
)
from core.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


class RetryingLedgerClient(RemoteLedgerClient):
    """Wraps a RemoteLedgerClient and retries transient failures.

    Usage:
        client = RetryingLedgerClient(AccountingApiConnector(config), RetryConfig(max_retries=5))
    """

    def __init__(
        self,
        inner: RemoteLedgerClient,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        super().__init__(inner.config)
        self.inner = inner
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self.connector_type = inner.connector_type

    async def _call(self, operation: str, func, *args):
        retry_config = self.retry_config
        for attempt in range(retry_config.max_retries + 1):
            try:
                return await func(*args)
            except TransientNetworkError as e:
                if attempt >= retry_config.max_retries:
                    logger.error(
                        f"{operation} failed after {retry_config.max_retries} retries: {e}"
                    )
                    raise
                delay = retry_config.get_delay(attempt)
                logger.warning(
                    f"{operation} failed with {type(e).__name__}: {e}, "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})"
                )
                await self._sleep(delay)

    def set_access_token(self, token: TokenSet) -> None:
        super().set_access_token(token)
        self.inner.set_access_token(token)

    async def list_entities(
        self,
        entity_type: str,
        cursor: Optional[str] = None,
        modified_since: Optional[datetime] = None,
    ) -> LedgerPage:
        return await self._call(
            f"list {entity_type}", self.inner.list_entities, entity_type, cursor, modified_since
        )

    async def get_entity(self, entity_type: str, remote_id: str) -> Optional[Dict[str, Any]]:
        return await self._call(f"get {entity_type}", self.inner.get_entity, entity_type, remote_id)

    async def create_entity(self, entity_type: str, payload: Dict[str, Any]) -> str:
        return await self._call(
            f"create {entity_type}", self.inner.create_entity, entity_type, payload
        )

    async def update_entity(self, entity_type: str, remote_id: str, payload: Dict[str, Any]) -> None:
        await self._call(
            f"update {entity_type}", self.inner.update_entity, entity_type, remote_id, payload
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await self.inner.refresh_token(refresh_token)

    async def close(self) -> None:
        await self.inner.close()
