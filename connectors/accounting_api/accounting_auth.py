"""OAuth 2.0 token endpoint client for the accounting API.

The interactive connect flow happens outside this service; here we only
exchange authorization codes and refresh tokens for new token sets.
"""

import asyncio
import base64
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from connectors.ledger_base import AuthError, TokenSet, TransientNetworkError
from core.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AccountingOAuthConfig:
    """Configuration for the OAuth token endpoint."""
    client_id: str
    client_secret: str = ""
    token_url: str = "https://identity.xero.com/connect/token"
    scopes: List[str] = field(default_factory=lambda: [
        "offline_access",
        "accounting.transactions",
        "accounting.contacts",
    ])
    timeout_seconds: int = 30


class AccountingOAuthClient:
    """Exchanges codes and refresh tokens at the token endpoint.

    Usage:
        oauth = AccountingOAuthClient(AccountingOAuthConfig(client_id="...", client_secret="..."))
        tokens = await oauth.refresh(stored.refresh_token)
    """

    def __init__(self, config: AccountingOAuthConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session

    def _basic_auth_header(self) -> str:
        raw = f"{self.config.client_id}:{self.config.client_secret}".encode('utf-8')
        return "Basic " + base64.b64encode(raw).decode('utf-8')

    async def _token_request(self, data: Dict[str, str]) -> TokenSet:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        if self.config.client_secret:
            headers["Authorization"] = self._basic_auth_header()
        else:
            data = {**data, "client_id": self.config.client_id}

        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.post(
                self.config.token_url,
                data=data,
                headers=headers,
                timeout=timeout,
            ) as response:
                text = await response.text()
                try:
                    body: Dict[str, Any] = json.loads(text) if text else {}
                except ValueError:
                    body = {"raw": text}
                if response.status == 200:
                    return TokenSet.from_response(body)

                error = body.get("error", "") if isinstance(body, dict) else ""
                if response.status in (400, 401) or error == "invalid_grant":
                    logger.error(
                        "Token endpoint rejected request",
                        extra_fields={"status": response.status, "error": error},
                    )
                    raise AuthError(
                        f"Token request failed: {error or response.status}",
                        response.status,
                        str(body),
                    )
                raise TransientNetworkError(
                    f"Token endpoint error {response.status}",
                    response.status,
                    str(body),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"Token endpoint unreachable: {e}") from e
        finally:
            if owns_session:
                await session.close()

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Exchange a refresh token. Raises AuthError on invalid_grant."""
        if not refresh_token:
            raise AuthError("No refresh token available; reconnect required")
        tokens = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        # Some servers omit the refresh token when it is not rotated
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def exchange_code(self, code: str, redirect_uri: str, code_verifier: Optional[str] = None) -> TokenSet:
        """Exchange an authorization code from the connect flow."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._token_request(data)
