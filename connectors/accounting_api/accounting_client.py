"""Accounting API HTTP Client.

Low-level HTTP client for accounting API calls.
Handles auth and tenant headers, page-number pagination and maps HTTP
failures onto the ledger error hierarchy. Retries are layered on top by
connectors/retry.py.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Dict, List, Optional

import aiohttp

from connectors.accounting_api.accounting_models import parse_ledger_error
from connectors.ledger_base import (
    AuthError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
    RateLimitError,
    TokenSet,
    TransientNetworkError,
)
from core.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AccountingApiConfig:
    """Configuration for accounting API client."""
    base_url: str = "https://api.xero.com/api.xro/2.0"
    tenant_id: Optional[str] = None
    page_size: int = 100
    timeout_seconds: int = 30
    default_retry_after: int = 60

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


def _http_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def idempotency_key(collection: str, body: Dict[str, Any]) -> str:
    """Stable key for a create request so a retried POST is not applied twice."""
    digest = hashlib.sha256(
        (collection + json.dumps(body, sort_keys=True, default=str)).encode('utf-8')
    )
    return digest.hexdigest()


class AccountingApiClient:
    """HTTP client for the accounting API.

    Provides:
    - Authenticated API calls (bearer token + tenant header)
    - Page-number pagination
    - Error mapping

    Usage:
        client = AccountingApiClient(api_config)
        client.set_token(tokens)
        page = await client.list_page("Contacts", page=1)
    """

    def __init__(self, api_config: AccountingApiConfig, session: Optional[aiohttp.ClientSession] = None):
        self.api_config = api_config
        self._session = session
        self._owns_session = session is None
        self._token: Optional[TokenSet] = None

    def set_token(self, token: TokenSet) -> None:
        self._token = token

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Get headers for API requests."""
        if not self._token:
            raise AuthError("Not authenticated: no access token installed")

        headers = {
            "Authorization": self._token.authorization_header,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.api_config.tenant_id:
            headers["Xero-Tenant-Id"] = self.api_config.tenant_id
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Make one authenticated API request.

        Args:
            method: HTTP method
            path: Path relative to the API base URL
            params: Query parameters
            data: Request body
            headers: Additional headers

        Returns:
            Response JSON

        Raises:
            AuthError: 401/403
            NotFoundError: 404
            RateLimitError: 429, with Retry-After honoured
            LedgerValidationError: 400
            TransientNetworkError: 5xx, timeouts and connection failures
            LedgerError: Any other unexpected status
        """
        url = self.api_config.url(path)
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.api_config.timeout_seconds)

        try:
            async with session.request(
                method,
                url,
                headers=self._get_headers(headers),
                params=params,
                json=data,
                timeout=timeout,
            ) as response:
                response_text = await response.text()

                if response.status < 400:
                    if response.status == 204 or not response_text:
                        return {}
                    return json.loads(response_text)

                if response.status in (401, 403):
                    raise AuthError(
                        f"Authentication failed: {response_text[:200]}",
                        response.status,
                        response_text,
                    )

                if response.status == 404:
                    raise NotFoundError(f"Resource not found: {url}", 404, response_text)

                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    try:
                        seconds = float(retry_after) if retry_after else self.api_config.default_retry_after
                    except ValueError:
                        seconds = self.api_config.default_retry_after
                    logger.warning(
                        "Rate limited by ledger",
                        extra_fields={"retry_after": seconds, "path": path},
                    )
                    raise RateLimitError("Rate limit exceeded", seconds)

                if response.status == 400:
                    try:
                        messages = parse_ledger_error(json.loads(response_text))
                    except ValueError:
                        messages = []
                    raise LedgerValidationError(
                        f"Validation error: {'; '.join(messages) or response_text[:200]}",
                        400,
                        response_text,
                        messages,
                    )

                if response.status >= 500:
                    raise TransientNetworkError(
                        f"Ledger server error {response.status}",
                        response.status,
                        response_text,
                    )

                raise LedgerError(
                    f"API error {response.status}: {response_text[:200]}",
                    response.status,
                    response_text,
                )

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"Request to {path} failed: {type(e).__name__}: {e}") from e

    # =========================================================================
    # Collection Operations
    # =========================================================================

    async def list_page(
        self,
        collection: str,
        page: int = 1,
        modified_since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of a collection (e.g. "Contacts")."""
        params = {"page": str(page), "pageSize": str(self.api_config.page_size)}
        headers = {}
        if modified_since is not None:
            headers["If-Modified-Since"] = _http_date(modified_since)
        response = await self._request("GET", collection, params=params, headers=headers)
        return response.get(collection, [])

    async def get_one(self, collection: str, entity_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self._request("GET", f"{collection}/{entity_id}")
        except NotFoundError:
            return None
        items = response.get(collection, [])
        return items[0] if items else None

    async def create(self, collection: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create one entity; returns the stored entity."""
        response = await self._request(
            "PUT",
            collection,
            data={collection: [body]},
            headers={"Idempotency-Key": idempotency_key(collection, body)},
        )
        return self._first(collection, response)

    async def update(self, collection: str, entity_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Update one entity; returns the stored entity."""
        response = await self._request("POST", f"{collection}/{entity_id}", data={collection: [body]})
        return self._first(collection, response)

    @staticmethod
    def _first(collection: str, response: Dict[str, Any]) -> Dict[str, Any]:
        items = response.get(collection) or []
        if not items:
            raise LedgerError(f"Empty {collection} response")
        item = items[0]
        if item.get("HasValidationErrors") or item.get("ValidationErrors"):
            messages = [e.get("Message", "") for e in item.get("ValidationErrors") or []]
            raise LedgerValidationError(
                f"Validation error: {'; '.join(messages)}", 400, json.dumps(item), messages
            )
        return item
