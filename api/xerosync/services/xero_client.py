"""Async client for the Xero Accounting API.

Only the read endpoints the historical sync needs are implemented. Every
list call takes the same shape of arguments (modified-since date, where
filter, order, page, page size) and returns a `PageResult`, so callers can
drive any of them through `services.pagination.paginate`.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import httpx

from xerosync.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_RETRY_AFTER = 60.0


class XeroAPIError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"Xero API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class XeroRateLimitError(XeroAPIError):
    """HTTP 429. `problem` is Xero's X-Rate-Limit-Problem header (minute, day, concurrent)."""

    def __init__(self, retry_after: float, problem: str | None = None):
        super().__init__(429, f"rate limited ({problem or 'unknown'}), retry after {retry_after}s")
        self.retry_after = retry_after
        self.problem = problem


class XeroTenantNotFoundError(XeroAPIError):
    def __init__(self, tenant_id: str):
        super().__init__(403, f"tenant {tenant_id} is not connected")
        self.tenant_id = tenant_id


@dataclass
class PageResult:
    items: list[dict[str, Any]]
    has_more: bool


def _has_more(body: dict[str, Any], items: list, page: int, page_size: int) -> bool:
    page_count = (body.get("pagination") or {}).get("pageCount")
    if page_count:
        return page < page_count
    return len(items) >= page_size


def _retry_after(response: httpx.Response) -> float:
    try:
        return float(response.headers.get("Retry-After", _DEFAULT_RETRY_AFTER))
    except ValueError:
        return _DEFAULT_RETRY_AFTER


class XeroClient:
    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        *,
        base_url: str = settings.xero_api_url,
        connections_url: str = settings.xero_connections_url,
        timeout: float = settings.xero_http_timeout_seconds,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tenant_id = tenant_id
        self._connections_url = connections_url
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "xero-tenant-id": tenant_id,
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "XeroClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Connections ───────────────────────────────────────────────

    async def get_connections(self) -> list[dict[str, Any]]:
        response = await self._http.get(self._connections_url)
        self._raise_for_status(response)
        return response.json()

    async def ensure_tenant(self) -> dict[str, Any]:
        """Confirm the token can act on `tenant_id`; returns the connection record."""
        for connection in await self.get_connections():
            if connection.get("tenantId") == self.tenant_id:
                return connection
        raise XeroTenantNotFoundError(self.tenant_id)

    # ─── Accounting endpoints ──────────────────────────────────────

    async def get_accounts(self, *, where: str | None = None, order: str = "Code ASC") -> list[dict[str, Any]]:
        body = await self._get("/Accounts", {"where": where, "order": order})
        return body.get("Accounts") or []

    async def get_contacts(
        self,
        page: int,
        *,
        order: str = "Name ASC",
        include_archived: bool = True,
        page_size: int = settings.sync_page_size,
    ) -> PageResult:
        params = {
            "order": order,
            "page": page,
            "pageSize": page_size,
            "includeArchived": "true" if include_archived else None,
        }
        body = await self._get("/Contacts", params)
        items = body.get("Contacts") or []
        return PageResult(items=items, has_more=_has_more(body, items, page, page_size))

    async def get_bank_transactions(
        self,
        page: int,
        *,
        modified_since: date | datetime | None = None,
        where: str | None = None,
        order: str = "Date ASC",
        page_size: int = settings.sync_page_size,
    ) -> PageResult:
        params = {"where": where, "order": order, "page": page, "pageSize": page_size}
        body = await self._get("/BankTransactions", params, modified_since=modified_since)
        items = body.get("BankTransactions") or []
        return PageResult(items=items, has_more=_has_more(body, items, page, page_size))

    async def get_invoices(
        self,
        page: int,
        *,
        modified_since: date | datetime | None = None,
        where: str | None = None,
        order: str = "UpdatedDateUTC ASC",
        page_size: int = settings.sync_page_size,
    ) -> PageResult:
        params = {"where": where, "order": order, "page": page, "pageSize": page_size}
        body = await self._get("/Invoices", params, modified_since=modified_since)
        items = body.get("Invoices") or []
        return PageResult(items=items, has_more=_has_more(body, items, page, page_size))

    # ─── Helpers ───────────────────────────────────────────────────

    async def _get(
        self,
        path: str,
        params: dict[str, Any],
        *,
        modified_since: date | datetime | None = None,
    ) -> dict[str, Any]:
        headers = {}
        if modified_since is not None:
            if not isinstance(modified_since, datetime):
                modified_since = datetime(modified_since.year, modified_since.month, modified_since.day)
            headers["If-Modified-Since"] = modified_since.strftime("%Y-%m-%dT%H:%M:%S")

        response = await self._http.get(
            path,
            params={k: v for k, v in params.items() if v is not None},
            headers=headers,
        )
        self._raise_for_status(response)
        logger.debug("GET %s %s -> %d", path, params.get("page", ""), response.status_code)
        return response.json()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code == 429:
            raise XeroRateLimitError(
                retry_after=_retry_after(response),
                problem=response.headers.get("X-Rate-Limit-Problem"),
            )
        if response.is_error:
            try:
                body = response.json()
                message = body.get("Detail") or body.get("Message") or body.get("Title") or response.text
            except ValueError:
                message = response.text
            raise XeroAPIError(response.status_code, str(message)[:500])
