"""Xero accounting API connector.

Purpose
- Paginated, read-mostly access to the transaction collections
  (Invoices, BankTransactions, Receipts, PurchaseOrders).
- Map HTTP failures onto the error taxonomy in `models.errors`.
- Attach uploaded receipts back onto the source transaction.

Token handling is delegated to `XeroTokenManager`; a 401 triggers exactly one
refresh and one retry of the failed request.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import quote

import httpx

from src.backend.v4.config.settings import XeroSettings
from src.backend.v4.integrations.xero_auth import XeroTokenManager
from src.backend.v4.models.attachments import FetchOutcome, PageFetchStats
from src.backend.v4.models.errors import (
    AttachmentSyncError,
    AuthenticationError,
    PaginationSafetyAbort,
    RateLimitError,
    TransientServerError,
    XeroApiError,
    XeroPermissionError,
)

logger = logging.getLogger(__name__)

# Records hashed per page for the repeated-page check.
SIGNATURE_RECORDS = 5


def page_signature(records: list[dict[str, Any]]) -> str:
    """Heuristic fingerprint of a page: SHA-1 over its first few records."""

    blob = json.dumps(records[:SIGNATURE_RECORDS], sort_keys=True, default=str)
    return hashlib.sha1(blob.encode("utf-8")).hexdigest()


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def raise_for_xero_status(resp: httpx.Response, *, what: str) -> None:
    """Raise the taxonomy error for a non-2xx Xero response."""

    status = resp.status_code
    if status < 400:
        return
    if status == 401:
        raise AuthenticationError(
            f"Xero API authentication failed for {what}; please reconnect to Xero",
            status_code=status,
        )
    if status == 403:
        raise XeroPermissionError(
            f"Insufficient permissions to access {what}; check Xero app scopes",
            status_code=status,
        )
    if status == 429:
        raise RateLimitError(
            f"Xero API rate limit exceeded for {what}",
            retry_after=_retry_after(resp),
        )
    if status >= 500:
        raise TransientServerError(
            f"Xero server error ({status}) for {what}; please try again later",
            status_code=status,
        )
    raise XeroApiError(f"Xero request for {what} failed: HTTP {status}", status_code=status)


class XeroClient:
    def __init__(
        self,
        *,
        settings: XeroSettings,
        token_manager: XeroTokenManager,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._tokens = token_manager
        self._http = http_client
        self._sleep = sleep

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            yield client

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        access_token: str,
        tenant_id: str,
        params: dict[str, Any] | None = None,
        content: bytes | None = None,
        content_type: str | None = None,
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Xero-tenant-id": tenant_id,
            "Accept": "application/json",
        }
        if content_type:
            headers["Content-Type"] = content_type
        try:
            return await client.request(
                method,
                url,
                headers=headers,
                params=params,
                content=content,
                timeout=self._settings.timeout_seconds,
            )
        except httpx.TimeoutException:
            raise TransientServerError(f"Timed out calling Xero {method} {url}")
        except httpx.TransportError as e:
            raise TransientServerError(f"Network error calling Xero: {type(e).__name__}")

    async def _refreshed_token(self, company_id: int) -> str:
        record = await self._tokens.refresh_access_token(company_id)
        return self._tokens.access_token_of(record)

    async def fetch_all(
        self,
        resource_type: str,
        access_token: str,
        tenant_id: str,
        *,
        company_id: int,
        stats: PageFetchStats | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch every page of a collection, in page order.

        Stops on a short page, at the page ceiling, or when a non-empty page
        repeats an earlier one. The last two are logged and recorded on
        `stats` (partial data is returned, nothing is raised).
        """

        stats = stats if stats is not None else PageFetchStats(resource_type=resource_type)
        url = f"{self._settings.api_base_url}/{resource_type}"
        page_size = self._settings.page_size
        records: list[dict[str, Any]] = []
        seen: set[str] = set()
        refreshed = False
        page = 1

        async with self._client() as client:
            while True:
                resp = await self._request(
                    client,
                    "GET",
                    url,
                    access_token=access_token,
                    tenant_id=tenant_id,
                    params={"page": page, "pageSize": page_size},
                )

                if resp.status_code == 401:
                    if refreshed:
                        raise_for_xero_status(resp, what=resource_type)
                    refreshed = True
                    logger.warning(
                        "[Company %s] 401 on %s page %s, refreshing token and retrying",
                        company_id,
                        resource_type,
                        page,
                    )
                    access_token = await self._refreshed_token(company_id)
                    continue

                raise_for_xero_status(resp, what=resource_type)
                data = self._page_records(resp, resource_type)

                if data:
                    sig = page_signature(data)
                    if sig in seen:
                        stats.stop_reason = "duplicate_page"
                        stats.safety_abort = PaginationSafetyAbort(
                            f"Duplicate page {page} while fetching {resource_type}"
                        )
                        logger.warning(
                            "[Company %s] Duplicate page detected for %s (page %s); stopping",
                            company_id,
                            resource_type,
                            page,
                        )
                        break
                    seen.add(sig)

                records.extend(data)
                stats.pages_fetched += 1
                logger.debug(
                    "[Company %s] %s page %s: %s records", company_id, resource_type, page, len(data)
                )

                if len(data) < page_size:
                    stats.stop_reason = "end"
                    break
                if page >= self._settings.max_pages:
                    stats.stop_reason = "max_pages"
                    stats.safety_abort = PaginationSafetyAbort(
                        f"Reached page limit ({self._settings.max_pages}) for {resource_type}"
                    )
                    logger.warning(
                        "Reached maximum page limit (%s) for %s; some records may be missing",
                        self._settings.max_pages,
                        resource_type,
                    )
                    break

                page += 1
                await self._sleep(self._settings.page_delay_seconds)

        stats.record_count = len(records)
        logger.info(
            "[Company %s] Fetched %s %s (%s pages)",
            company_id,
            len(records),
            resource_type,
            stats.pages_fetched,
        )
        return records

    @staticmethod
    def _page_records(resp: httpx.Response, resource_type: str) -> list[dict[str, Any]]:
        try:
            body = resp.json()
        except ValueError:
            raise XeroApiError(f"Xero returned non-JSON body for {resource_type}")
        data = body.get(resource_type) if isinstance(body, dict) else None
        return list(data or [])

    async def fetch_resource(
        self,
        resource_type: str,
        access_token: str,
        tenant_id: str,
        *,
        company_id: int,
    ) -> FetchOutcome:
        """Like `fetch_all`, but returns a tagged result instead of raising."""

        stats = PageFetchStats(resource_type=resource_type)
        try:
            records = await self.fetch_all(
                resource_type, access_token, tenant_id, company_id=company_id, stats=stats
            )
        except AttachmentSyncError as e:
            logger.error("[Company %s] Failed to fetch %s: %s", company_id, resource_type, e)
            return FetchOutcome(resource_type=resource_type, error=e, stats=stats)
        return FetchOutcome(resource_type=resource_type, records=records, stats=stats)

    async def attach_file(
        self,
        resource_type: str,
        transaction_id: str,
        file_name: str,
        content: bytes,
        access_token: str,
        tenant_id: str,
        *,
        company_id: int,
        content_type: str = "application/octet-stream",
    ) -> dict[str, Any]:
        """PUT a file onto a transaction. Returns the created attachment record."""

        url = (
            f"{self._settings.api_base_url}/{resource_type}/{quote(transaction_id, safe='')}"
            f"/Attachments/{quote(file_name, safe='')}"
        )
        what = f"{resource_type}/{transaction_id} attachment"

        async with self._client() as client:
            resp = await self._request(
                client,
                "PUT",
                url,
                access_token=access_token,
                tenant_id=tenant_id,
                content=content,
                content_type=content_type,
            )
            if resp.status_code == 401:
                logger.warning("[Company %s] 401 attaching to %s, refreshing token", company_id, what)
                access_token = await self._refreshed_token(company_id)
                resp = await self._request(
                    client,
                    "PUT",
                    url,
                    access_token=access_token,
                    tenant_id=tenant_id,
                    content=content,
                    content_type=content_type,
                )

        raise_for_xero_status(resp, what=what)
        attachments = (resp.json() or {}).get("Attachments") or []
        logger.info("[Company %s] Attached %s to %s", company_id, file_name, what)
        return attachments[0] if attachments else {}
