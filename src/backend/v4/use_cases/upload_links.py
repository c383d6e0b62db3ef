"""Single-use receipt upload links.

Lifecycle: created -> (extended)* -> used, or created -> expired. An expired,
unused link is extended in place rather than replaced, so a transaction keeps
one link id for its whole life.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
import uuid
import weakref
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Hashable

from src.backend.v4.config.settings import UploadLinkSettings
from src.backend.v4.integrations.stores import UploadLinkStore
from src.backend.v4.models.attachments import DuplicateLinkStat, UploadLink, utcnow
from src.backend.v4.models.errors import LinkNotFoundError, ValidationError

logger = logging.getLogger(__name__)

# (link, file_name, content_type, content) -> stored file URL (or None)
AttachCallable = Callable[[UploadLink, str, str, bytes], Awaitable[str | None]]


@dataclass(frozen=True, slots=True)
class LinkIssue:
    link: UploadLink
    action: str  # "created" | "reused" | "extended"


class UploadLinkManager:
    def __init__(
        self,
        *,
        store: UploadLinkStore,
        settings: UploadLinkSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or UploadLinkSettings()
        self._clock = clock
        # Held by the coroutines using them; dropped once none do.
        self._locks: weakref.WeakValueDictionary[Hashable, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @property
    def expiry_days(self) -> int:
        return self._settings.expiry_days

    def public_url(self, link: UploadLink) -> str:
        base = self._settings.frontend_url.rstrip("/")
        return f"{base}/upload-receipt/{link.link_id}?token={link.token}"

    async def issue(
        self,
        transaction_id: str,
        company_id: int,
        tenant_id: str,
        transaction_type: str,
    ) -> LinkIssue:
        """Return the live link for a transaction, extending or creating one if needed."""

        async with self._lock(("transaction", transaction_id, company_id)):
            now = self._clock()
            expires_at = now + timedelta(days=self._settings.expiry_days)

            live = await self._store.find_live(transaction_id, company_id, now)
            if live is not None:
                logger.debug("Reusing upload link %s for transaction %s", live.link_id, transaction_id)
                return LinkIssue(link=live, action="reused")

            expired = await self._store.find_expired_unused(transaction_id, company_id, now)
            if expired is not None:
                extended = await self._store.update(expired.link_id, expires_at=expires_at)
                logger.info("Extended expired upload link %s for transaction %s", extended.link_id, transaction_id)
                return LinkIssue(link=extended, action="extended")

            link = UploadLink(
                link_id=str(uuid.uuid4()),
                token=secrets.token_hex(32),
                transaction_id=transaction_id,
                company_id=company_id,
                tenant_id=tenant_id,
                transaction_type=transaction_type,
                expires_at=expires_at,
                created_at=now,
            )
            await self._store.insert(link)
            logger.info("Created upload link %s for transaction %s", link.link_id, transaction_id)
            return LinkIssue(link=link, action="created")

    async def find_or_create(
        self,
        transaction_id: str,
        company_id: int,
        tenant_id: str,
        transaction_type: str,
    ) -> UploadLink:
        issued = await self.issue(transaction_id, company_id, tenant_id, transaction_type)
        return issued.link

    async def mark_used(self, link_id: str) -> UploadLink:
        async with self._lock(("link", link_id)):
            return await self._close_link(link_id)

    async def _close_link(self, link_id: str, **file_fields) -> UploadLink:
        # Caller holds the link lock.
        link = await self._store.get(link_id)
        if link is None:
            raise LinkNotFoundError(f"Upload link {link_id} not found")
        if link.used:
            raise ValidationError(f"Upload link {link_id} has already been used")

        now = self._clock()
        updated = await self._store.update(link_id, used=True, used_at=now, resolved_at=now, **file_fields)
        logger.info("Marked upload link %s as used", link_id)
        return updated

    async def validate_link(self, link_id: str, token: str) -> UploadLink | None:
        link = await self._store.get(link_id)
        if link is None or not hmac.compare_digest(link.token, token or ""):
            logger.info("Invalid upload link or token: %s", link_id)
            return None
        if not link.is_live(self._clock()):
            logger.info("Upload link %s is used or expired", link_id)
            return None
        return link

    def validate_file(self, content_type: str, size: int) -> None:
        if content_type not in self._settings.allowed_content_types:
            raise ValidationError("Invalid file type. Only JPG, PNG, and PDF files are allowed.")
        if size > self._settings.max_file_bytes:
            max_mb = self._settings.max_file_bytes // (1024 * 1024)
            raise ValidationError(f"File too large. Maximum size is {max_mb}MB.")

    async def accept_upload(
        self,
        link_id: str,
        token: str,
        *,
        file_name: str,
        content_type: str,
        content: bytes,
        attach: AttachCallable,
    ) -> UploadLink:
        """Validate link and file, hand the file to `attach`, then close the link.

        Uploads on the same link run one at a time, so a link is attached at
        most once. The link stays live if `attach` raises, so the user can retry.
        """

        async with self._lock(("link", link_id)):
            link = await self.validate_link(link_id, token)
            if link is None:
                raise ValidationError("Invalid or expired upload link")
            self.validate_file(content_type, len(content))

            logger.info(
                "[Company %s] Upload for %s %s: %s (%s bytes)",
                link.company_id,
                link.transaction_type,
                link.transaction_id,
                file_name,
                len(content),
            )
            file_url = await attach(link, file_name, content_type, content)

            return await self._close_link(
                link_id, file_name=file_name, file_url=file_url, file_size=len(content)
            )

    async def cleanup_expired(self, days_old: int = 30) -> int:
        cutoff = self._clock() - timedelta(days=days_old)
        deleted = await self._store.delete_expired_before(cutoff)
        logger.info("Cleaned up %s upload links expired before %s", deleted, cutoff.isoformat())
        return deleted

    async def duplicate_stats(self, company_id: int) -> list[DuplicateLinkStat]:
        """Transactions with more than one stored link, most duplicated first."""

        grouped: dict[str, list[UploadLink]] = defaultdict(list)
        for link in await self._store.list_for_company(company_id):
            grouped[link.transaction_id].append(link)

        stats = [
            DuplicateLinkStat(
                transaction_id=transaction_id,
                link_count=len(links),
                first_created=min(l.created_at for l in links),
                latest_created=max(l.created_at for l in links),
            )
            for transaction_id, links in grouped.items()
            if len(links) > 1
        ]
        return sorted(stats, key=lambda s: s.link_count, reverse=True)
