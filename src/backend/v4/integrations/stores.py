"""Persistence collaborators.

The core talks to storage only through the three protocols below. Two
implementations ship here:
- in-memory stores (tests, embedding in a larger app that wraps its own DB)
- JSON-file stores for local runs, following the same load/save-to-file
  approach as the local OAuth token file

Stores hand out copies so callers cannot mutate persisted state by accident.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

from src.backend.v4.models.attachments import (
    ConnectionRecord,
    NotificationConfig,
    TenantRef,
    UploadLink,
    utcnow,
)


class ConnectionStore(Protocol):
    async def get(self, company_id: int) -> ConnectionRecord | None: ...

    async def upsert(self, record: ConnectionRecord) -> None: ...

    async def update_tokens(
        self,
        company_id: int,
        *,
        access_token: str,
        refresh_token: str,
        token_expiry: datetime,
        token_created_at: datetime,
        secret_scheme: str,
    ) -> ConnectionRecord: ...

    async def disconnect(self, company_id: int) -> None: ...


class UploadLinkStore(Protocol):
    async def insert(self, link: UploadLink) -> None: ...

    async def get(self, link_id: str) -> UploadLink | None: ...

    async def find_live(self, transaction_id: str, company_id: int, now: datetime) -> UploadLink | None: ...

    async def find_expired_unused(
        self, transaction_id: str, company_id: int, now: datetime
    ) -> UploadLink | None: ...

    async def update(self, link_id: str, **fields: Any) -> UploadLink: ...

    async def delete_expired_before(self, cutoff: datetime) -> int: ...

    async def list_for_company(self, company_id: int) -> list[UploadLink]: ...


class NotificationConfigStore(Protocol):
    async def get(self, company_id: int) -> NotificationConfig | None: ...

    async def list_email_enabled(self) -> list[NotificationConfig]: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryConnectionStore:
    def __init__(self, records: list[ConnectionRecord] | None = None) -> None:
        self._records: dict[int, ConnectionRecord] = {}
        self.update_calls = 0
        for r in records or []:
            self._records[r.company_id] = replace(r, authorized_tenants=list(r.authorized_tenants))

    def _copy(self, record: ConnectionRecord) -> ConnectionRecord:
        return replace(record, authorized_tenants=list(record.authorized_tenants))

    async def get(self, company_id: int) -> ConnectionRecord | None:
        record = self._records.get(company_id)
        return self._copy(record) if record else None

    async def upsert(self, record: ConnectionRecord) -> None:
        record = self._copy(record)
        record.updated_at = utcnow()
        self._records[record.company_id] = record
        self._persist()

    async def update_tokens(
        self,
        company_id: int,
        *,
        access_token: str,
        refresh_token: str,
        token_expiry: datetime,
        token_created_at: datetime,
        secret_scheme: str,
    ) -> ConnectionRecord:
        current = self._records.get(company_id)
        if current is None:
            raise KeyError(f"No connection for company {company_id}")
        # Single replacement of the whole record: readers see either the old or the new pair.
        updated = replace(
            current,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
            token_created_at=token_created_at,
            secret_scheme=secret_scheme,
            status="active",
            updated_at=utcnow(),
        )
        self._records[company_id] = updated
        self.update_calls += 1
        self._persist()
        return self._copy(updated)

    async def disconnect(self, company_id: int) -> None:
        current = self._records.get(company_id)
        if current is None:
            return
        self._records[company_id] = replace(
            current,
            access_token=None,
            refresh_token=None,
            token_expiry=None,
            status="disconnected",
            authorized_tenants=[],
            updated_at=utcnow(),
        )
        self._persist()

    def _persist(self) -> None:
        """Hook for file-backed subclasses."""


class InMemoryUploadLinkStore:
    def __init__(self, links: list[UploadLink] | None = None) -> None:
        self._links: dict[str, UploadLink] = {}
        for link in links or []:
            self._links[link.link_id] = replace(link)

    async def insert(self, link: UploadLink) -> None:
        if link.link_id in self._links:
            raise ValueError(f"Duplicate link id {link.link_id}")
        self._links[link.link_id] = replace(link)
        self._persist()

    async def get(self, link_id: str) -> UploadLink | None:
        link = self._links.get(link_id)
        return replace(link) if link else None

    def _matching(self, transaction_id: str, company_id: int) -> list[UploadLink]:
        rows = [
            link
            for link in self._links.values()
            if link.transaction_id == transaction_id and link.company_id == company_id
        ]
        return sorted(rows, key=lambda l: l.created_at, reverse=True)

    async def find_live(self, transaction_id: str, company_id: int, now: datetime) -> UploadLink | None:
        for link in self._matching(transaction_id, company_id):
            if link.is_live(now):
                return replace(link)
        return None

    async def find_expired_unused(
        self, transaction_id: str, company_id: int, now: datetime
    ) -> UploadLink | None:
        for link in self._matching(transaction_id, company_id):
            if link.is_expired(now):
                return replace(link)
        return None

    async def update(self, link_id: str, **fields: Any) -> UploadLink:
        current = self._links.get(link_id)
        if current is None:
            raise KeyError(link_id)
        updated = replace(current, **fields)
        self._links[link_id] = updated
        self._persist()
        return replace(updated)

    async def delete_expired_before(self, cutoff: datetime) -> int:
        stale = [link_id for link_id, link in self._links.items() if link.expires_at < cutoff]
        for link_id in stale:
            del self._links[link_id]
        if stale:
            self._persist()
        return len(stale)

    async def list_for_company(self, company_id: int) -> list[UploadLink]:
        return [replace(l) for l in self._links.values() if l.company_id == company_id]

    def _persist(self) -> None:
        """Hook for file-backed subclasses."""


class InMemoryNotificationConfigStore:
    def __init__(self, configs: list[NotificationConfig] | None = None) -> None:
        self._configs: dict[int, NotificationConfig] = {c.company_id: c for c in configs or []}

    async def get(self, company_id: int) -> NotificationConfig | None:
        return self._configs.get(company_id)

    async def list_email_enabled(self) -> list[NotificationConfig]:
        return [c for c in self._configs.values() if c.email_enabled and c.email_address]

    def put(self, config: NotificationConfig) -> None:
        self._configs[config.company_id] = config


# ---------------------------------------------------------------------------
# JSON-file implementations (local runs)
# ---------------------------------------------------------------------------


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f) or {}


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(_jsonable(payload), f, indent=2)
    os.replace(tmp, path)


def _connection_from_json(raw: dict[str, Any]) -> ConnectionRecord:
    return ConnectionRecord(
        company_id=int(raw["company_id"]),
        tenant_id=raw.get("tenant_id"),
        access_token=raw.get("access_token"),
        refresh_token=raw.get("refresh_token"),
        token_expiry=_dt(raw.get("token_expiry")),
        status=raw.get("status") or "active",
        authorized_tenants=[
            TenantRef(
                tenant_id=t["tenant_id"],
                name=t.get("name"),
                connection_id=t.get("connection_id"),
            )
            for t in raw.get("authorized_tenants") or []
        ],
        token_created_at=_dt(raw.get("token_created_at")),
        secret_scheme=raw.get("secret_scheme") or "plain",
        tenant_name=raw.get("tenant_name"),
        client_id=raw.get("client_id"),
        client_secret=raw.get("client_secret"),
        updated_at=_dt(raw.get("updated_at")),
    )


def _link_from_json(raw: dict[str, Any]) -> UploadLink:
    return UploadLink(
        link_id=raw["link_id"],
        token=raw["token"],
        transaction_id=raw["transaction_id"],
        company_id=int(raw["company_id"]),
        tenant_id=raw["tenant_id"],
        transaction_type=raw["transaction_type"],
        expires_at=_dt(raw["expires_at"]),
        created_at=_dt(raw["created_at"]),
        used=bool(raw.get("used")),
        used_at=_dt(raw.get("used_at")),
        resolved_at=_dt(raw.get("resolved_at")),
        file_name=raw.get("file_name"),
        file_url=raw.get("file_url"),
        file_size=raw.get("file_size"),
    )


class JsonFileConnectionStore(InMemoryConnectionStore):
    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        raw = _read_json(self._path)
        super().__init__([_connection_from_json(r) for r in (raw.get("connections") or {}).values()])

    def _persist(self) -> None:
        _write_json(
            self._path,
            {"connections": {str(k): asdict(v) for k, v in self._records.items()}},
        )


class JsonFileUploadLinkStore(InMemoryUploadLinkStore):
    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        raw = _read_json(self._path)
        super().__init__([_link_from_json(r) for r in raw.get("links") or []])

    def _persist(self) -> None:
        _write_json(self._path, {"links": [asdict(l) for l in self._links.values()]})


class JsonFileNotificationConfigStore(InMemoryNotificationConfigStore):
    """Read-only view over a JSON file of per-company notification settings."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        raw = _read_json(Path(path))
        configs = []
        for c in raw.get("configs") or []:
            threshold = c.get("threshold")
            configs.append(
                NotificationConfig(
                    company_id=int(c["company_id"]),
                    sms_enabled=bool(c.get("sms_enabled")),
                    email_enabled=bool(c.get("email_enabled")),
                    phone_number=c.get("phone_number"),
                    email_address=c.get("email_address"),
                    threshold=Decimal(str(threshold)) if threshold is not None else None,
                )
            )
        super().__init__(configs)
