"""Pytest configuration.

Ensures local packages can be imported consistently during test collection,
and provides shared fixtures for the Xero / upload-link tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


def _prepend_sys_path(path: Path) -> None:
    resolved = str(path.resolve())
    if resolved not in sys.path:
        sys.path.insert(0, resolved)


REPO_ROOT = Path(__file__).resolve().parent

# Allow importing `v4`, etc. as top-level modules.
_prepend_sys_path(REPO_ROOT / "src" / "backend")

# Allow importing `src.*` package explicitly.
_prepend_sys_path(REPO_ROOT)

from src.backend.v4.config.settings import XeroSettings  # noqa: E402
from src.backend.v4.models.attachments import ConnectionRecord, TenantRef  # noqa: E402


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def xero_settings() -> XeroSettings:
    """Test settings: fake hosts, no sleeping between pages or retries."""
    return XeroSettings(
        client_id="cid",
        client_secret="secret",
        token_url="https://identity.xero.test/connect/token",
        api_base_url="https://api.xero.test/api.xro/2.0",
        page_delay_seconds=0,
        refresh_retry_delay_seconds=0,
    )


@pytest.fixture
def make_connection(now):
    def _make(**overrides) -> ConnectionRecord:
        fields = {
            "company_id": 1,
            "tenant_id": "tenant-1",
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_expiry": now + timedelta(hours=1),
            "authorized_tenants": [TenantRef(tenant_id="tenant-1", name="Demo Co")],
            "token_created_at": now - timedelta(days=10),
        }
        fields.update(overrides)
        return ConnectionRecord(**fields)

    return _make
