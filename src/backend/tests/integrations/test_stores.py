from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal

import pytest

from src.backend.v4.integrations.stores import (
    InMemoryUploadLinkStore,
    JsonFileConnectionStore,
    JsonFileNotificationConfigStore,
    JsonFileUploadLinkStore,
)
from src.backend.v4.integrations.token_cipher import (
    SCHEME_FERNET_V1,
    SCHEME_PLAIN,
    TokenCipher,
)
from src.backend.v4.models.attachments import UploadLink
from src.backend.v4.models.errors import ConfigurationError


def _link(now, **overrides) -> UploadLink:
    fields = dict(
        link_id="link-1",
        token="t" * 64,
        transaction_id="inv-1",
        company_id=1,
        tenant_id="tenant-1",
        transaction_type="Invoice",
        expires_at=now + timedelta(days=7),
        created_at=now,
    )
    fields.update(overrides)
    return UploadLink(**fields)


def test_cipher_without_key_writes_plain() -> None:
    cipher = TokenCipher(None)
    assert cipher.write_scheme == SCHEME_PLAIN
    assert cipher.encrypt("abc") == "abc"
    assert cipher.decrypt("abc", scheme=SCHEME_PLAIN) == "abc"


def test_cipher_fernet_round_trip_is_tagged() -> None:
    cipher = TokenCipher("secret-key")
    stored = cipher.encrypt("abc")

    assert cipher.write_scheme == SCHEME_FERNET_V1
    assert stored != "abc"
    assert cipher.decrypt(stored, scheme=SCHEME_FERNET_V1) == "abc"
    # Scheme comes from the tag, never from the stored content.
    assert cipher.decrypt(stored, scheme=SCHEME_PLAIN) == stored


def test_cipher_rejects_missing_key_wrong_key_and_unknown_scheme() -> None:
    stored = TokenCipher("secret-key").encrypt("abc")

    with pytest.raises(ConfigurationError):
        TokenCipher(None).decrypt(stored, scheme=SCHEME_FERNET_V1)
    with pytest.raises(ConfigurationError):
        TokenCipher("other-key").decrypt(stored, scheme=SCHEME_FERNET_V1)
    with pytest.raises(ConfigurationError):
        TokenCipher("secret-key").decrypt(stored, scheme="rot13")


@pytest.mark.asyncio
async def test_json_connection_store_persists_token_updates(tmp_path, make_connection, now) -> None:
    path = tmp_path / "state" / "connections.json"
    store = JsonFileConnectionStore(path)
    await store.upsert(make_connection())

    await store.update_tokens(
        1,
        access_token="access-2",
        refresh_token="refresh-2",
        token_expiry=now + timedelta(minutes=30),
        token_created_at=now,
        secret_scheme=SCHEME_PLAIN,
    )

    reloaded = await JsonFileConnectionStore(path).get(1)
    assert reloaded.access_token == "access-2"
    assert reloaded.refresh_token == "refresh-2"
    assert reloaded.token_expiry == now + timedelta(minutes=30)
    assert reloaded.token_created_at == now
    assert [t.tenant_id for t in reloaded.authorized_tenants] == ["tenant-1"]


@pytest.mark.asyncio
async def test_json_connection_store_disconnect(tmp_path, make_connection) -> None:
    path = tmp_path / "connections.json"
    store = JsonFileConnectionStore(path)
    await store.upsert(make_connection())

    await store.disconnect(1)

    raw = json.loads(path.read_text())
    assert raw["connections"]["1"]["status"] == "disconnected"
    assert raw["connections"]["1"]["access_token"] is None
    assert raw["connections"]["1"]["authorized_tenants"] == []


@pytest.mark.asyncio
async def test_json_link_store_round_trip(tmp_path, now) -> None:
    path = tmp_path / "links.json"
    store = JsonFileUploadLinkStore(path)
    await store.insert(_link(now))
    await store.update("link-1", used=True, used_at=now)

    reloaded = await JsonFileUploadLinkStore(path).get("link-1")
    assert reloaded.used is True
    assert reloaded.used_at == now
    assert reloaded.expires_at == now + timedelta(days=7)


@pytest.mark.asyncio
async def test_link_store_lookups_respect_state(now) -> None:
    store = InMemoryUploadLinkStore(
        [
            _link(now, link_id="live"),
            _link(now, link_id="expired", transaction_id="inv-2", expires_at=now - timedelta(days=1)),
            _link(now, link_id="used", transaction_id="inv-3", used=True),
        ]
    )

    assert (await store.find_live("inv-1", 1, now)).link_id == "live"
    assert await store.find_live("inv-1", 2, now) is None
    assert await store.find_live("inv-2", 1, now) is None
    assert (await store.find_expired_unused("inv-2", 1, now)).link_id == "expired"
    assert await store.find_live("inv-3", 1, now) is None
    assert await store.find_expired_unused("inv-3", 1, now) is None

    with pytest.raises(ValueError):
        await store.insert(_link(now, link_id="live"))


@pytest.mark.asyncio
async def test_json_notification_config_store(tmp_path) -> None:
    path = tmp_path / "configs.json"
    path.write_text(
        json.dumps(
            {
                "configs": [
                    {"company_id": 1, "email_enabled": True, "email_address": "a@b.co", "threshold": "100"},
                    {"company_id": 2, "sms_enabled": True, "phone_number": "+61400000000"},
                ]
            }
        )
    )
    store = JsonFileNotificationConfigStore(path)

    config = await store.get(1)
    assert config.threshold == Decimal("100")
    assert [c.company_id for c in await store.list_email_enabled()] == [1]
    assert (await store.get(2)).threshold is None
    assert await store.get(3) is None
