from __future__ import annotations

import smtplib
from urllib.parse import parse_qs

import httpx
import pytest

from src.backend.v4.config.settings import SmtpSettings, TwilioSettings
from src.backend.v4.integrations.notification_channels import SmtpEmailProvider, TwilioSmsProvider
from src.backend.v4.models.errors import ConfigurationError, NotificationDeliveryError

TWILIO = TwilioSettings(account_sid="AC123", auth_token="tok", from_number="+15550001111")
SMTP = SmtpSettings(host="smtp.test", port=2525, username="u", password="p", from_address="alerts@example.com")


@pytest.mark.asyncio
async def test_twilio_posts_message_form() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM1", "status": "queued"})

    provider = TwilioSmsProvider(TWILIO, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    sid = await provider.send(to="+61400000000", body="hello")

    assert sid == "SM1"
    req = seen[0]
    assert req.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    form = parse_qs(req.content.decode())
    assert form == {"To": ["+61400000000"], "From": ["+15550001111"], "Body": ["hello"]}
    assert req.headers["authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_twilio_error_is_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "invalid To"})

    provider = TwilioSmsProvider(TWILIO, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(NotificationDeliveryError) as exc:
        await provider.send(to="+61400000000", body="hello")
    assert exc.value.status_code == 400


def test_unconfigured_providers_are_rejected() -> None:
    with pytest.raises(ConfigurationError):
        TwilioSmsProvider(TwilioSettings())
    with pytest.raises(ConfigurationError):
        SmtpEmailProvider(SmtpSettings())


class _FakeSMTP:
    instances: list["_FakeSMTP"] = []
    fail_with: Exception | None = None

    def __init__(self, host, port, timeout=None) -> None:
        self.host = host
        self.port = port
        self.calls: list[str] = []
        self.sent = []
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(f"login:{username}")

    def send_message(self, message):
        if _FakeSMTP.fail_with is not None:
            raise _FakeSMTP.fail_with
        self.sent.append(message)


@pytest.mark.asyncio
async def test_smtp_sends_via_tls_and_login(monkeypatch) -> None:
    _FakeSMTP.instances = []
    _FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)

    message_id = await SmtpEmailProvider(SMTP).send(to="owner@example.com", subject="Hi", text="Body")

    smtp = _FakeSMTP.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.test", 2525)
    assert smtp.calls == ["starttls", "login:u"]
    sent = smtp.sent[0]
    assert sent["To"] == "owner@example.com"
    assert sent["Subject"] == "Hi"
    assert sent["Message-ID"] == message_id


@pytest.mark.asyncio
async def test_smtp_failure_is_delivery_error(monkeypatch) -> None:
    _FakeSMTP.instances = []
    _FakeSMTP.fail_with = smtplib.SMTPRecipientsRefused({})
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)

    with pytest.raises(NotificationDeliveryError):
        await SmtpEmailProvider(SMTP).send(to="owner@example.com", subject="Hi", text="Body")
    _FakeSMTP.fail_with = None


@pytest.mark.asyncio
async def test_twilio_unreadable_success_body_is_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, text="<html>ok</html>")

    provider = TwilioSmsProvider(TWILIO, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(NotificationDeliveryError) as exc:
        await provider.send(to="+61400000000", body="hello")
    assert exc.value.status_code == 201
