"""SMS and email delivery adapters.

The dispatcher only depends on the two protocols; concrete providers are thin
wrappers that raise `NotificationDeliveryError` on any failure.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

import httpx

from src.backend.v4.config.settings import SmtpSettings, TwilioSettings
from src.backend.v4.models.errors import ConfigurationError, NotificationDeliveryError

logger = logging.getLogger(__name__)


class SmsProvider(Protocol):
    async def send(self, *, to: str, body: str) -> str:
        """Send one SMS and return the provider message id."""
        ...


class EmailProvider(Protocol):
    async def send(
        self, *, to: str, subject: str, text: str, html: str | None = None
    ) -> str:
        """Send one email and return the provider message id."""
        ...


class TwilioSmsProvider:
    def __init__(
        self,
        settings: TwilioSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        if not settings.configured:
            raise ConfigurationError("Twilio is not configured (TWILIO_ACCOUNT_SID/AUTH_TOKEN/PHONE_NUMBER)")
        self._settings = settings
        self._http = http_client
        self._timeout = timeout_seconds

    async def send(self, *, to: str, body: str) -> str:
        s = self._settings
        url = f"{s.api_base_url.rstrip('/')}/Accounts/{s.account_sid}/Messages.json"
        data = {"To": to, "From": s.from_number, "Body": body}
        auth = (s.account_sid, s.auth_token)

        try:
            if self._http is not None:
                resp = await self._http.post(url, data=data, auth=auth, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, data=data, auth=auth)
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"SMS request failed: {type(e).__name__}")

        if resp.status_code >= 400:
            raise NotificationDeliveryError(
                f"SMS provider returned HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            sid = (resp.json() or {}).get("sid") or ""
        except ValueError:
            raise NotificationDeliveryError(
                f"SMS provider returned an unreadable body (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )
        logger.info("SMS sent (sid=%s)", sid)
        return sid


class SmtpEmailProvider:
    def __init__(self, settings: SmtpSettings, *, timeout_seconds: float = 30.0) -> None:
        if not settings.configured:
            raise ConfigurationError("SMTP is not configured (SMTP_HOST/SMTP_FROM_ADDRESS)")
        self._settings = settings
        self._timeout = timeout_seconds

    def _send_sync(self, message: EmailMessage) -> None:
        s = self._settings
        with smtplib.SMTP(s.host, s.port, timeout=self._timeout) as smtp:
            if s.use_tls:
                smtp.starttls()
            if s.username and s.password:
                smtp.login(s.username, s.password)
            smtp.send_message(message)

    async def send(
        self, *, to: str, subject: str, text: str, html: str | None = None
    ) -> str:
        message = EmailMessage()
        message["From"] = self._settings.from_address
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")

        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(f"Email delivery failed: {e}")

        logger.info("Email sent to %s", to)
        return message["Message-ID"]
