"""Notification fallback chain (SMS first, email second).

Rules
- Recipient formats are validated before any provider call; an invalid phone
  or email disables that channel for the message.
- SMS is tried first when enabled and valid. If the SMS provider fails and
  email is enabled and valid, email is sent as a fallback.
- Email is sent directly when SMS is disabled or invalid.

Provider failures are reported on the returned `NotificationResult`, never
raised, so one bad recipient cannot abort a batch.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from src.backend.v4.integrations.notification_channels import EmailProvider, SmsProvider
from src.backend.v4.models.attachments import (
    ChannelResult,
    FlaggedTransaction,
    NotificationConfig,
    NotificationResult,
)
from src.backend.v4.models.errors import NotificationDeliveryError
from src.backend.v4.use_cases.risk_classifier import summarize_risk

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^\+?[1-9]\d{7,14}$")
_PHONE_STRIP_RE = re.compile(r"[\s\-()]")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_phone(phone: str | None) -> str | None:
    """Return the phone number without separators, or None if malformed."""

    if not phone:
        return None
    cleaned = _PHONE_STRIP_RE.sub("", phone)
    return cleaned if _PHONE_RE.match(cleaned) else None


def is_valid_email(address: str | None) -> bool:
    return bool(address) and bool(_EMAIL_RE.match(address.strip()))


def _money(flagged: FlaggedTransaction) -> str:
    return f"{flagged.risk.currency} {flagged.risk.total:.2f}"


class NotificationDispatcher:
    def __init__(
        self,
        *,
        sms: SmsProvider | None = None,
        email: EmailProvider | None = None,
        link_expiry_days: int = 7,
    ) -> None:
        self._sms = sms
        self._email = email
        self._link_expiry_days = link_expiry_days

    def _sms_target(self, config: NotificationConfig, result: NotificationResult) -> str | None:
        if not config.sms_enabled:
            result.sms.skipped_reason = "disabled"
            return None
        phone = normalize_phone(config.phone_number)
        if phone is None:
            logger.info("Invalid phone number for company %s, SMS disabled", config.company_id)
            result.sms.skipped_reason = "invalid_phone"
            return None
        if self._sms is None:
            result.sms.skipped_reason = "no_provider"
            return None
        return phone

    def _email_target(self, config: NotificationConfig, result: NotificationResult) -> str | None:
        if not config.email_enabled:
            result.email.skipped_reason = "disabled"
            return None
        if not is_valid_email(config.email_address):
            logger.info("Invalid email address for company %s, email disabled", config.company_id)
            result.email.skipped_reason = "invalid_email"
            return None
        if self._email is None:
            result.email.skipped_reason = "no_provider"
            return None
        return config.email_address.strip()

    async def _send_sms(self, channel: ChannelResult, *, to: str, body: str) -> None:
        channel.attempted = True
        try:
            channel.message_id = await self._sms.send(to=to, body=body)
            channel.success = True
        except NotificationDeliveryError as e:
            logger.warning("SMS delivery failed: %s", e)
            channel.error = str(e)

    async def _send_email(
        self, channel: ChannelResult, *, to: str, subject: str, text: str
    ) -> None:
        channel.attempted = True
        try:
            channel.message_id = await self._email.send(to=to, subject=subject, text=text)
            channel.success = True
        except NotificationDeliveryError as e:
            logger.warning("Email delivery failed: %s", e)
            channel.error = str(e)

    async def _deliver(
        self,
        config: NotificationConfig,
        *,
        sms_body: str,
        email_subject: str,
        email_text: str,
    ) -> NotificationResult:
        result = NotificationResult()
        phone = self._sms_target(config, result)
        email_to = self._email_target(config, result)

        if phone is not None:
            await self._send_sms(result.sms, to=phone, body=sms_body)
            if result.sms.success:
                if email_to is not None:
                    result.email.skipped_reason = "sms_delivered"
            elif email_to is not None:
                logger.info("Falling back to email for company %s", config.company_id)
                await self._send_email(result.email, to=email_to, subject=email_subject, text=email_text)
        elif email_to is not None:
            await self._send_email(result.email, to=email_to, subject=email_subject, text=email_text)
        else:
            logger.info("No usable notification channel for company %s", config.company_id)

        return result

    def link_sms_text(self, flagged: FlaggedTransaction, public_url: str) -> str:
        return (
            "Missing Receipt Alert\n"
            f"{flagged.transaction.type}: {_money(flagged)}\n"
            f"Upload your receipt here (expires in {self._link_expiry_days} days):\n"
            f"{public_url}\n"
            "\n"
            "Reply STOP to opt out."
        )

    async def send_link_notification(
        self,
        config: NotificationConfig,
        flagged: FlaggedTransaction,
        public_url: str,
        *,
        company_name: str | None = None,
    ) -> NotificationResult:
        t = flagged.transaction
        who = f" from {t.counterparty_name}" if t.counterparty_name else ""
        text = (
            f"A {t.type}{who} for {_money(flagged)} has no receipt attached"
            f"{f' in {company_name}' if company_name else ''}.\n\n"
            f"Risk level: {flagged.risk.risk_level}\n"
            f"Upload the receipt here (link expires in {self._link_expiry_days} days):\n"
            f"{public_url}\n"
        )
        return await self._deliver(
            config,
            sms_body=self.link_sms_text(flagged, public_url),
            email_subject=f"Missing receipt: {t.type} {_money(flagged)}",
            email_text=text,
        )

    async def send_missing_attachment_notification(
        self,
        config: NotificationConfig,
        transactions: list[FlaggedTransaction],
        company_name: str | None = None,
    ) -> NotificationResult:
        """One summary message for a batch of flagged transactions."""

        summary = summarize_risk(f.risk for f in transactions)
        currency = transactions[0].risk.currency if transactions else "AUD"
        name = company_name or f"Company {config.company_id}"

        sms_body = (
            "Missing Receipt Alert\n"
            f"{name}: {summary['total']} transactions missing receipts "
            f"({summary['highRiskCount']} high risk, {currency} {summary['totalAmountAtRisk']:.2f} at risk).\n"
            "\n"
            "Reply STOP to opt out."
        )
        return await self._deliver(
            config,
            sms_body=sms_body,
            email_subject=f"{summary['total']} transactions missing receipts - {name}",
            email_text=self._batch_text(name, transactions, summary),
        )

    async def send_daily_digest(
        self,
        config: NotificationConfig,
        flagged: list[FlaggedTransaction],
        summary: dict,
    ) -> ChannelResult:
        """Email-only digest; SMS settings are ignored."""

        result = NotificationResult()
        to = self._email_target(config, result)
        if to is None:
            return result.email

        await self._send_email(
            result.email,
            to=to,
            subject=f"Daily digest: {summary.get('total', len(flagged))} transactions missing receipts",
            text=self._batch_text(f"Company {config.company_id}", flagged, summary),
        )
        return result.email

    @staticmethod
    def _batch_text(name: str, flagged: Iterable[FlaggedTransaction], summary: dict) -> str:
        lines = [
            f"{name} has {summary['total']} transactions without a receipt.",
            f"High risk: {summary['highRiskCount']}  Low risk: {summary['lowRiskCount']}",
            f"Estimated penalty exposure: {summary['totalPotentialPenalty']:.2f}",
            "",
        ]
        for f in flagged:
            t = f.transaction
            lines.append(
                f"- [{f.risk.risk_level}] {t.type} {t.id} {t.date or ''} "
                f"{t.counterparty_name or ''} {_money(f)}".rstrip()
            )
        return "\n".join(lines) + "\n"
