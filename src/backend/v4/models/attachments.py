"""Domain models for missing-attachment detection and remediation.

Plain dataclasses, no I/O. Money is always `Decimal`; datetimes are timezone
aware (UTC).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from src.backend.v4.models.errors import (
    RETRY_LATER,
    AttachmentSyncError,
)

TransactionType = Literal["Invoice", "BankTransaction", "Receipt", "PurchaseOrder"]
RiskLevel = Literal["HIGH", "LOW"]

# Xero collection endpoint -> (transaction type, id field)
RESOURCE_TYPES: dict[str, tuple[str, str]] = {
    "Invoices": ("Invoice", "InvoiceID"),
    "BankTransactions": ("BankTransaction", "BankTransactionID"),
    "Receipts": ("Receipt", "ReceiptID"),
    "PurchaseOrders": ("PurchaseOrder", "PurchaseOrderID"),
}

CONNECTION_STATUSES = ("active", "expired", "revoked", "error", "disconnected")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class TenantRef:
    tenant_id: str
    name: str | None = None
    connection_id: str | None = None


@dataclass(slots=True)
class ConnectionRecord:
    """Stored OAuth connection for one company.

    `access_token` / `refresh_token` hold the *stored* form; `secret_scheme`
    says how they were written ("plain" or "fernet-v1").
    """

    company_id: int
    tenant_id: str | None
    access_token: str | None
    refresh_token: str | None
    token_expiry: datetime | None
    status: str = "active"
    authorized_tenants: list[TenantRef] = field(default_factory=list)
    token_created_at: datetime | None = None
    secret_scheme: str = "plain"
    tenant_name: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Transaction:
    id: str
    type: str
    total: Decimal
    tax: Decimal
    has_attachment: bool
    counterparty_name: str | None = None
    currency: str = "AUD"
    sub_total: Decimal | None = None
    date: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    total: Decimal
    tax: Decimal
    sub_total: Decimal
    threshold: Decimal
    exceeds_threshold: bool
    risk_level: str
    potential_penalty: Decimal
    currency: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": str(self.total),
            "tax": str(self.tax),
            "subTotal": str(self.sub_total),
            "threshold": str(self.threshold),
            "exceedsThreshold": self.exceeds_threshold,
            "riskLevel": self.risk_level,
            "potentialPenalty": str(self.potential_penalty),
            "currency": self.currency,
        }


@dataclass(frozen=True, slots=True)
class FlaggedTransaction:
    transaction: Transaction
    risk: RiskAssessment
    company_id: int
    tenant_id: str

    def to_dict(self) -> dict[str, Any]:
        t = self.transaction
        return {
            "transactionId": t.id,
            "type": t.type,
            "counterpartyName": t.counterparty_name,
            "date": t.date,
            "companyId": self.company_id,
            "tenantId": self.tenant_id,
            "moneyAtRisk": self.risk.to_dict(),
        }


@dataclass(slots=True)
class UploadLink:
    link_id: str
    token: str
    transaction_id: str
    company_id: int
    tenant_id: str
    transaction_type: str
    expires_at: datetime
    created_at: datetime
    used: bool = False
    used_at: datetime | None = None
    resolved_at: datetime | None = None
    file_name: str | None = None
    file_url: str | None = None
    file_size: int | None = None

    def is_live(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now

    def is_expired(self, now: datetime) -> bool:
        return not self.used and self.expires_at <= now


@dataclass(frozen=True, slots=True)
class NotificationConfig:
    company_id: int
    sms_enabled: bool = False
    email_enabled: bool = False
    phone_number: str | None = None
    email_address: str | None = None
    threshold: Decimal | None = None


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    scope: str
    key: str
    error_type: str
    message: str
    retryable: bool = False
    category: str = RETRY_LATER

    @classmethod
    def from_exception(cls, *, scope: str, key: str, exc: BaseException) -> "ErrorRecord":
        if isinstance(exc, AttachmentSyncError):
            return cls(
                scope=scope,
                key=key,
                error_type=type(exc).__name__,
                message=str(exc),
                retryable=exc.retryable,
                category=exc.category,
            )
        return cls(scope=scope, key=key, error_type=type(exc).__name__, message=str(exc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "key": self.key,
            "errorType": self.error_type,
            "error": self.message,
            "retryable": self.retryable,
            "category": self.category,
        }


@dataclass(slots=True)
class PageFetchStats:
    resource_type: str
    pages_fetched: int = 0
    record_count: int = 0
    stop_reason: str = "end"
    safety_abort: AttachmentSyncError | None = None


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    """Tagged result of fetching one resource type."""

    resource_type: str
    records: list[dict[str, Any]] = field(default_factory=list)
    error: AttachmentSyncError | None = None
    stats: PageFetchStats | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class ChannelResult:
    attempted: bool = False
    success: bool = False
    message_id: str | None = None
    error: str | None = None
    skipped_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "success": self.success,
            "messageId": self.message_id,
            "error": self.error,
            "skippedReason": self.skipped_reason,
        }


@dataclass(slots=True)
class NotificationResult:
    sms: ChannelResult = field(default_factory=ChannelResult)
    email: ChannelResult = field(default_factory=ChannelResult)

    @property
    def success(self) -> bool:
        return self.sms.success or self.email.success

    @property
    def notifications_sent(self) -> int:
        return int(self.sms.success) + int(self.email.success)

    @property
    def attempted(self) -> bool:
        return self.sms.attempted or self.email.attempted

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "notificationsSent": self.notifications_sent,
            "sms": self.sms.to_dict(),
            "email": self.email.to_dict(),
        }


@dataclass(slots=True)
class DetectionReport:
    company_id: int
    tenant_id: str
    flagged: list[FlaggedTransaction] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    fetched_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "companyId": self.company_id,
            "tenantId": self.tenant_id,
            "fetchedCount": self.fetched_count,
            "flagged": [f.to_dict() for f in self.flagged],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass(slots=True)
class ProcessSummary:
    company_id: int
    tenant_id: str | None = None
    total_flagged: int = 0
    high_risk_count: int = 0
    low_risk_count: int = 0
    links_created: int = 0
    links_reused: int = 0
    links_extended: int = 0
    notification_attempts: int = 0
    notifications_sent: int = 0
    errors: list[ErrorRecord] = field(default_factory=list)
    processed_at: datetime = field(default_factory=utcnow)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "companyId": self.company_id,
            "tenantId": self.tenant_id,
            "totalTransactions": self.total_flagged,
            "highRiskCount": self.high_risk_count,
            "lowRiskCount": self.low_risk_count,
            "linksCreated": self.links_created,
            "linksReused": self.links_reused,
            "linksExtended": self.links_extended,
            "notificationAttempts": self.notification_attempts,
            "notificationsSent": self.notifications_sent,
            "errors": [e.to_dict() for e in self.errors],
            "processedAt": self.processed_at.isoformat(),
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    connected: bool
    is_token_valid: bool
    needs_oauth: bool
    has_credentials: bool
    expires_at: datetime | None = None
    tenants: tuple[TenantRef, ...] = ()
    status: str | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class TokenHealth:
    status: str
    message: str
    needs_reconnection: bool
    days_until_expiry: int | None = None
    refresh_token_age_days: int | None = None
    access_token_expired: bool = False


@dataclass(frozen=True, slots=True)
class DuplicateLinkStat:
    transaction_id: str
    link_count: int
    first_created: datetime
    latest_created: datetime
