"""
Configuration settings for missing-attachment sync.
Reads Xero, upload-link, notification and logging settings from the environment.

Services take an `AttachmentSyncSettings` instance explicitly; nothing here is a
module-level singleton.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from dotenv import dotenv_values, load_dotenv

from src.backend.v4.models.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = Decimal("82.50")
DEFAULT_PENALTY_RATE = Decimal("0.25")
XERO_TOKEN_URL = "https://identity.xero.com/connect/token"
XERO_API_BASE_URL = "https://api.xero.com/api.xro/2.0"
DEFAULT_FRONTEND_URL = "http://localhost:3000"


def _load_env_files() -> None:
    load_dotenv(override=False)

    # Allow local runs with only `.env.example` filled. Blank placeholders in the
    # example file must not override real values.
    if not os.environ.get("XERO_CLIENT_ID"):
        example_path = os.path.abspath(".env.example")
        if os.path.exists(example_path):
            for k, v in (dotenv_values(example_path) or {}).items():
                if not k or v is None or v == "":
                    continue
                if not os.environ.get(k):
                    os.environ[k] = v


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a decimal amount, got {raw!r}")


@dataclass(frozen=True, slots=True)
class XeroSettings:
    client_id: str | None = None
    client_secret: str | None = None
    token_url: str = XERO_TOKEN_URL
    api_base_url: str = XERO_API_BASE_URL
    timeout_seconds: float = 15.0
    refresh_timeout_seconds: float = 10.0
    page_size: int = 100
    max_pages: int = 500
    page_delay_seconds: float = 0.2
    token_expiry_buffer_seconds: int = 300
    refresh_max_retries: int = 2
    refresh_retry_delay_seconds: float = 2.0
    token_encryption_key: str | None = None


@dataclass(frozen=True, slots=True)
class UploadLinkSettings:
    frontend_url: str = DEFAULT_FRONTEND_URL
    expiry_days: int = 7
    max_file_bytes: int = 10 * 1024 * 1024
    allowed_content_types: tuple[str, ...] = ("image/jpeg", "image/png", "application/pdf")


@dataclass(frozen=True, slots=True)
class RiskSettings:
    threshold: Decimal = DEFAULT_THRESHOLD
    penalty_rate: Decimal = DEFAULT_PENALTY_RATE


@dataclass(frozen=True, slots=True)
class TwilioSettings:
    account_sid: str | None = None
    auth_token: str | None = None
    from_number: str | None = None
    api_base_url: str = "https://api.twilio.com/2010-04-01"

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)


@dataclass(frozen=True, slots=True)
class SmtpSettings:
    host: str | None = None
    port: int = 587
    username: str | None = None
    password: str | None = None
    from_address: str | None = None
    use_tls: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_address)


@dataclass(frozen=True, slots=True)
class AttachmentSyncSettings:
    xero: XeroSettings = field(default_factory=XeroSettings)
    links: UploadLinkSettings = field(default_factory=UploadLinkSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    twilio: TwilioSettings = field(default_factory=TwilioSettings)
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AttachmentSyncSettings":
        _load_env_files()

        xero = XeroSettings(
            client_id=os.environ.get("XERO_CLIENT_ID") or None,
            client_secret=os.environ.get("XERO_CLIENT_SECRET") or None,
            token_url=os.environ.get("XERO_TOKEN_URL", XERO_TOKEN_URL),
            api_base_url=os.environ.get("XERO_API_BASE_URL", XERO_API_BASE_URL).rstrip("/"),
            timeout_seconds=_env_float("XERO_HTTP_TIMEOUT_SECONDS", 15.0),
            page_size=_env_int("XERO_PAGE_SIZE", 100),
            max_pages=_env_int("XERO_MAX_PAGES", 500),
            page_delay_seconds=_env_float("XERO_PAGE_DELAY_SECONDS", 0.2),
            refresh_max_retries=_env_int("TOKEN_REFRESH_MAX_RETRIES", 2),
            refresh_retry_delay_seconds=_env_float("TOKEN_REFRESH_RETRY_DELAY_SECONDS", 2.0),
            token_encryption_key=os.environ.get("XERO_TOKEN_ENCRYPTION_KEY") or None,
        )
        if not xero.client_id or not xero.client_secret:
            # Per-company credentials may still be stored on the connection record.
            logger.warning("XERO_CLIENT_ID / XERO_CLIENT_SECRET not set in environment")

        links = UploadLinkSettings(
            frontend_url=os.environ.get("FRONTEND_URL", DEFAULT_FRONTEND_URL).rstrip("/"),
            expiry_days=_env_int("UPLOAD_LINK_EXPIRY_DAYS", 7),
        )
        risk = RiskSettings(
            threshold=_env_decimal("MISSING_ATTACHMENT_THRESHOLD", DEFAULT_THRESHOLD),
            penalty_rate=_env_decimal("MISSING_ATTACHMENT_PENALTY_RATE", DEFAULT_PENALTY_RATE),
        )
        twilio = TwilioSettings(
            account_sid=os.environ.get("TWILIO_ACCOUNT_SID") or None,
            auth_token=os.environ.get("TWILIO_AUTH_TOKEN") or None,
            from_number=os.environ.get("TWILIO_PHONE_NUMBER") or None,
        )
        smtp = SmtpSettings(
            host=os.environ.get("SMTP_HOST") or None,
            port=_env_int("SMTP_PORT", 587),
            username=os.environ.get("SMTP_USERNAME") or None,
            password=os.environ.get("SMTP_PASSWORD") or None,
            from_address=os.environ.get("SMTP_FROM_ADDRESS") or None,
            use_tls=os.environ.get("SMTP_USE_TLS", "true").lower() in {"1", "true", "yes"},
        )

        return cls(
            xero=xero,
            links=links,
            risk=risk,
            twilio=twilio,
            smtp=smtp,
            log_level=os.environ.get("ATTACHMENT_SYNC_LOG_LEVEL", "INFO"),
        )
