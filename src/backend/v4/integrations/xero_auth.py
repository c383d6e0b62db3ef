"""Xero OAuth token lifecycle.

Purpose
- Hand out an access token that is known to be valid (not expiring within the
  buffer) or has just been refreshed.
- Keep refresh, tenant validation and connection health in one place.

The browser-facing authorization-code flow lives elsewhere; this module only
works with connections that already exist in the `ConnectionStore`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import httpx

from src.backend.v4.config.settings import XeroSettings
from src.backend.v4.integrations.stores import ConnectionStore
from src.backend.v4.integrations.token_cipher import TokenCipher
from src.backend.v4.models.attachments import (
    ConnectionRecord,
    ConnectionStatus,
    TokenHealth,
    utcnow,
)
from src.backend.v4.models.errors import (
    AuthenticationError,
    ConfigurationError,
    ReconnectRequiredError,
    TransientServerError,
)

logger = logging.getLogger(__name__)

REFRESH_TOKEN_LIFETIME_DAYS = 60
DEFAULT_EXPIRES_IN_SECONDS = 1800


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry for transient refresh failures."""

    max_retries: int = 2
    delay_seconds: float = 2.0


class XeroTokenManager:
    def __init__(
        self,
        *,
        settings: XeroSettings,
        store: ConnectionStore,
        cipher: TokenCipher | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._store = store
        self._cipher = cipher or TokenCipher(settings.token_encryption_key)
        self._http = http_client
        self._retry = retry_policy or RetryPolicy(
            max_retries=settings.refresh_max_retries,
            delay_seconds=settings.refresh_retry_delay_seconds,
        )
        self._clock = clock
        self._sleep = sleep

    async def _load(self, company_id: int) -> ConnectionRecord:
        record = await self._store.get(company_id)
        if record is None:
            raise AuthenticationError(f"No Xero connection found for company {company_id}")
        return record

    def _is_expiring(self, record: ConnectionRecord) -> bool:
        if record.token_expiry is None:
            return True
        buffer = timedelta(seconds=self._settings.token_expiry_buffer_seconds)
        return record.token_expiry <= self._clock() + buffer

    async def get_valid_access_token(self, company_id: int) -> str:
        record = await self._load(company_id)
        if record.status in ("revoked", "disconnected"):
            raise ReconnectRequiredError(
                f"Xero connection for company {company_id} is {record.status}; please reconnect"
            )

        if not record.access_token or self._is_expiring(record):
            logger.info("Access token expiring for company %s, refreshing", company_id)
            record = await self.refresh_access_token(company_id)

        return self.access_token_of(record)

    def access_token_of(self, record: ConnectionRecord) -> str:
        """Plain access token from a stored record."""

        token = self._cipher.decrypt(record.access_token, scheme=record.secret_scheme)
        if not token:
            raise AuthenticationError(f"No access token stored for company {record.company_id}")
        return token

    def _credentials(self, record: ConnectionRecord) -> tuple[str, str]:
        client_id = record.client_id or self._settings.client_id
        client_secret = record.client_secret or self._settings.client_secret
        if not client_id or not client_secret:
            raise ConfigurationError("Missing client credentials for Xero token refresh")
        return client_id, client_secret

    async def _post_refresh(self, refresh_token: str, auth: tuple[str, str]) -> httpx.Response:
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        headers = {"Accept": "application/json"}
        timeout = self._settings.refresh_timeout_seconds
        if self._http is not None:
            return await self._http.post(
                self._settings.token_url, data=data, auth=auth, headers=headers, timeout=timeout
            )
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(self._settings.token_url, data=data, auth=auth, headers=headers)

    async def refresh_access_token(self, company_id: int) -> ConnectionRecord:
        """Exchange the stored refresh token for a new token pair.

        Network errors, timeouts and 5xx responses are retried up to
        `RetryPolicy.max_retries` times. Any 4xx is terminal:
        `invalid_grant` raises `ReconnectRequiredError`, everything else
        `AuthenticationError`. The new pair is persisted in a single store call.
        """

        record = await self._load(company_id)
        auth = self._credentials(record)
        refresh_token = self._cipher.decrypt(record.refresh_token, scheme=record.secret_scheme)
        if not refresh_token:
            raise ReconnectRequiredError(
                f"No refresh token available for company {company_id}; please reconnect"
            )

        attempts = self._retry.max_retries + 1
        last_error: TransientServerError | None = None
        payload: dict[str, Any] | None = None

        for attempt in range(1, attempts + 1):
            try:
                resp = await self._post_refresh(refresh_token, auth)
            except httpx.TransportError as e:
                last_error = TransientServerError(f"Token refresh network error: {type(e).__name__}")
            else:
                if resp.status_code >= 500:
                    last_error = TransientServerError(
                        f"Token endpoint returned HTTP {resp.status_code}",
                        status_code=resp.status_code,
                    )
                elif resp.status_code >= 400:
                    await self._raise_terminal(record, resp)
                else:
                    payload = resp.json()
                    break

            if attempt < attempts:
                logger.warning(
                    "Token refresh for company %s failed (attempt %s/%s): %s; retrying in %ss",
                    company_id,
                    attempt,
                    attempts,
                    last_error,
                    self._retry.delay_seconds,
                )
                await self._sleep(self._retry.delay_seconds)

        if payload is None:
            assert last_error is not None
            logger.error("Token refresh for company %s gave up after %s attempts", company_id, attempts)
            raise last_error

        access_token = payload.get("access_token")
        if not access_token:
            raise AuthenticationError("Token refresh response missing access_token")
        # Xero rotates refresh tokens; keep the old one only if none came back.
        new_refresh = payload.get("refresh_token") or refresh_token
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        now = self._clock()

        updated = await self._store.update_tokens(
            company_id,
            access_token=self._cipher.encrypt(access_token),
            refresh_token=self._cipher.encrypt(new_refresh),
            token_expiry=now + timedelta(seconds=expires_in),
            token_created_at=now,
            secret_scheme=self._cipher.write_scheme,
        )
        logger.info("Refreshed Xero token for company %s", company_id)
        return updated

    async def _raise_terminal(self, record: ConnectionRecord, resp: httpx.Response) -> None:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        error_code = body.get("error") if isinstance(body, dict) else None

        if error_code == "invalid_grant":
            await self._store.upsert(replace(record, status="expired"))
            logger.error("Refresh token rejected for company %s (invalid_grant)", record.company_id)
            raise ReconnectRequiredError(
                "Refresh token has expired or been revoked; please reconnect to Xero",
                status_code=resp.status_code,
            )
        if error_code in ("invalid_client", "unauthorized_client"):
            raise AuthenticationError(
                f"Xero rejected the client credentials ({error_code})",
                status_code=resp.status_code,
            )
        raise AuthenticationError(
            f"Token refresh failed with HTTP {resp.status_code}: {error_code or resp.text[:200]}",
            status_code=resp.status_code,
        )

    async def validate_tenant_access(
        self, company_id: int, requested_tenant_id: str | None = None
    ) -> str:
        record = await self._load(company_id)
        tenants = record.authorized_tenants
        if not tenants:
            raise AuthenticationError("No authorized tenants found. Please reconnect to Xero.")

        if requested_tenant_id is None:
            return tenants[0].tenant_id
        if any(t.tenant_id == requested_tenant_id for t in tenants):
            return requested_tenant_id

        logger.warning(
            "Tenant %s not authorized for company %s, using %s",
            requested_tenant_id,
            company_id,
            tenants[0].tenant_id,
        )
        return tenants[0].tenant_id

    async def is_active(self, company_id: int) -> bool:
        record = await self._store.get(company_id)
        return record is not None and record.status == "active"

    async def get_connection_status(self, company_id: int) -> ConnectionStatus:
        record = await self._store.get(company_id)
        has_env_credentials = bool(self._settings.client_id and self._settings.client_secret)
        if record is None:
            return ConnectionStatus(
                connected=False,
                is_token_valid=False,
                needs_oauth=True,
                has_credentials=has_env_credentials,
                message="Not connected to Xero",
            )

        connected = record.status == "active" and bool(record.refresh_token)
        tenants = tuple(record.authorized_tenants)
        if not connected:
            message = "Xero connection needs to be re-authorized"
        elif not tenants:
            message = "Connected to Xero but no organizations found; please reconnect"
        else:
            message = f"Connected to {len(tenants)} Xero organization(s)"

        return ConnectionStatus(
            connected=connected,
            is_token_valid=connected and not self._is_expiring(record),
            needs_oauth=not connected,
            has_credentials=bool(record.client_id and record.client_secret) or has_env_credentials,
            expires_at=record.token_expiry,
            tenants=tenants,
            status=record.status,
            message=message,
        )

    async def check_token_expiry_status(self, company_id: int) -> TokenHealth:
        record = await self._store.get(company_id)
        if record is None or not record.refresh_token:
            return TokenHealth(
                status="no_tokens",
                message="No Xero tokens found",
                needs_reconnection=True,
            )

        now = self._clock()
        created = record.token_created_at or record.updated_at
        age_days = (now - created).days if created else None

        status, message, needs_reconnection = "healthy", "Tokens are healthy", False
        if age_days is not None and age_days > 65:
            status = "expired"
            message = f"Refresh token expired {age_days - REFRESH_TOKEN_LIFETIME_DAYS} days ago"
            needs_reconnection = True
        elif age_days is not None and age_days > 55:
            status = "warning"
            message = f"Refresh token expires in {REFRESH_TOKEN_LIFETIME_DAYS - age_days} days"
        elif age_days is not None and age_days > 45:
            status = "notice"
            message = f"Refresh token expires in {REFRESH_TOKEN_LIFETIME_DAYS - age_days} days"

        access_expired = record.token_expiry is not None and record.token_expiry <= now
        if access_expired:
            status = "access_expired"
            message = "Access token expired (will be refreshed automatically)"
            needs_reconnection = False

        return TokenHealth(
            status=status,
            message=message,
            needs_reconnection=needs_reconnection,
            days_until_expiry=REFRESH_TOKEN_LIFETIME_DAYS - age_days if age_days is not None else None,
            refresh_token_age_days=age_days,
            access_token_expired=access_expired,
        )

    async def disconnect(self, company_id: int) -> None:
        await self._store.disconnect(company_id)
        logger.info("Disconnected Xero for company %s", company_id)
