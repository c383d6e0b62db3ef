"""Missing-attachment detection and remediation runs.

Flow per company:
token manager (valid token + tenant) -> fetch each resource type concurrently
-> keep records without attachments -> classify risk -> per flagged
transaction: upload link -> notification -> summary.

Failures are isolated: one resource type or one transaction failing is
recorded as an `ErrorRecord` and the run continues.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from src.backend.v4.config.settings import RiskSettings
from src.backend.v4.integrations.stores import NotificationConfigStore
from src.backend.v4.integrations.xero_auth import XeroTokenManager
from src.backend.v4.integrations.xero_client import XeroClient
from src.backend.v4.integrations.xero_transactions import (
    missing_attachments,
    normalise_records,
    resource_for_type,
)
from src.backend.v4.models.attachments import (
    RESOURCE_TYPES,
    DetectionReport,
    ErrorRecord,
    FlaggedTransaction,
    NotificationConfig,
    ProcessSummary,
    UploadLink,
)
from src.backend.v4.models.errors import AttachmentSyncError
from src.backend.v4.use_cases.notification_dispatcher import NotificationDispatcher
from src.backend.v4.use_cases.risk_classifier import calculate_risk, summarize_risk
from src.backend.v4.use_cases.upload_links import UploadLinkManager

logger = logging.getLogger(__name__)


class MissingAttachmentOrchestrator:
    def __init__(
        self,
        *,
        token_manager: XeroTokenManager,
        xero_client: XeroClient,
        link_manager: UploadLinkManager,
        dispatcher: NotificationDispatcher,
        config_store: NotificationConfigStore,
        risk_settings: RiskSettings | None = None,
        resource_types: Iterable[str] = tuple(RESOURCE_TYPES),
    ) -> None:
        self._tokens = token_manager
        self._xero = xero_client
        self._links = link_manager
        self._dispatcher = dispatcher
        self._configs = config_store
        self._risk = risk_settings or RiskSettings()
        self._resource_types = tuple(resource_types)

    async def detect(self, company_id: int, tenant_id: str | None = None) -> DetectionReport:
        """Flag every transaction without an attachment, with its risk.

        Raises when the tenant or a valid access token cannot be resolved;
        fetch failures for a resource type are recorded on the report. The
        token is read once and shared by every resource-type fetch.
        """

        tenant = await self._tokens.validate_tenant_access(company_id, tenant_id)
        config = await self._configs.get(company_id)
        threshold = (
            config.threshold
            if config is not None and config.threshold is not None
            else self._risk.threshold
        )

        access_token = await self._tokens.get_valid_access_token(company_id)
        outcomes = await asyncio.gather(
            *(
                self._xero.fetch_resource(rt, access_token, tenant, company_id=company_id)
                for rt in self._resource_types
            )
        )

        report = DetectionReport(company_id=company_id, tenant_id=tenant)
        for outcome in outcomes:
            if not outcome.ok:
                report.errors.append(
                    ErrorRecord.from_exception(scope="resource", key=outcome.resource_type, exc=outcome.error)
                )
                continue
            if outcome.stats is not None and outcome.stats.safety_abort is not None:
                report.errors.append(
                    ErrorRecord.from_exception(
                        scope="pagination", key=outcome.resource_type, exc=outcome.stats.safety_abort
                    )
                )

            transactions = normalise_records(outcome.resource_type, outcome.records)
            report.fetched_count += len(transactions)
            for t in missing_attachments(transactions):
                risk = calculate_risk(t, threshold, penalty_rate=self._risk.penalty_rate)
                report.flagged.append(
                    FlaggedTransaction(transaction=t, risk=risk, company_id=company_id, tenant_id=tenant)
                )

        logger.info(
            "[Company %s] %s of %s transactions missing attachments (%s fetch errors)",
            company_id,
            len(report.flagged),
            report.fetched_count,
            len(report.errors),
        )
        return report

    async def _should_stop(self, company_id: int, cancel_event: asyncio.Event | None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("[Company %s] Run cancelled", company_id)
            return True
        if not await self._tokens.is_active(company_id):
            logger.info("[Company %s] Connection no longer active, stopping run", company_id)
            return True
        return False

    async def process(
        self,
        company_id: int,
        tenant_id: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        company_name: str | None = None,
    ) -> ProcessSummary:
        summary = ProcessSummary(company_id=company_id, tenant_id=tenant_id)

        if await self._should_stop(company_id, cancel_event):
            summary.cancelled = True
            return summary

        try:
            report = await self.detect(company_id, tenant_id)
        except AttachmentSyncError as e:
            logger.error("[Company %s] Detection failed: %s", company_id, e)
            summary.errors.append(ErrorRecord.from_exception(scope="company", key=str(company_id), exc=e))
            return summary

        summary.tenant_id = report.tenant_id
        summary.errors.extend(report.errors)
        summary.total_flagged = len(report.flagged)
        summary.high_risk_count = sum(1 for f in report.flagged if f.risk.risk_level == "HIGH")
        summary.low_risk_count = summary.total_flagged - summary.high_risk_count

        if await self._should_stop(company_id, cancel_event):
            summary.cancelled = True
            return summary

        config = await self._configs.get(company_id)
        if config is None:
            logger.info("[Company %s] No notification config; links only", company_id)

        for flagged in report.flagged:
            if await self._should_stop(company_id, cancel_event):
                summary.cancelled = True
                break
            try:
                await self._remediate(flagged, config, summary, company_name=company_name)
            except AttachmentSyncError as e:
                logger.error("[Company %s] Failed on %s: %s", company_id, flagged.transaction.id, e)
                summary.errors.append(
                    ErrorRecord.from_exception(scope="transaction", key=flagged.transaction.id, exc=e)
                )
            except Exception as e:
                logger.exception("[Company %s] Unexpected error on %s", company_id, flagged.transaction.id)
                summary.errors.append(
                    ErrorRecord.from_exception(scope="transaction", key=flagged.transaction.id, exc=e)
                )

        logger.info(
            "[Company %s] Processed %s flagged transactions: %s links created, %s reused, %s notifications sent",
            company_id,
            summary.total_flagged,
            summary.links_created,
            summary.links_reused,
            summary.notifications_sent,
        )
        return summary

    async def _remediate(
        self,
        flagged: FlaggedTransaction,
        config: NotificationConfig | None,
        summary: ProcessSummary,
        *,
        company_name: str | None,
    ) -> None:
        t = flagged.transaction
        issued = await self._links.issue(t.id, flagged.company_id, flagged.tenant_id, t.type)
        if issued.action == "created":
            summary.links_created += 1
        elif issued.action == "extended":
            summary.links_extended += 1
        else:
            summary.links_reused += 1

        if config is None:
            return

        result = await self._dispatcher.send_link_notification(
            config, flagged, self._links.public_url(issued.link), company_name=company_name
        )
        if result.attempted:
            summary.notification_attempts += 1
        summary.notifications_sent += result.notifications_sent
        for channel, outcome in (("sms", result.sms), ("email", result.email)):
            if outcome.error:
                summary.errors.append(
                    ErrorRecord(
                        scope="notification",
                        key=t.id,
                        error_type="NotificationDeliveryError",
                        message=f"{channel}: {outcome.error}",
                        retryable=True,
                    )
                )

    async def send_daily_digest(self, company_ids: Iterable[int] | None = None) -> dict[str, Any]:
        wanted = set(company_ids) if company_ids is not None else None
        results: dict[str, Any] = {"companiesProcessed": 0, "emailsSent": 0, "errors": []}

        for config in await self._configs.list_email_enabled():
            if wanted is not None and config.company_id not in wanted:
                continue
            try:
                report = await self.detect(config.company_id)
                summary = summarize_risk(f.risk for f in report.flagged)
                outcome = await self._dispatcher.send_daily_digest(config, report.flagged, summary)
            except AttachmentSyncError as e:
                logger.error("[Company %s] Digest failed: %s", config.company_id, e)
                results["errors"].append(
                    ErrorRecord.from_exception(scope="company", key=str(config.company_id), exc=e).to_dict()
                )
                continue

            results["companiesProcessed"] += 1
            if outcome.success:
                results["emailsSent"] += 1
            elif outcome.error:
                results["errors"].append(
                    ErrorRecord(
                        scope="digest",
                        key=str(config.company_id),
                        error_type="NotificationDeliveryError",
                        message=outcome.error,
                        retryable=True,
                    ).to_dict()
                )

        logger.info(
            "Daily digest complete: %s emails sent to %s companies",
            results["emailsSent"],
            results["companiesProcessed"],
        )
        return results

    async def _attach_to_xero(
        self, link: UploadLink, file_name: str, content_type: str, content: bytes
    ) -> str | None:
        access_token = await self._tokens.get_valid_access_token(link.company_id)
        attachment = await self._xero.attach_file(
            resource_for_type(link.transaction_type),
            link.transaction_id,
            file_name,
            content,
            access_token,
            link.tenant_id,
            company_id=link.company_id,
            content_type=content_type,
        )
        return attachment.get("Url")

    async def accept_upload(
        self,
        link_id: str,
        token: str,
        *,
        file_name: str,
        content_type: str,
        content: bytes,
    ) -> UploadLink:
        """Attach an uploaded receipt to its Xero transaction and close the link."""

        return await self._links.accept_upload(
            link_id,
            token,
            file_name=file_name,
            content_type=content_type,
            content=content,
            attach=self._attach_to_xero,
        )
