"""Run missing-attachment detection/remediation for one company from the terminal.

Local state lives in JSON files (see --state-dir):
- connections.json   Xero connections (tokens, authorized tenants)
- upload_links.json  issued upload links
- notification_configs.json  per-company SMS/email settings

Safe output policy:
- Never print access/refresh tokens.
- Print only summaries (counts, transaction ids, error messages).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

# Ensure `import src.*` works when running as `python scripts/...` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.backend.v4.config.logging_setup import configure_logging
from src.backend.v4.config.settings import AttachmentSyncSettings
from src.backend.v4.integrations.notification_channels import (
    SmtpEmailProvider,
    TwilioSmsProvider,
)
from src.backend.v4.integrations.stores import (
    JsonFileConnectionStore,
    JsonFileNotificationConfigStore,
    JsonFileUploadLinkStore,
)
from src.backend.v4.integrations.token_cipher import TokenCipher
from src.backend.v4.integrations.xero_auth import XeroTokenManager
from src.backend.v4.integrations.xero_client import XeroClient
from src.backend.v4.use_cases.missing_attachments import MissingAttachmentOrchestrator
from src.backend.v4.use_cases.notification_dispatcher import NotificationDispatcher
from src.backend.v4.use_cases.upload_links import UploadLinkManager


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


async def _run(args: argparse.Namespace, settings: AttachmentSyncSettings) -> dict[str, Any]:
    state_dir = Path(args.state_dir)
    connections = JsonFileConnectionStore(state_dir / "connections.json")
    tokens = XeroTokenManager(
        settings=settings.xero,
        store=connections,
        cipher=TokenCipher(settings.xero.token_encryption_key),
    )

    if args.command == "status":
        status = await tokens.get_connection_status(args.company_id)
        health = await tokens.check_token_expiry_status(args.company_id)
        return {"connection": asdict(status), "tokenHealth": asdict(health)}

    links = UploadLinkManager(
        store=JsonFileUploadLinkStore(state_dir / "upload_links.json"),
        settings=settings.links,
    )
    dispatcher = NotificationDispatcher(
        sms=TwilioSmsProvider(settings.twilio) if settings.twilio.configured else None,
        email=SmtpEmailProvider(settings.smtp) if settings.smtp.configured else None,
        link_expiry_days=settings.links.expiry_days,
    )
    orchestrator = MissingAttachmentOrchestrator(
        token_manager=tokens,
        xero_client=XeroClient(settings=settings.xero, token_manager=tokens),
        link_manager=links,
        dispatcher=dispatcher,
        config_store=JsonFileNotificationConfigStore(state_dir / "notification_configs.json"),
        risk_settings=settings.risk,
    )

    if args.command == "detect":
        report = await orchestrator.detect(args.company_id, args.tenant_id)
        return report.to_dict()
    if args.command == "process":
        summary = await orchestrator.process(args.company_id, args.tenant_id)
        return summary.to_dict()
    if args.command == "digest":
        return await orchestrator.send_daily_digest([args.company_id])
    if args.command == "cleanup":
        deleted = await links.cleanup_expired(args.days_old)
        return {"deletedCount": deleted, "daysOld": args.days_old}
    raise SystemExit(f"Unknown command: {args.command}")


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("command", choices=["detect", "process", "status", "digest", "cleanup"])
    parser.add_argument("--company-id", type=int, required=True)
    parser.add_argument("--tenant-id", default=None)
    parser.add_argument("--state-dir", default=".attachment_sync")
    parser.add_argument("--days-old", type=int, default=30, help="cleanup: link age cutoff in days")
    args = parser.parse_args()

    settings = AttachmentSyncSettings.from_env()
    configure_logging(settings.log_level)

    result = asyncio.run(_run(args, settings))
    print(json.dumps(result, indent=2, default=_json_default))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
