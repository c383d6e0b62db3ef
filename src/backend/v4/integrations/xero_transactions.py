"""Parsing helpers: raw Xero records -> `Transaction`.

Pure functions, no IO.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from src.backend.v4.models.attachments import RESOURCE_TYPES, Transaction
from src.backend.v4.models.errors import ValidationError

logger = logging.getLogger(__name__)

# Xero's legacy JSON date format, e.g. "/Date(1700000000000+0000)/"
_MS_DATE_RE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")


def resource_for_type(transaction_type: str) -> str:
    for resource, (t_type, _) in RESOURCE_TYPES.items():
        if t_type == transaction_type:
            return resource
    raise ValidationError(f"Unknown transaction type: {transaction_type}")


def _money(value: Any, field_name: str) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field_name} is not a number: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} is not a finite amount: {value!r}")
    return amount


def parse_xero_date(raw: dict[str, Any]) -> str | None:
    """Best-effort ISO date (YYYY-MM-DD) from a Xero record."""

    date_string = raw.get("DateString")
    if isinstance(date_string, str) and date_string:
        return date_string[:10]

    value = raw.get("Date")
    if not isinstance(value, str) or not value:
        return None
    m = _MS_DATE_RE.match(value)
    if m:
        return datetime.fromtimestamp(int(m.group(1)) / 1000, tz=timezone.utc).date().isoformat()
    return value[:10]


def normalise_transaction(resource_type: str, raw: dict[str, Any]) -> Transaction:
    if resource_type not in RESOURCE_TYPES:
        raise ValidationError(f"Unsupported resource type: {resource_type}")
    t_type, id_field = RESOURCE_TYPES[resource_type]

    transaction_id = raw.get(id_field)
    if not transaction_id:
        raise ValidationError(f"{resource_type} record missing {id_field}")

    total = _money(raw.get("Total"), "Total")
    tax = _money(raw.get("TotalTax"), "TotalTax")
    sub_total = _money(raw["SubTotal"], "SubTotal") if raw.get("SubTotal") is not None else None
    contact = raw.get("Contact") or {}

    return Transaction(
        id=str(transaction_id),
        type=t_type,
        total=total,
        tax=tax,
        has_attachment=bool(raw.get("HasAttachments")),
        counterparty_name=contact.get("Name") if isinstance(contact, dict) else None,
        currency=raw.get("CurrencyCode") or "AUD",
        sub_total=sub_total,
        date=parse_xero_date(raw),
        raw=raw,
    )


def normalise_records(resource_type: str, records: Iterable[dict[str, Any]]) -> list[Transaction]:
    """Normalise a page set, skipping (and logging) malformed records."""

    out: list[Transaction] = []
    for raw in records:
        try:
            out.append(normalise_transaction(resource_type, raw))
        except ValidationError as e:
            logger.warning("Skipping %s record: %s", resource_type, e)
    return out


def missing_attachments(transactions: Iterable[Transaction]) -> list[Transaction]:
    return [t for t in transactions if not t.has_attachment]
