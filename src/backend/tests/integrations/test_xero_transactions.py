from __future__ import annotations

from decimal import Decimal

import pytest

from src.backend.v4.integrations.xero_transactions import (
    missing_attachments,
    normalise_records,
    normalise_transaction,
    parse_xero_date,
    resource_for_type,
)
from src.backend.v4.models.errors import ValidationError


def test_normalise_invoice() -> None:
    t = normalise_transaction(
        "Invoices",
        {
            "InvoiceID": "inv-1",
            "Total": 150.0,
            "TotalTax": "13.64",
            "SubTotal": 136.36,
            "CurrencyCode": "NZD",
            "HasAttachments": False,
            "Contact": {"Name": "Acme Pty Ltd"},
            "DateString": "2025-11-03T00:00:00",
        },
    )

    assert t.id == "inv-1"
    assert t.type == "Invoice"
    assert t.total == Decimal("150.0")
    assert t.tax == Decimal("13.64")
    assert t.sub_total == Decimal("136.36")
    assert t.currency == "NZD"
    assert t.has_attachment is False
    assert t.counterparty_name == "Acme Pty Ltd"
    assert t.date == "2025-11-03"


def test_normalise_defaults() -> None:
    t = normalise_transaction("BankTransactions", {"BankTransactionID": "bt-1", "HasAttachments": True})

    assert t.type == "BankTransaction"
    assert t.total == Decimal("0")
    assert t.sub_total is None
    assert t.currency == "AUD"
    assert t.counterparty_name is None


def test_parse_legacy_json_date() -> None:
    assert parse_xero_date({"Date": "/Date(1700000000000+0000)/"}) == "2023-11-14"
    assert parse_xero_date({"Date": "2025-01-02T00:00:00"}) == "2025-01-02"
    assert parse_xero_date({}) is None


def test_malformed_records_are_skipped() -> None:
    records = [
        {"ReceiptID": "r-1", "Total": "12.50"},
        {"Total": "1.00"},  # no id
        {"ReceiptID": "r-2", "Total": "abc"},
    ]
    out = normalise_records("Receipts", records)
    assert [t.id for t in out] == ["r-1"]


def test_missing_attachments_filter() -> None:
    out = normalise_records(
        "PurchaseOrders",
        [
            {"PurchaseOrderID": "po-1", "HasAttachments": True},
            {"PurchaseOrderID": "po-2", "HasAttachments": False},
            {"PurchaseOrderID": "po-3"},
        ],
    )
    assert [t.id for t in missing_attachments(out)] == ["po-2", "po-3"]


def test_resource_for_type() -> None:
    assert resource_for_type("Invoice") == "Invoices"
    assert resource_for_type("PurchaseOrder") == "PurchaseOrders"
    with pytest.raises(ValidationError):
        resource_for_type("Journal")


@pytest.mark.parametrize("total", ["NaN", "Infinity", "-inf", "sNaN"])
def test_non_finite_totals_are_skipped(total: str) -> None:
    records = [
        {"InvoiceID": "bad", "Total": total},
        {"InvoiceID": "good", "Total": "150"},
    ]

    assert [t.id for t in normalise_records("Invoices", records)] == ["good"]
    with pytest.raises(ValidationError):
        normalise_transaction("Invoices", records[0])
