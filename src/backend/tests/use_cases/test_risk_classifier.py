from __future__ import annotations

from decimal import Decimal

import pytest

from src.backend.v4.models.attachments import Transaction
from src.backend.v4.use_cases.risk_classifier import calculate_risk, summarize_risk


def _txn(total: str, tax: str = "0", **kw) -> Transaction:
    return Transaction(
        id="t-1",
        type="Invoice",
        total=Decimal(total),
        tax=Decimal(tax),
        has_attachment=False,
        **kw,
    )


@pytest.mark.parametrize(
    "total, level",
    [
        ("82.50", "HIGH"),
        ("82.49", "LOW"),
        ("150.00", "HIGH"),
        ("0", "LOW"),
        ("-500.00", "LOW"),
    ],
)
def test_high_iff_total_at_or_above_default_threshold(total: str, level: str) -> None:
    risk = calculate_risk(_txn(total))
    assert risk.risk_level == level
    assert risk.exceeds_threshold is (level == "HIGH")
    assert risk.threshold == Decimal("82.50")


def test_penalty_only_when_exceeding() -> None:
    high = calculate_risk(_txn("150.00", "13.64"))
    assert high.potential_penalty == Decimal("37.50")
    assert high.sub_total == Decimal("136.36")

    low = calculate_risk(_txn("40.00"))
    assert low.potential_penalty == Decimal("0")


def test_penalty_rounded_to_cents() -> None:
    risk = calculate_risk(_txn("100.01"))
    assert risk.potential_penalty == Decimal("25.00")


def test_custom_threshold_and_penalty_rate() -> None:
    risk = calculate_risk(_txn("150.00"), Decimal("200"))
    assert risk.risk_level == "LOW"

    risk = calculate_risk(_txn("200.00"), Decimal("200"), penalty_rate=Decimal("0.10"))
    assert risk.risk_level == "HIGH"
    assert risk.potential_penalty == Decimal("20.00")


def test_explicit_sub_total_and_currency_carried_through() -> None:
    risk = calculate_risk(_txn("110", "10", sub_total=Decimal("99"), currency="NZD"))
    assert risk.sub_total == Decimal("99")
    assert risk.currency == "NZD"
    assert risk.to_dict()["riskLevel"] == "HIGH"


def test_summarize_risk() -> None:
    summary = summarize_risk([calculate_risk(_txn("150.00")), calculate_risk(_txn("40.00"))])

    assert summary["total"] == 2
    assert summary["highRiskCount"] == 1
    assert summary["lowRiskCount"] == 1
    assert summary["totalAmountAtRisk"] == Decimal("190.00")
    assert summary["totalPotentialPenalty"] == Decimal("37.50")
