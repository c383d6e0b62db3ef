"""Money-at-risk classification for transactions missing a receipt.

No network calls here: functions accept already-normalised transactions.

The penalty figure is an estimate for prioritising follow-up, not a tax
calculation.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from src.backend.v4.config.settings import DEFAULT_PENALTY_RATE, DEFAULT_THRESHOLD
from src.backend.v4.models.attachments import RiskAssessment, Transaction

_CENTS = Decimal("0.01")


def calculate_risk(
    transaction: Transaction,
    threshold: Decimal | None = None,
    *,
    penalty_rate: Decimal | None = None,
) -> RiskAssessment:
    threshold = DEFAULT_THRESHOLD if threshold is None else Decimal(threshold)
    rate = DEFAULT_PENALTY_RATE if penalty_rate is None else Decimal(penalty_rate)

    total = transaction.total
    tax = transaction.tax
    sub_total = transaction.sub_total if transaction.sub_total is not None else total - tax

    exceeds = total >= threshold
    penalty = (total * rate).quantize(_CENTS, rounding=ROUND_HALF_UP) if exceeds else Decimal("0")

    return RiskAssessment(
        total=total,
        tax=tax,
        sub_total=sub_total,
        threshold=threshold,
        exceeds_threshold=exceeds,
        risk_level="HIGH" if exceeds else "LOW",
        potential_penalty=penalty,
        currency=transaction.currency or "AUD",
    )


def summarize_risk(assessments: Iterable[RiskAssessment]) -> dict:
    """Counts by level plus total exposure (for digests and summaries)."""

    high = low = 0
    total_at_risk = Decimal("0")
    total_penalty = Decimal("0")
    for a in assessments:
        if a.risk_level == "HIGH":
            high += 1
        else:
            low += 1
        total_at_risk += a.total
        total_penalty += a.potential_penalty

    return {
        "total": high + low,
        "highRiskCount": high,
        "lowRiskCount": low,
        "totalAmountAtRisk": total_at_risk,
        "totalPotentialPenalty": total_penalty,
    }
