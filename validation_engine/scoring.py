"""Score aggregation: three server-scored tiers folded into one 0-100 value.

Budget
------
- **Secondary** research is scored by the backend on a 0-20 scale and counted as is.
- **Qualitative** testing is scored 0-10 and rescaled to a 30-point budget.
- **Quantitative** testing is scored 0-50 and counted as is.

A tier whose score has not been fetched yet contributes 0.  Every input is
clamped to its own budget before summing, and the total is clamped to 0-100,
so out-of-range or garbage server values can never push the result outside
the scale.

Overall status thresholds (evaluated high to low):

======  ===========
 >= 90  excellent
 >= 70  good
 >= 50  average
 else   bad
======  ===========
"""
from __future__ import annotations

import logging
from typing import Any

from validation_engine.models import OverallStatus, TierScoreStatus, ValidationScore, ValidationTier
from validation_engine.utils import clamp, round_half_up, to_number

log = logging.getLogger(__name__)

SECONDARY_MAX = 20
QUALITATIVE_RAW_MAX = 10
QUALITATIVE_MAX = 30
QUANTITATIVE_MAX = 50


# ---------------------------------------------------------------------------
# Tier contributions
# ---------------------------------------------------------------------------


def secondary_points(score_20: Any) -> float:
    return clamp(to_number(score_20), 0, SECONDARY_MAX)


def qualitative_points(score_10: Any) -> int:
    raw = clamp(to_number(score_10), 0, QUALITATIVE_RAW_MAX)
    return round_half_up(raw / QUALITATIVE_RAW_MAX * QUALITATIVE_MAX)


def quantitative_points(score_50: Any) -> float:
    return clamp(to_number(score_50), 0, QUANTITATIVE_MAX)


def compute_overall_score(secondary: Any = None, qualitative_raw: Any = None, quantitative_raw: Any = None) -> int:
    """Return the aggregate validation score as an int in [0, 100]."""
    total = secondary_points(secondary) + qualitative_points(qualitative_raw) + quantitative_points(quantitative_raw)
    return int(clamp(round_half_up(total), 0, 100))


def overall_status(score: int) -> OverallStatus:
    if score >= 90:
        return OverallStatus.EXCELLENT
    if score >= 70:
        return OverallStatus.GOOD
    if score >= 50:
        return OverallStatus.AVERAGE
    return OverallStatus.BAD


def recommendation(status: OverallStatus) -> str:
    return "proceed" if status in (OverallStatus.EXCELLENT, OverallStatus.GOOD) else "pivot"


# ---------------------------------------------------------------------------
# Per-tier status
# ---------------------------------------------------------------------------


def secondary_status(score_20: Any) -> TierScoreStatus:
    s = secondary_points(score_20)
    if s >= 17:
        return TierScoreStatus.EXCELLENT
    if s >= 14:
        return TierScoreStatus.GOOD
    if s >= 11:
        return TierScoreStatus.WARNING
    return TierScoreStatus.POOR


def qualitative_status(score_10: Any) -> TierScoreStatus:
    s = clamp(to_number(score_10), 0, QUALITATIVE_RAW_MAX)
    if s >= 8:
        return TierScoreStatus.EXCELLENT
    if s >= 6:
        return TierScoreStatus.GOOD
    if s >= 4:
        return TierScoreStatus.WARNING
    return TierScoreStatus.POOR


def quantitative_status(score_50: Any) -> TierScoreStatus:
    percent = round_half_up(quantitative_points(score_50) * 2)
    if percent >= 85:
        return TierScoreStatus.EXCELLENT
    if percent >= 70:
        return TierScoreStatus.GOOD
    if percent >= 55:
        return TierScoreStatus.WARNING
    return TierScoreStatus.POOR


def build_tier_score(
    tier: ValidationTier,
    raw: Any,
    insights: list[str] | None = None,
    data: dict[str, Any] | None = None,
) -> ValidationScore:
    """Wrap a raw server score in a ValidationScore with its display value and status."""
    if tier is ValidationTier.SECONDARY:
        score = round_half_up(secondary_points(raw) * 5)
        status = secondary_status(raw)
    elif tier is ValidationTier.QUALITATIVE:
        score = qualitative_points(raw)
        status = qualitative_status(raw)
    elif tier is ValidationTier.QUANTITATIVE:
        score = round_half_up(quantitative_points(raw) * 2)
        status = quantitative_status(raw)
    else:
        raise ValueError(f"Tier {tier.value!r} is not scored on its own")
    return ValidationScore(
        tier=tier,
        score=int(clamp(score, 0, 100)),
        status=status,
        insights=list(insights or []),
        data=dict(data or {}),
    )


# ---------------------------------------------------------------------------
# Deep-research report summary
# ---------------------------------------------------------------------------

_FILLER_INSIGHT = "Key finding identified"


def extract_report_insights(report: dict[str, Any], limit: int = 4) -> list[str]:
    """Pick headline bullets from a deep-research report, padded to *limit*."""
    insights: list[str] = []
    market = report.get("market_insights") or []
    competitive = report.get("competitive_analysis") or []
    personas = report.get("personas") or []

    if isinstance(market, list) and market:
        insights.append(str(market[0]))
    if isinstance(competitive, list) and competitive:
        first = competitive[0]
        name = first.get("competitor") if isinstance(first, dict) else None
        insights.append(f"Competitive: {name or 'key player'}")
    if report.get("tam"):
        insights.append(f"TAM: {report['tam']}")
    if isinstance(personas, list) and personas:
        first = personas[0]
        name = first.get("name") if isinstance(first, dict) else None
        insights.append(f"Persona: {name or 'Target persona identified'}")

    while len(insights) < limit:
        insights.append(_FILLER_INSIGHT)
    return insights[:limit]
