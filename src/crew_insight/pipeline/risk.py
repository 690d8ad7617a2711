"""Low-score counting heuristic used to rank subjects with no risk analysis on file.

This is an explicit fallback, not a scoring model: it keeps fleet-wide risk
questions answerable before any summaries have been generated.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from crew_insight.config import RiskHeuristicConfig
from crew_insight.reference import metrics as metric_ref
from crew_insight.types import RankedSubject, Subject


def estimated_level(score: int, config: RiskHeuristicConfig | None = None) -> str:
    config = config or RiskHeuristicConfig()
    if score >= config.high_threshold:
        return "HIGH"
    if score >= config.medium_threshold:
        return "MEDIUM"
    return "LOW"


def low_metric_factors(
    snapshot: Mapping[str, float | None],
    config: RiskHeuristicConfig | None = None,
) -> list[str]:
    """Every numeric metric under the threshold, as ``"<name> (<code>): <value>"``."""

    config = config or RiskHeuristicConfig()
    factors: list[str] = []
    for code, value in snapshot.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if value < config.low_score_threshold:
            factors.append(f"{metric_ref.describe(code)}: {value:g}")
    return factors


def rank_by_low_metrics(
    candidates: Iterable[tuple[Subject, Mapping[str, float | None]]],
    config: RiskHeuristicConfig | None = None,
) -> list[RankedSubject]:
    """Score each candidate by its count of low metrics and keep the worst.

    Candidates scoring below ``min_flagged_metrics`` are dropped; the rest are
    sorted by score, highest first, and capped at ``max_results``.
    """

    config = config or RiskHeuristicConfig()
    ranked: list[RankedSubject] = []
    for subject, snapshot in candidates:
        factors = low_metric_factors(snapshot, config)
        score = len(factors)
        if score < config.min_flagged_metrics:
            continue
        ranked.append(
            RankedSubject(
                subject=subject,
                risk_level=estimated_level(score, config),
                source="heuristic",
                score=score,
                risk_factors=factors[: config.max_risk_factors],
                metrics=dict(snapshot),
            )
        )
    ranked.sort(key=lambda item: item.score or 0, reverse=True)
    return ranked[: config.max_results]
