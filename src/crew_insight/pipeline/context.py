"""Context assembly: decide what data a question needs and fetch it."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

from crew_insight.config import PipelineConfig
from crew_insight.data.access import DataAccess
from crew_insight.errors import SubjectNotFoundError
from crew_insight.pipeline.risk import rank_by_low_metrics
from crew_insight.pipeline.understanding import Intent, QueryUnderstanding
from crew_insight.types import RankedSubject, Subject, SubjectContext, SummaryRecord

logger = logging.getLogger(__name__)

MULTI_SUBJECT_KEYWORDS = (
    "high-risk",
    "high risk",
    "risk crew",
    "show me",
    "list",
    "all crew",
    "find crew",
)

ELEVATED_RISK_LEVELS = ("HIGH", "CRITICAL")


def _today() -> date:
    return datetime.now(timezone.utc).date()


def wants_multiple_subjects(question: str, understanding: QueryUnderstanding) -> bool:
    lowered = question.lower()
    if any(keyword in lowered for keyword in MULTI_SUBJECT_KEYWORDS):
        return True
    return (
        understanding.intent is Intent.RISK_ANALYSIS and not understanding.entities.subjects
    )


class ContextAssembler:
    """Builds a fresh :class:`SubjectContext` per request.

    Branches, in priority order: multi-subject listing, a single resolved
    subject, or no subject at all. Resolution failures in the chat path leave
    the context empty rather than raising.
    """

    def __init__(
        self,
        data: DataAccess,
        *,
        config: PipelineConfig | None = None,
        today: Callable[[], date] = _today,
    ) -> None:
        self.data = data
        self.config = config or PipelineConfig()
        self._today = today

    def assemble(self, question: str, understanding: QueryUnderstanding) -> SubjectContext:
        if wants_multiple_subjects(question, understanding):
            ranked = self.rank_subjects()
            logger.info("Multi-subject context with %d subjects", len(ranked))
            return SubjectContext(branch="multi_subject", ranked_subjects=ranked)

        references = understanding.entities.subjects
        if len(references) == 1:
            subject = self.resolve_subject(references[0])
            if subject is None:
                logger.info("Subject reference %r did not resolve", references[0])
                return SubjectContext(branch="single_subject")
            return self.gather_subject(subject.subject_id, include_history=False)

        return SubjectContext(branch="none")

    def resolve_subject(self, reference: str) -> Subject | None:
        subject = self.data.get_subject_by_code(reference)
        if subject is not None:
            return subject
        matches = self.data.search_subjects(reference, limit=self.config.fuzzy_search_limit)
        return matches[0] if matches else None

    def gather_subject(self, subject_id: int, *, include_history: bool = False) -> SubjectContext:
        """Full context for one subject; raises when the subject is unknown.

        Without history, experience is limited to recent assignments and events
        to the configured lookback window.
        """

        subject = self.data.get_subject(subject_id)
        if subject is None:
            raise SubjectNotFoundError(subject_id)

        if include_history:
            experience = self.data.get_experience(subject_id)
            events = self.data.get_events(subject_id)
        else:
            experience = self.data.get_experience(
                subject_id, months=self.config.recent_experience_months
            )
            since = self._today() - timedelta(days=self.config.event_lookback_days)
            events = self.data.get_events(subject_id, since=since)

        return SubjectContext(
            branch="single_subject",
            subject=subject,
            metrics=self.data.get_metric_snapshot(subject_id),
            events=events,
            experience=experience,
            certifications=self.data.get_certifications(subject_id),
        )

    def rank_subjects(self) -> list[RankedSubject]:
        try:
            ranked = self._rank_from_summaries()
        except Exception as exc:
            logger.warning("Summary lookup failed, ranking by low metric counts: %s", exc)
            return self._rank_heuristically()
        if ranked:
            return ranked
        logger.info("No elevated-risk summaries on file, ranking by low metric counts")
        return self._rank_heuristically()

    def _rank_from_summaries(self) -> list[RankedSubject]:
        limit = self.config.risk.max_results
        summaries: list[SummaryRecord] = []
        for level in ELEVATED_RISK_LEVELS:
            summaries.extend(self.data.get_summaries_by_risk_level(level, limit=limit))

        first_by_subject: dict[int, SummaryRecord] = {}
        for summary in summaries:
            first_by_subject.setdefault(summary.subject_id, summary)

        ranked: list[RankedSubject] = []
        for subject_id, summary in list(first_by_subject.items())[:limit]:
            subject = self.data.get_subject(subject_id)
            if subject is None:
                continue
            snapshot = {
                reading.code: reading.score for reading in self.data.get_metric_snapshot(subject_id)
            }
            ranked.append(
                RankedSubject(
                    subject=subject,
                    risk_level=summary.risk_level,
                    source="summary",
                    risk_indicators=list(summary.risk_indicators),
                    metrics=snapshot,
                )
            )
        return ranked

    def _rank_heuristically(self) -> list[RankedSubject]:
        risk = self.config.risk
        candidates = []
        for subject in self.data.list_subjects(limit=risk.sample_size):
            try:
                snapshot = {
                    reading.code: reading.score
                    for reading in self.data.get_metric_snapshot(subject.subject_id)
                }
            except Exception as exc:
                logger.warning("Skipping subject %s in risk ranking: %s", subject.subject_id, exc)
                continue
            candidates.append((subject, snapshot))
        return rank_by_low_metrics(candidates, risk)
