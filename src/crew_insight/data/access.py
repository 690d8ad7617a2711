"""Data-access contract consumed by the pipeline.

The relational store and its repositories live outside this package; the
pipeline only depends on this protocol.
"""

from __future__ import annotations

from datetime import date
from typing import Protocol

from crew_insight.types import (
    Benchmark,
    Certification,
    ConversationTurn,
    ExperienceRecord,
    HistoryEvent,
    MetricReading,
    Subject,
    SummaryDraft,
    SummaryRecord,
)


class DataAccess(Protocol):
    """Typed read/write operations over subjects, metrics, summaries and chat."""

    def get_subject(self, subject_id: int) -> Subject | None:
        """Look a subject up by numeric id."""

    def get_subject_by_code(self, code: str) -> Subject | None:
        """Look a subject up by exact identifier."""

    def search_subjects(self, query: str, limit: int = 5) -> list[Subject]:
        """Fuzzy name/alias search, best match first."""

    def list_subjects(self, limit: int = 50, offset: int = 0) -> list[Subject]:
        """Page through all subjects."""

    def get_metric_snapshot(self, subject_id: int) -> list[MetricReading]:
        """Current metric values with structured detail."""

    def get_events(
        self,
        subject_id: int,
        *,
        event_type: str | None = None,
        since: date | None = None,
    ) -> list[HistoryEvent]:
        """Historical events, newest first."""

    def get_experience(self, subject_id: int, *, months: int | None = None) -> list[ExperienceRecord]:
        """Service history, optionally limited to the last ``months``."""

    def get_certifications(self, subject_id: int) -> list[Certification]:
        """Certificates and training records."""

    def get_benchmark(self, code: str, rank: str | None = None) -> Benchmark | None:
        """Fleet statistics for one metric."""

    def save_summary(self, draft: SummaryDraft) -> int:
        """Persist a summary and return its id."""

    def get_latest_summary(self, subject_id: int) -> SummaryRecord | None:
        """Most recent summary for a subject."""

    def get_summary(self, summary_id: int) -> SummaryRecord | None:
        """Summary by id."""

    def get_summaries_by_risk_level(self, risk_level: str, limit: int = 20) -> list[SummaryRecord]:
        """Latest summaries whose overall risk level matches."""

    def subjects_needing_summary_refresh(self) -> list[int]:
        """Subjects with no summary or an expired one."""

    def append_conversation_turn(self, conversation_id: str, turn: ConversationTurn) -> None:
        """Append one turn to a conversation log."""

    def get_conversation_tail(self, conversation_id: str, limit: int = 10) -> list[ConversationTurn]:
        """Last ``limit`` turns of a conversation, oldest first."""
