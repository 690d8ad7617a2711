"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

ContextBranch = Literal["multi_subject", "single_subject", "none"]


@dataclass(slots=True)
class Subject:
    """A crew member a question or summary is about."""

    subject_id: int
    code: str
    name: str
    rank: str = ""
    department: str = ""
    vessel: str = ""
    status: str = ""

    def profile(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "code": self.code,
            "rank": self.rank,
            "department": self.department,
            "vessel": self.vessel,
            "status": self.status,
        }


@dataclass(slots=True)
class MetricReading:
    """One metric value from a subject's snapshot."""

    code: str
    score: float | None
    category: str
    description: str
    view: str
    details: Any = None

    @property
    def has_details(self) -> bool:
        return self.details not in (None, {}, [])


@dataclass(slots=True)
class HistoryEvent:
    event_id: int
    subject_id: int
    event_type: str
    event_date: date
    category: str
    description: str
    severity: str | None = None
    vessel: str = ""
    outcome: str | None = None


@dataclass(slots=True)
class ExperienceRecord:
    subject_id: int
    vessel: str
    vessel_type: str
    rank: str
    sign_on: date
    sign_off: date | None = None
    tenure_months: float = 0.0


@dataclass(slots=True)
class Certification:
    subject_id: int
    name: str
    certification_type: str
    status: str
    issue_date: date | None = None
    expiry_date: date | None = None


@dataclass(slots=True)
class Benchmark:
    """Fleet statistics for one metric, optionally scoped to a rank."""

    code: str
    mean: float
    median: float
    p25: float
    p75: float
    sample_size: int
    rank: str | None = None


@dataclass(slots=True)
class SummaryDraft:
    """A computed summary before persistence assigns it an id."""

    subject_id: int
    summary_type: str
    summary_text: str
    overall_rating: str
    risk_level: str
    strengths: list[dict[str, Any]]
    development_areas: list[dict[str, Any]]
    risk_indicators: list[dict[str, Any]]
    recommendations: list[dict[str, Any]]
    metric_snapshot: dict[str, float | None]
    valid_until: datetime
    model_version: str
    tokens_used: int


@dataclass(slots=True)
class SummaryRecord:
    """A persisted summary."""

    summary_id: int
    subject_id: int
    summary_type: str
    summary_text: str
    overall_rating: str
    risk_level: str
    strengths: list[dict[str, Any]]
    development_areas: list[dict[str, Any]]
    risk_indicators: list[dict[str, Any]]
    recommendations: list[dict[str, Any]]
    metric_snapshot: dict[str, float | None]
    generated_at: datetime
    valid_until: datetime
    model_version: str
    tokens_used: int


@dataclass(slots=True)
class ConversationTurn:
    role: Literal["user", "assistant"]
    content: str
    structured_response: dict[str, Any] | None = None
    tokens_used: int = 0


@dataclass(slots=True)
class RankedSubject:
    """A subject surfaced for a fleet-wide risk question."""

    subject: Subject
    risk_level: str
    source: Literal["summary", "heuristic"]
    score: int | None = None
    risk_factors: list[str] = field(default_factory=list)
    risk_indicators: list[dict[str, Any]] = field(default_factory=list)
    metrics: dict[str, float | None] = field(default_factory=dict)


@dataclass(slots=True)
class SubjectContext:
    """Everything gathered for one request; built fresh, never cached."""

    branch: ContextBranch = "none"
    subject: Subject | None = None
    metrics: list[MetricReading] = field(default_factory=list)
    events: list[HistoryEvent] = field(default_factory=list)
    experience: list[ExperienceRecord] = field(default_factory=list)
    certifications: list[Certification] = field(default_factory=list)
    ranked_subjects: list[RankedSubject] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.subject is None and not self.ranked_subjects

    def metric_values(self) -> dict[str, float | None]:
        return {reading.code: reading.score for reading in self.metrics}
