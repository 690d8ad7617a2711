"""In-memory data-access adapter for local runs and tests."""

from __future__ import annotations

import json
import statistics
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict
from datetime import date, datetime, timedelta, timezone
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any

from crew_insight.reference import metrics as metric_ref
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


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDataAccess:
    """Dictionary-backed implementation of :class:`DataAccess`.

    Metric values are stored as ``{code: score}`` or ``{code: {"score": ...,
    "details": ...}}`` per subject; categories and views come from the metric
    reference table.
    """

    def __init__(self, *, now: Callable[[], datetime] = _utcnow) -> None:
        self._now = now
        self._subjects: dict[int, Subject] = {}
        self._metrics: dict[int, dict[str, tuple[float | None, Any]]] = {}
        self._events: dict[int, list[HistoryEvent]] = defaultdict(list)
        self._experience: dict[int, list[ExperienceRecord]] = defaultdict(list)
        self._certifications: dict[int, list[Certification]] = defaultdict(list)
        self._summaries: dict[int, SummaryRecord] = {}
        self._conversations: dict[str, list[ConversationTurn]] = defaultdict(list)
        self._next_summary_id = 1

    @classmethod
    def from_json(cls, path: str | Path) -> "InMemoryDataAccess":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(payload)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "InMemoryDataAccess":
        store = cls()
        for raw in payload.get("subjects", []):
            store.add_subject(Subject(**raw))
        for subject_id, values in payload.get("metrics", {}).items():
            store.set_metrics(int(subject_id), values)
        for raw in payload.get("events", []):
            store.add_event(HistoryEvent(**{**raw, "event_date": _to_date(raw["event_date"])}))
        for raw in payload.get("experience", []):
            store.add_experience(
                ExperienceRecord(
                    **{
                        **raw,
                        "sign_on": _to_date(raw["sign_on"]),
                        "sign_off": _to_date(raw.get("sign_off")),
                    }
                )
            )
        for raw in payload.get("certifications", []):
            store.add_certification(
                Certification(
                    **{
                        **raw,
                        "issue_date": _to_date(raw.get("issue_date")),
                        "expiry_date": _to_date(raw.get("expiry_date")),
                    }
                )
            )
        return store

    def add_subject(self, subject: Subject) -> None:
        self._subjects[subject.subject_id] = subject

    def set_metrics(self, subject_id: int, values: dict[str, Any]) -> None:
        snapshot: dict[str, tuple[float | None, Any]] = {}
        for code, value in values.items():
            if isinstance(value, dict):
                snapshot[code] = (value.get("score"), value.get("details"))
            else:
                snapshot[code] = (value, None)
        self._metrics[subject_id] = snapshot

    def add_event(self, event: HistoryEvent) -> None:
        self._events[event.subject_id].append(event)

    def add_experience(self, record: ExperienceRecord) -> None:
        self._experience[record.subject_id].append(record)

    def add_certification(self, certification: Certification) -> None:
        self._certifications[certification.subject_id].append(certification)

    def get_subject(self, subject_id: int) -> Subject | None:
        return self._subjects.get(subject_id)

    def get_subject_by_code(self, code: str) -> Subject | None:
        needle = code.strip().lower()
        for subject in self._subjects.values():
            if subject.code.lower() == needle:
                return subject
        return None

    def search_subjects(self, query: str, limit: int = 5) -> list[Subject]:
        needle = query.strip().lower()
        if not needle:
            return []

        scored: list[tuple[float, Subject]] = []
        for subject in self._subjects.values():
            name = subject.name.lower()
            if needle in name or needle in subject.code.lower():
                scored.append((1.0 + len(needle) / max(len(name), 1), subject))
                continue
            ratio = SequenceMatcher(None, needle, name).ratio()
            if ratio >= 0.6:
                scored.append((ratio, subject))
        scored.sort(key=lambda item: (-item[0], item[1].subject_id))
        return [subject for _, subject in scored[:limit]]

    def list_subjects(self, limit: int = 50, offset: int = 0) -> list[Subject]:
        ordered = sorted(self._subjects.values(), key=lambda subject: subject.subject_id)
        return ordered[offset : offset + limit]

    def get_metric_snapshot(self, subject_id: int) -> list[MetricReading]:
        readings: list[MetricReading] = []
        for code, (score, details) in self._metrics.get(subject_id, {}).items():
            definition = metric_ref.lookup(code)
            readings.append(
                MetricReading(
                    code=code,
                    score=score,
                    category=definition.category if definition else "Other",
                    description=definition.human_name if definition else metric_ref.UNKNOWN_METRIC,
                    view=definition.view if definition else "unknown",
                    details=details,
                )
            )
        return readings

    def get_events(
        self,
        subject_id: int,
        *,
        event_type: str | None = None,
        since: date | None = None,
    ) -> list[HistoryEvent]:
        events = [
            event
            for event in self._events.get(subject_id, [])
            if (event_type is None or event.event_type == event_type)
            and (since is None or event.event_date >= since)
        ]
        return sorted(events, key=lambda event: event.event_date, reverse=True)

    def get_experience(self, subject_id: int, *, months: int | None = None) -> list[ExperienceRecord]:
        records = self._experience.get(subject_id, [])
        if months is not None:
            cutoff = self._now().date() - timedelta(days=months * 30)
            records = [
                record for record in records if (record.sign_off or self._now().date()) >= cutoff
            ]
        return sorted(records, key=lambda record: record.sign_on, reverse=True)

    def get_certifications(self, subject_id: int) -> list[Certification]:
        return list(self._certifications.get(subject_id, []))

    def get_benchmark(self, code: str, rank: str | None = None) -> Benchmark | None:
        values: list[float] = []
        for subject_id, snapshot in self._metrics.items():
            if rank is not None:
                subject = self._subjects.get(subject_id)
                if subject is None or subject.rank != rank:
                    continue
            score = snapshot.get(code, (None, None))[0]
            if isinstance(score, (int, float)) and not isinstance(score, bool):
                values.append(float(score))
        if not values:
            return None

        if len(values) >= 2:
            quartiles = statistics.quantiles(values, n=4)
            p25, p75 = quartiles[0], quartiles[2]
        else:
            p25 = p75 = values[0]
        return Benchmark(
            code=code,
            mean=statistics.fmean(values),
            median=statistics.median(values),
            p25=p25,
            p75=p75,
            sample_size=len(values),
            rank=rank,
        )

    def save_summary(self, draft: SummaryDraft) -> int:
        summary_id = self._next_summary_id
        self._next_summary_id += 1
        self._summaries[summary_id] = SummaryRecord(
            summary_id=summary_id,
            generated_at=self._now(),
            **asdict(draft),
        )
        return summary_id

    def get_latest_summary(self, subject_id: int) -> SummaryRecord | None:
        candidates = [s for s in self._summaries.values() if s.subject_id == subject_id]
        if not candidates:
            return None
        return max(candidates, key=lambda summary: (summary.generated_at, summary.summary_id))

    def get_summary(self, summary_id: int) -> SummaryRecord | None:
        return self._summaries.get(summary_id)

    def get_summaries_by_risk_level(self, risk_level: str, limit: int = 20) -> list[SummaryRecord]:
        latest: dict[int, SummaryRecord] = {}
        for subject_id in {summary.subject_id for summary in self._summaries.values()}:
            record = self.get_latest_summary(subject_id)
            if record is not None and record.risk_level == risk_level:
                latest[subject_id] = record
        ordered = sorted(latest.values(), key=lambda summary: summary.generated_at, reverse=True)
        return ordered[:limit]

    def subjects_needing_summary_refresh(self) -> list[int]:
        now = self._now()
        stale: list[int] = []
        for subject_id in sorted(self._subjects):
            latest = self.get_latest_summary(subject_id)
            if latest is None or latest.valid_until <= now:
                stale.append(subject_id)
        return stale

    def append_conversation_turn(self, conversation_id: str, turn: ConversationTurn) -> None:
        self._conversations[conversation_id].append(turn)

    def get_conversation_tail(self, conversation_id: str, limit: int = 10) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        return list(self._conversations.get(conversation_id, [])[-limit:])


def _to_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))
