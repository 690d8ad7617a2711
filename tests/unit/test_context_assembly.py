from datetime import date, timedelta

import pytest

from crew_insight.data.memory import InMemoryDataAccess
from crew_insight.errors import SubjectNotFoundError
from crew_insight.pipeline.context import ContextAssembler, wants_multiple_subjects
from crew_insight.pipeline.understanding import QueryUnderstanding
from crew_insight.reference import metrics as metric_ref
from crew_insight.types import Subject, SummaryDraft

TODAY = date(2026, 3, 1)


def _understanding(intent: str = "general_question", subjects: list[str] | None = None) -> QueryUnderstanding:
    return QueryUnderstanding.model_validate({"intent": intent, "entities": {"subjects": subjects or []}})


def _assembler(data) -> ContextAssembler:
    return ContextAssembler(data, today=lambda: TODAY)


def _summary(subject_id: int, risk_level: str, now) -> SummaryDraft:
    return SummaryDraft(
        subject_id=subject_id,
        summary_type="performance",
        summary_text="Summary",
        overall_rating="Average",
        risk_level=risk_level,
        strengths=[],
        development_areas=[],
        risk_indicators=[{"severity": risk_level, "description": "Detention history"}],
        recommendations=[],
        metric_snapshot={},
        valid_until=now + timedelta(days=15),
        model_version="test",
        tokens_used=10,
    )


def test_single_subject_by_code_uses_recent_window(crew_data) -> None:
    context = _assembler(crew_data).assemble("Is S1001 onboard?", _understanding("status_query", ["S1001"]))

    assert context.branch == "single_subject"
    assert context.subject.name == "Maria Santos"
    assert [event.event_id for event in context.events] == [1]
    assert [record.vessel for record in context.experience] == ["MV Aurora"]
    assert len(context.certifications) == 2
    assert context.metric_values()["CP0003"] == 82


def test_single_subject_by_fuzzy_name(crew_data) -> None:
    context = _assembler(crew_data).assemble(
        "How is maria santo doing?", _understanding("summary", ["maria santo"])
    )

    assert context.subject.subject_id == 1


def test_unresolved_subject_yields_empty_context(crew_data) -> None:
    context = _assembler(crew_data).assemble(
        "How is Nobody Here doing?", _understanding("summary", ["Nobody Here"])
    )

    assert context.branch == "single_subject"
    assert context.is_empty


@pytest.mark.parametrize("subjects", [[], ["Maria Santos", "James Okafor"]])
def test_no_single_reference_means_no_subject_context(crew_data, subjects) -> None:
    context = _assembler(crew_data).assemble("Anything new?", _understanding("general_question", subjects))

    assert context.branch == "none"
    assert context.is_empty


def test_multi_subject_triggers() -> None:
    assert wants_multiple_subjects("List all crew on tankers", _understanding())
    assert wants_multiple_subjects("Who is high-risk right now?", _understanding())
    assert wants_multiple_subjects("Who worries you?", _understanding("risk_analysis"))
    assert not wants_multiple_subjects("Risks for Maria?", _understanding("risk_analysis", ["Maria"]))


def test_multi_subject_prefers_elevated_summaries(crew_data, now) -> None:
    crew_data.save_summary(_summary(2, "HIGH", now))
    crew_data.save_summary(_summary(2, "HIGH", now))
    crew_data.save_summary(_summary(1, "LOW", now))

    context = _assembler(crew_data).assemble("Show me high risk crew", _understanding("risk_analysis"))

    assert context.branch == "multi_subject"
    assert [entry.subject.subject_id for entry in context.ranked_subjects] == [2]
    assert context.ranked_subjects[0].source == "summary"
    assert context.ranked_subjects[0].risk_indicators[0]["description"] == "Detention history"


def test_multi_subject_falls_back_to_heuristic_and_skips_broken_subjects(now) -> None:
    class FlakyData(InMemoryDataAccess):
        def get_metric_snapshot(self, subject_id):
            if subject_id == 2:
                raise RuntimeError("snapshot view offline")
            return super().get_metric_snapshot(subject_id)

    data = FlakyData(now=lambda: now)
    low = {code: 10 for code in list(metric_ref.METRICS)[:6]}
    for subject_id in (1, 2, 3):
        data.add_subject(Subject(subject_id=subject_id, code=f"S{subject_id}", name=f"Crew {subject_id}"))
        data.set_metrics(subject_id, low)

    context = _assembler(data).assemble("List high risk crew", _understanding("risk_analysis"))

    assert [entry.subject.subject_id for entry in context.ranked_subjects] == [1, 3]
    assert all(entry.source == "heuristic" for entry in context.ranked_subjects)
    assert context.ranked_subjects[0].score == 6


def test_gather_subject_with_history_and_unknown_subject(crew_data) -> None:
    assembler = _assembler(crew_data)

    context = assembler.gather_subject(1, include_history=True)

    assert len(context.events) == 2
    assert len(context.experience) == 2
    with pytest.raises(SubjectNotFoundError) as info:
        assembler.gather_subject(99)
    assert info.value.status_code == 404


def test_summary_lookup_failure_falls_back_to_heuristic(now) -> None:
    class SummariesOffline(InMemoryDataAccess):
        def get_summaries_by_risk_level(self, risk_level, limit=20):
            raise RuntimeError("summary table unavailable")

    data = SummariesOffline(now=lambda: now)
    data.add_subject(Subject(subject_id=1, code="S1", name="Crew 1"))
    data.set_metrics(1, {code: 10 for code in list(metric_ref.METRICS)[:7]})

    context = _assembler(data).assemble("Show me high-risk crew", _understanding("risk_analysis"))

    assert context.branch == "multi_subject"
    assert [entry.subject.subject_id for entry in context.ranked_subjects] == [1]
    assert context.ranked_subjects[0].source == "heuristic"
    assert context.ranked_subjects[0].risk_level == "MEDIUM"
