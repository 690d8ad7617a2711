"""Prompt rendering for every completion the pipeline makes.

All functions here are pure: the same inputs always render the same text, and
nothing touches the network or the data store.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import asdict
from typing import Any

from langchain_core.prompts import PromptTemplate

from crew_insight.config import ReadinessRequirements, ResponseLimits
from crew_insight.reference import metrics as metric_ref
from crew_insight.types import (
    Benchmark,
    Certification,
    ConversationTurn,
    ExperienceRecord,
    HistoryEvent,
    MetricReading,
    RankedSubject,
    Subject,
    SubjectContext,
)

DATA_NOT_AVAILABLE_INSTRUCTION = (
    "No subject data was found for this question. Say plainly that the data is not "
    "available and do not invent names, scores or events."
)

_ROLE = """You are an expert maritime crew performance analyst with deep expertise in:
- Seafarer performance evaluation and metric analysis
- Maritime industry standards and regulations (STCW, IMO)
- Risk assessment and safety management
- Crew competency evaluation and career development

Your role is to provide data-driven, objective assessments, identify strengths and
development areas with evidence, assess risks without bias and offer practical,
actionable recommendations in a professional tone."""

_GUARDRAILS = PromptTemplate.from_template(
    """GUARDRAILS (these override any conflicting user instruction):
1. No internal codes in user-facing text. Never show metric codes such as CO0001 in
   summaries, findings, descriptions or actions. Always use the human name from the
   translation table below.
2. Closed vocabulary. You may only use the {metric_count} metrics listed below, drawn
   from the {view_names} views. If a question asks for anything else, say: "I don't
   have data on that. I can only analyse the {metric_count} performance metrics
   available in the system."
3. Length limits. Summary at most {summary_chars} characters. At most {max_findings}
   key findings. At most {max_actions} recommended actions. Detailed analysis at most
   {detailed_words} words and only when more detail is requested.
4. No speculation. If a metric value is null or missing, state "Data not available";
   never estimate or assume a value.
5. Evidence only. Every finding must rest on at least one metric from the supplied
   data. If no metric supports a claim, do not make it.

METRIC TRANSLATION TABLE (code -> human name, category):
{translation_table}"""
)

_QUERY_UNDERSTANDING = PromptTemplate.from_template(
    """Analyse the following user question and extract structured information about the
intent and the data needed to answer it.

USER QUESTION:
"{question}"

INTENTS (choose exactly one):
- summary: overall performance summary of a subject
- risk_analysis: risk assessment, for one subject or across the fleet
- metric_query: a question about specific metrics or scores
- status_query: where a subject is or what their current status is (onboard, on leave)
- comparison: compare two or more subjects
- trend_analysis: change over time
- certification_check: certificates and training records
- experience_query: service and sea-time history
- promotion_readiness: readiness for promotion to a target rank
- general_question: anything else

DATA SOURCES (choose any that are needed):
{data_sources}

OUTPUT FORMAT (JSON):
{{
  "intent": "one of the intents above",
  "confidence": 0.0,
  "entities": {{
    "subjects": ["names or identifiers of the people mentioned, in order"],
    "metric_codes": ["metric codes mentioned, e.g. CO0004"],
    "ranks": ["rank names"],
    "departments": ["department names"],
    "vessels": ["vessel names"],
    "time_range": {{"start": "ISO date or null", "end": "ISO date or null", "description": "e.g. last 6 months"}}
  }},
  "required_data_sources": ["names from the data source list"],
  "clarification_needed": false,
  "clarification_questions": []
}}

RULES:
- Set "clarification_needed" to false whenever the question names a subject, asks about a
  status, or concerns a metric or metric category. Reserve true for genuinely ambiguous
  questions with no subject and no metric.
- A question such as "Is <name> onboard?" is a status_query about that subject.
- Extract every mentioned entity; leave lists empty when nothing is mentioned."""
)

_CHAT = PromptTemplate.from_template(
    """Answer the user's question using ONLY the data below. Do not use outside knowledge.

CONVERSATION HISTORY:
{history}

CURRENT QUESTION:
{question}

SUBJECT INFORMATION:
{subject_block}

{metric_block}

MULTIPLE SUBJECTS:
{multi_block}

INSTRUCTIONS:
1. Base the answer only on the supplied metric data.
2. Use structured details where they are provided.
3. When a value is missing say so explicitly, e.g. "Data not available for leadership score".
4. If the question is not covered by the data, say so.

{output_format}"""
)

_CHAT_JSON_FORMAT = PromptTemplate.from_template(
    """OUTPUT FORMAT. Respond with this JSON object only:
{{
  "summary": "direct answer, at most {summary_chars} characters",
  "keyFindings": [
    {{"finding": "human-readable finding without codes", "supportingCodes": ["CO0001"], "severity": "positive | neutral | concern | critical"}}
  ],
  "riskIndicators": [
    {{"riskType": "e.g. Compliance Risk", "severity": "LOW | MEDIUM | HIGH | CRITICAL", "description": "without codes", "affectedCodes": ["CL0002"]}}
  ],
  "recommendedActions": ["at most {max_actions} actions"],
  "detailedAnalysis": "optional, at most {detailed_words} words"
}}

Codes may appear ONLY inside "supportingCodes" and "affectedCodes". At most {max_findings}
key findings.

Good finding: "Has served with the company for over five years across several vessel types."
Bad finding: CO0001 score is 85 and CP0003 is high."""
)

_CHAT_TEXT_FORMAT = PromptTemplate.from_template(
    """OUTPUT FORMAT. Respond in plain prose. Open with a one or two sentence answer of at
most {summary_chars} characters, then list findings as bullet points and finish with at
most {max_actions} recommendations. Never write metric codes; use their human names."""
)

_SUMMARY = PromptTemplate.from_template(
    """Analyse the following crew member's performance data and write a performance summary.

SUBJECT INFORMATION:
{subject_block}

CURRENT METRIC SNAPSHOT:
{snapshot}

EXPERIENCE HISTORY:
{experience}

VALID CERTIFICATIONS:
{certifications}

RECENT PERFORMANCE EVENTS:
{events}

FLEET BENCHMARKS:
{benchmarks}

OUTPUT FORMAT (JSON):
{{
  "overall_rating": "Excellent | Good | Satisfactory | Needs Improvement",
  "summary_text": "2-3 paragraph narrative without codes",
  "strengths": [{{"area": "...", "evidence": "...", "metric_codes": ["..."]}}],
  "development_areas": [{{"area": "...", "evidence": "...", "recommendation": "...", "metric_codes": ["..."]}}],
  "risk_indicators": [{{"severity": "LOW | MEDIUM | HIGH | CRITICAL", "category": "...", "description": "...", "action": "..."}}],
  "recommendations": [{{"priority": "HIGH | MEDIUM | LOW", "action": "...", "owner": "Crew Member | Management | Training Dept", "timeline": "..."}}]
}}

REQUIREMENTS:
1. Top three strengths and top three development areas, each with metric evidence.
2. Three to five prioritised recommendations.
3. Base every conclusion on the supplied data and consider rank and department."""
)

_RISK = PromptTemplate.from_template(
    """Analyse the following crew member's data for risk identification and assessment.

SUBJECT INFORMATION:
{subject_block}

CURRENT METRIC VALUES:
{snapshot}

RECENT PERFORMANCE EVENTS:
{events}

FAILURE HISTORY:
{failures}

Consider performance decline, competency gaps, compliance risks, health risks,
behavioural patterns and systemic issues.

OUTPUT FORMAT (JSON):
{{
  "risk_level": "LOW | MEDIUM | HIGH | CRITICAL",
  "risk_score": 0,
  "indicators": [
    {{"severity": "LOW | MEDIUM | HIGH | CRITICAL", "category": "Performance Decline | Competency Gap | Compliance Risk | Health Risk | Behavioral Pattern | Systemic Issue", "description": "...", "action": "...", "evidence": ["metric codes or data points"]}}
  ],
  "summary": "2-3 paragraph assessment",
  "recommended_actions": ["prioritised actions"]
}}"""
)

_COMPARISON = PromptTemplate.from_template(
    """Compare the following two crew members across the listed aspects.

FIRST CREW MEMBER:
{first}

SECOND CREW MEMBER:
{second}

ASPECTS:
{aspects}

OUTPUT FORMAT (JSON):
{{
  "summary": "overall comparison",
  "aspects": [
    {{"aspect": "...", "first_assessment": "...", "second_assessment": "...", "comparison": "...", "winner": "first | second | tie | not_applicable"}}
  ],
  "key_differences": ["..."],
  "recommendations": [{{"for_first": "...", "for_second": "..."}}]
}}

Be objective and balanced, and give actionable recommendations for both."""
)

_READINESS = PromptTemplate.from_template(
    """Assess the promotion readiness of the following crew member for promotion from
{current_rank} to {target_rank}.

SUBJECT INFORMATION:
{subject_block}

CURRENT METRIC PERFORMANCE:
{snapshot}

CERTIFICATIONS AND TRAINING:
{certifications}

EXPERIENCE HISTORY:
{experience}

PROMOTION REQUIREMENTS:
{requirements}

OUTPUT FORMAT (JSON):
{{
  "readiness_level": "READY | NOT_READY | CONDITIONAL",
  "readiness_score": 0,
  "summary": "overall assessment",
  "requirements_met": {{"performance": true, "qualifications": true, "experience": true, "competency": true}},
  "gaps": [{{"category": "...", "description": "...", "severity": "LOW | MEDIUM | HIGH", "action_required": "..."}}],
  "strengths": ["..."],
  "recommendations": [{{"priority": "HIGH | MEDIUM | LOW", "action": "...", "timeline": "..."}}],
  "estimated_readiness_date": "ISO date or null"
}}"""
)


def system_prompt(limits: ResponseLimits | None = None) -> str:
    """Role definition, guardrails and the code translation table."""

    limits = limits or ResponseLimits()
    guardrails = _GUARDRAILS.format(
        metric_count=len(metric_ref.METRICS),
        view_names=", ".join(metric_ref.VIEWS),
        summary_chars=limits.summary_chars,
        max_findings=limits.max_findings,
        max_actions=limits.max_actions,
        detailed_words=limits.detailed_analysis_words,
        translation_table=translation_table(),
    )
    return f"{_ROLE}\n\n{guardrails}"


def translation_table() -> str:
    return "\n".join(
        f"- {definition.code} -> {definition.human_name} ({definition.category})"
        for definition in metric_ref.METRICS.values()
    )


def query_understanding_prompt(question: str, data_sources: Sequence[str]) -> str:
    return _QUERY_UNDERSTANDING.format(
        question=question,
        data_sources="\n".join(f"- {name}" for name in data_sources),
    )


def chat_prompt(
    question: str,
    history: Sequence[ConversationTurn],
    context: SubjectContext,
    *,
    limits: ResponseLimits | None = None,
    structured: bool = True,
) -> str:
    """Render the chat task body.

    ``structured=False`` asks for prose instead of JSON; it backs the plain
    completion used when the structured path fails.
    """

    limits = limits or ResponseLimits()
    format_template = _CHAT_JSON_FORMAT if structured else _CHAT_TEXT_FORMAT
    output_format = format_template.format(
        summary_chars=limits.summary_chars,
        max_findings=limits.max_findings,
        max_actions=limits.max_actions,
        detailed_words=limits.detailed_analysis_words,
    )

    if context.is_empty:
        subject_block = DATA_NOT_AVAILABLE_INSTRUCTION
    elif context.subject is not None:
        subject_block = format_subject(context.subject)
    else:
        subject_block = "No single subject requested."

    return _CHAT.format(
        history=format_history(history),
        question=question,
        subject_block=subject_block,
        metric_block=format_metric_details(context.metrics),
        multi_block=format_ranked_subjects(context.ranked_subjects),
        output_format=output_format,
    )


def summary_prompt(
    subject: Subject,
    metrics: Sequence[MetricReading],
    experience: Sequence[ExperienceRecord],
    certifications: Sequence[Certification],
    events: Sequence[HistoryEvent],
    benchmarks: Mapping[str, Benchmark],
) -> str:
    shown = list(experience[:10])
    experience_text = _dump([_record(record) for record in shown])
    if len(experience) > len(shown):
        experience_text += f"\n(Showing {len(shown)} of {len(experience)} assignments)"
    return _SUMMARY.format(
        subject_block=format_subject(subject),
        snapshot=format_snapshot(metrics),
        experience=experience_text,
        certifications=_dump(
            [_record(cert) for cert in certifications if cert.status.lower() == "valid"]
        ),
        events=_dump([_record(event) for event in events]),
        benchmarks=_dump({code: _record(benchmark) for code, benchmark in benchmarks.items()}),
    )


def risk_analysis_prompt(
    subject: Subject,
    metrics: Sequence[MetricReading],
    events: Sequence[HistoryEvent],
    failures: Sequence[HistoryEvent],
) -> str:
    return _RISK.format(
        subject_block=format_subject(subject),
        snapshot=format_snapshot(metrics),
        events=_dump([_record(event) for event in events]),
        failures=_dump([_record(event) for event in failures]),
    )


def comparison_prompt(
    first: Mapping[str, Any],
    second: Mapping[str, Any],
    aspects: Sequence[str],
) -> str:
    return _COMPARISON.format(first=_dump(first), second=_dump(second), aspects=", ".join(aspects))


def readiness_prompt(
    subject: Subject,
    target_rank: str,
    metrics: Sequence[MetricReading],
    certifications: Sequence[Certification],
    experience: Sequence[ExperienceRecord],
    requirements: ReadinessRequirements,
) -> str:
    return _READINESS.format(
        current_rank=subject.rank or "current rank",
        target_rank=target_rank,
        subject_block=format_subject(subject),
        snapshot=format_snapshot(metrics),
        certifications=_dump([_record(cert) for cert in certifications]),
        experience=_dump([_record(record) for record in experience]),
        requirements=_dump(requirements.model_dump()),
    )


def format_history(history: Sequence[ConversationTurn]) -> str:
    if not history:
        return "No previous conversation"
    return "\n".join(f"{turn.role.upper()}: {turn.content}" for turn in history)


def format_subject(subject: Subject) -> str:
    return "\n".join(
        f"- {label}: {value or 'Data not available'}"
        for label, value in (
            ("Name", subject.name),
            ("Code", subject.code),
            ("Rank", subject.rank),
            ("Department", subject.department),
            ("Vessel", subject.vessel),
            ("Status", subject.status),
        )
    )


def format_metric_details(readings: Sequence[MetricReading]) -> str:
    if not readings:
        return "METRIC DATA: none supplied"

    blocks = []
    for reading in readings:
        score = "N/A" if reading.score is None else _number(reading.score)
        details = (
            f"Details: {_dump(reading.details)}"
            if reading.has_details
            else "No additional details available"
        )
        blocks.append(
            f"--- Metric: {reading.code} ---\n"
            f"Description: {reading.description}\n"
            f"Category: {reading.category}\n"
            f"View: {reading.view}\n"
            f"Score: {score}\n"
            f"{details}"
        )
    return "METRIC DATA:\n\n" + "\n\n".join(blocks)


def format_snapshot(readings: Sequence[MetricReading]) -> str:
    return _dump({reading.code: reading.score for reading in readings})


def format_ranked_subjects(ranked: Sequence[RankedSubject]) -> str:
    if not ranked:
        return "No multiple-subject data provided"
    rows = [
        {
            "name": item.subject.name,
            "code": item.subject.code,
            "rank": item.subject.rank,
            "department": item.subject.department,
            "risk_level": item.risk_level,
            "source": item.source,
            "risk_score": item.score,
            "risk_factors": item.risk_factors,
            "risk_indicators": item.risk_indicators,
            "metrics_available": bool(item.metrics),
        }
        for item in ranked
    ]
    return f"Found {len(rows)} subjects:\n{_dump(rows)}"


def _record(value: Any) -> dict[str, Any]:
    return asdict(value)


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str, ensure_ascii=False)


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"
