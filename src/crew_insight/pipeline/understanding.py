"""Query understanding: intent classification and entity extraction."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from crew_insight.errors import InsightError
from crew_insight.llm.client import CompletionClient, CompletionRequest
from crew_insight.pipeline import prompts
from crew_insight.reference import metrics as metric_ref

logger = logging.getLogger(__name__)

DATA_SOURCES = (
    "subject_profile",
    "metric_snapshot",
    "history_events",
    "experience",
    "certifications",
    "benchmarks",
    "summaries",
    "conversation",
)

FALLBACK_CONFIDENCE = 0.4


class Intent(str, Enum):
    SUMMARY = "summary"
    RISK_ANALYSIS = "risk_analysis"
    METRIC_QUERY = "metric_query"
    STATUS_QUERY = "status_query"
    COMPARISON = "comparison"
    TREND_ANALYSIS = "trend_analysis"
    CERTIFICATION_CHECK = "certification_check"
    EXPERIENCE_QUERY = "experience_query"
    PROMOTION_READINESS = "promotion_readiness"
    GENERAL_QUESTION = "general_question"


_INTENT_ALIASES = {"kpi_query": Intent.METRIC_QUERY, "status": Intent.STATUS_QUERY}

_SOURCES_BY_INTENT: dict[Intent, tuple[str, ...]] = {
    Intent.SUMMARY: ("subject_profile", "metric_snapshot", "summaries"),
    Intent.RISK_ANALYSIS: ("subject_profile", "metric_snapshot", "history_events", "summaries"),
    Intent.METRIC_QUERY: ("subject_profile", "metric_snapshot"),
    Intent.STATUS_QUERY: ("subject_profile",),
    Intent.COMPARISON: ("subject_profile", "metric_snapshot", "experience", "certifications"),
    Intent.TREND_ANALYSIS: ("subject_profile", "metric_snapshot", "history_events"),
    Intent.CERTIFICATION_CHECK: ("subject_profile", "certifications"),
    Intent.EXPERIENCE_QUERY: ("subject_profile", "experience"),
    Intent.PROMOTION_READINESS: (
        "subject_profile",
        "metric_snapshot",
        "experience",
        "certifications",
    ),
    Intent.GENERAL_QUESTION: (),
}


def _dedupe(values: Any) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, (list, tuple, set)):
        raise ValueError(f"expected a list of strings, got {type(values).__name__}")
    seen: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


class TimeRange(BaseModel):
    start: str | None = None
    end: str | None = None
    description: str | None = None


class Entities(BaseModel):
    subjects: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("subjects", "crew_members")
    )
    metric_codes: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("metric_codes", "kpi_codes")
    )
    ranks: list[str] = Field(default_factory=list)
    departments: list[str] = Field(default_factory=list)
    vessels: list[str] = Field(default_factory=list)
    time_range: TimeRange | None = None

    @field_validator("subjects", "ranks", "departments", "vessels", mode="before")
    @classmethod
    def _unique_text(cls, value: Any) -> list[str]:
        return _dedupe(value)

    @field_validator("metric_codes", mode="before")
    @classmethod
    def _unique_codes(cls, value: Any) -> list[str]:
        return _dedupe([code.upper() for code in _dedupe(value)])


class QueryUnderstanding(BaseModel):
    """What a question asks for; produced once per question and not persisted."""

    intent: Intent = Intent.GENERAL_QUESTION
    confidence: float = 0.5
    entities: Entities = Field(default_factory=Entities)
    required_data_sources: list[str] = Field(default_factory=list)
    clarification_needed: bool = False
    clarification_questions: list[str] = Field(default_factory=list)

    @field_validator("intent", mode="before")
    @classmethod
    def _known_intent(cls, value: Any) -> Intent:
        if isinstance(value, Intent):
            return value
        text = str(value or "").strip().lower()
        if text in _INTENT_ALIASES:
            return _INTENT_ALIASES[text]
        try:
            return Intent(text)
        except ValueError:
            return Intent.GENERAL_QUESTION

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, number))

    @field_validator("entities", mode="before")
    @classmethod
    def _entities_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("required_data_sources", "clarification_questions", mode="before")
    @classmethod
    def _text_lists(cls, value: Any) -> list[str]:
        return _dedupe(value)

    @model_validator(mode="after")
    def _clarify_only_when_ambiguous(self) -> "QueryUnderstanding":
        if not self.is_ambiguous:
            self.clarification_needed = False
            self.clarification_questions = []
        return self

    @property
    def is_ambiguous(self) -> bool:
        return (
            self.intent is Intent.GENERAL_QUESTION
            and not self.entities.subjects
            and not self.entities.metric_codes
        )


@dataclass(slots=True)
class UnderstandingOutcome:
    understanding: QueryUnderstanding
    input_tokens: int = 0
    output_tokens: int = 0
    fallback_reason: str | None = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def used_fallback(self) -> bool:
        return self.fallback_reason is not None


_KEYWORD_INTENTS: tuple[tuple[Intent, re.Pattern[str]], ...] = (
    (Intent.COMPARISON, re.compile(r"\b(compare|comparison|versus|vs\.?|difference between)\b")),
    (Intent.PROMOTION_READINESS, re.compile(r"\b(promot\w*|readiness|ready for)\b")),
    (Intent.CERTIFICATION_CHECK, re.compile(r"\b(certificat\w*|licen[cs]e\w*|stcw|course\w*)\b")),
    (Intent.TREND_ANALYSIS, re.compile(r"\b(trend\w*|over time|improving|declining|last \d+ months?)\b")),
    (Intent.EXPERIENCE_QUERY, re.compile(r"\b(experience|sea[- ]time|served|vessel types?|tenure)\b")),
    (Intent.RISK_ANALYSIS, re.compile(r"\b(risk\w*|danger\w*|incident\w*|detention\w*)\b")),
    (
        Intent.STATUS_QUERY,
        re.compile(
            r"\b(onboard|on board|aboard|on leave|ashore|status|sailing|signed (?:on|off)|where is|available)\b"
        ),
    ),
    (Intent.METRIC_QUERY, re.compile(r"\b(score\w*|metric\w*|kpis?|rating\w*|appraisal\w*)\b")),
    (Intent.SUMMARY, re.compile(r"\b(summar\w*|overview|profile|how is .+ (?:doing|performing))\b")),
)

_QUOTED = re.compile(r"\"([^\"]{2,60})\"|(?<!\w)'([^']{2,60})'(?!\w)")
_REFERENCE_AFTER_NOUN = re.compile(
    r"\b(?:subject|crew member|crewmember|seafarer|officer|engineer|captain|master)\s+([A-Z][\w.-]*)"
)
_CAPITALISED_RUN = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)+)\b")
_LEADING_WORDS = frozenset(
    {"Is", "Are", "What", "How", "Show", "List", "Who", "Which", "Does", "Do", "Compare",
     "Give", "Tell", "Find", "Can", "Please", "Summarise", "Summarize", "When", "Where", "Has"}
)
_RANK_WORDS = re.compile(
    r"\b(chief officer|chief engineer|second officer|third officer|second engineer|"
    r"third engineer|master|captain|bosun|able seaman|oiler|cadet)\b",
    re.IGNORECASE,
)
_TIME_RANGE = re.compile(r"\b(last \d+ (?:days?|weeks?|months?|years?)|this year|last year|\d{4})\b", re.I)


def classify_question(question: str) -> QueryUnderstanding:
    """Keyword classifier used when the completion service cannot help."""

    lowered = question.lower()
    codes = metric_ref.find_codes(question)
    intent = Intent.GENERAL_QUESTION
    for candidate, pattern in _KEYWORD_INTENTS:
        if pattern.search(lowered):
            intent = candidate
            break
    if intent is Intent.GENERAL_QUESTION and codes:
        intent = Intent.METRIC_QUERY

    time_match = _TIME_RANGE.search(question)
    entities = Entities(
        subjects=extract_subject_references(question),
        metric_codes=codes,
        ranks=[match.group(1).title() for match in _RANK_WORDS.finditer(question)],
        time_range=TimeRange(description=time_match.group(1)) if time_match else None,
    )
    return QueryUnderstanding(
        intent=intent,
        confidence=FALLBACK_CONFIDENCE,
        entities=entities,
        required_data_sources=list(_SOURCES_BY_INTENT[intent]),
        clarification_needed=intent is Intent.GENERAL_QUESTION
        and not entities.subjects
        and not codes,
    )


def extract_subject_references(question: str) -> list[str]:
    references: list[str] = []
    for match in _QUOTED.finditer(question):
        references.append(match.group(1) or match.group(2))
    for match in _REFERENCE_AFTER_NOUN.finditer(question):
        references.append(match.group(1).rstrip("?.!,"))
    for match in _CAPITALISED_RUN.finditer(question):
        words = match.group(1).split()
        while words and words[0] in _LEADING_WORDS:
            words = words[1:]
        if len(words) >= 2 and not metric_ref.CODE_PATTERN.search(" ".join(words)):
            references.append(" ".join(words))
    return _dedupe(references)


class QueryUnderstandingStage:
    """Single structured completion that classifies a question.

    A failed call or an unparseable answer falls back to
    :func:`classify_question`, so this stage never fails a chat request.
    """

    def __init__(self, client: CompletionClient, *, system_prompt: str | None = None) -> None:
        self.client = client
        self.system_prompt = system_prompt or prompts.system_prompt()

    def understand(self, question: str) -> UnderstandingOutcome:
        request = CompletionRequest.single(
            prompts.query_understanding_prompt(question, DATA_SOURCES),
            system_prompt=self.system_prompt,
        )
        try:
            understanding, result = self.client.complete_structured_result(
                request, QueryUnderstanding
            )
        except Exception as exc:
            reason = (
                f"{exc.kind}: {exc.message}"
                if isinstance(exc, InsightError)
                else f"{type(exc).__name__}: {exc}"
            )
            logger.warning("Query understanding failed, using keyword classifier: %s", reason)
            return UnderstandingOutcome(
                understanding=classify_question(question), fallback_reason=reason
            )

        understanding = _merge_literal_codes(understanding, question)
        logger.debug(
            "Understood question as %s (confidence %.2f, subjects=%s)",
            understanding.intent.value,
            understanding.confidence,
            understanding.entities.subjects,
        )
        return UnderstandingOutcome(
            understanding=understanding,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )


def _merge_literal_codes(understanding: QueryUnderstanding, question: str) -> QueryUnderstanding:
    codes = list(understanding.entities.metric_codes)
    for code in metric_ref.find_codes(question):
        if code not in codes:
            codes.append(code)
    if codes == understanding.entities.metric_codes and understanding.required_data_sources:
        return understanding

    entities = understanding.entities.model_copy(update={"metric_codes": codes})
    sources = understanding.required_data_sources or list(_SOURCES_BY_INTENT[understanding.intent])
    # Re-validate so the clarification policy sees the merged codes.
    return QueryUnderstanding.model_validate(
        {
            **understanding.model_dump(exclude={"entities", "required_data_sources"}),
            "entities": entities.model_dump(),
            "required_data_sources": sources,
        }
    )
