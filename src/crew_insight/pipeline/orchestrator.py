"""Pipeline orchestrator: the public operations behind the HTTP layer."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from pydantic import BaseModel

from crew_insight.config import PipelineConfig
from crew_insight.data.access import DataAccess
from crew_insight.errors import InsightError, PersistenceError, SubjectNotFoundError
from crew_insight.llm.client import CompletionClient, CompletionRequest
from crew_insight.obs.tracing import Timer, TokenUsage, TraceStore
from crew_insight.pipeline import prompts
from crew_insight.pipeline.batch import BatchItemResult, RateLimiter, regenerate_summaries
from crew_insight.pipeline.context import ContextAssembler
from crew_insight.pipeline.extraction import (
    PlainTextCompletion,
    ResponseExtractor,
    StructuredCompletion,
    annotate_codes,
    render_display_text,
    strip_codes,
)
from crew_insight.pipeline.responses import (
    RISK_SEVERITIES,
    ChatAnswerPayload,
    ComparisonPayload,
    ReadinessPayload,
    RiskAnalysisPayload,
    StructuredResponse,
    SummaryPayload,
)
from crew_insight.pipeline.understanding import QueryUnderstanding, QueryUnderstandingStage
from crew_insight.pipeline.validation import validate_and_repair
from crew_insight.reference import metrics as metric_ref
from crew_insight.types import (
    Benchmark,
    ConversationTurn,
    Subject,
    SubjectContext,
    SummaryDraft,
    SummaryRecord,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_COMPARISON_ASPECTS = ("Performance", "Experience", "Qualifications")
READINESS_LEVELS = {"READY": "ready", "CONDITIONAL": "nearly_ready", "NOT_READY": "not_ready"}
UNAVAILABLE_MESSAGE = (
    "The analysis service is unavailable right now, so this question could not be "
    "answered. Please try again shortly."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def overall_risk_level(severities: Iterable[str]) -> str:
    """Highest severity present, CRITICAL > HIGH > MEDIUM > LOW."""

    present = {severity.strip().upper() for severity in severities}
    for level in reversed(RISK_SEVERITIES):
        if level in present:
            return level
    return "LOW"


@dataclass(slots=True)
class ChatAnswer:
    display_text: str
    structured_response: StructuredResponse | None
    tokens_used: int
    reasoning_steps: list[str] = field(default_factory=list)
    data_sources: list[dict[str, Any]] = field(default_factory=list)
    trace_id: str | None = None


@dataclass(slots=True)
class SummaryOutcome:
    summary: SummaryRecord
    tokens_used: int
    trace_id: str | None = None


@dataclass(slots=True)
class RiskItem:
    severity: str
    category: str
    description: str
    action: str
    metric_evidence: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RiskOutcome:
    risks: list[RiskItem]
    risk_level: str
    risk_score: float
    summary: str
    recommended_actions: list[str]
    tokens_used: int
    trace_id: str | None = None


@dataclass(slots=True)
class ComparisonOutcome:
    narrative: str
    structured: ComparisonPayload
    tokens_used: int
    trace_id: str | None = None


@dataclass(slots=True)
class ReadinessOutcome:
    narrative: str
    readiness_level: str
    readiness_score: float
    gaps: list[str]
    timeline: str
    tokens_used: int
    trace_id: str | None = None


class InsightOrchestrator:
    """Composes understanding, context, prompting, extraction and validation.

    ``handle_chat_query`` never raises for model or extraction failures; it
    degrades to a plain-text answer instead. The subject operations raise typed
    :class:`InsightError` subclasses for the HTTP layer to map.
    """

    def __init__(
        self,
        *,
        client: CompletionClient,
        data: DataAccess,
        config: PipelineConfig | None = None,
        trace_store: TraceStore | None = None,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.data = data
        self.config = config or PipelineConfig()
        self.trace_store = trace_store if trace_store is not None else TraceStore()
        self.system_prompt = prompts.system_prompt(self.config.limits)
        self.understanding = QueryUnderstandingStage(client, system_prompt=self.system_prompt)
        self.assembler = ContextAssembler(
            data, config=self.config, today=lambda: now().date()
        )
        self.extractor = ResponseExtractor(self.config.limits)
        self._now = now
        self._sleep = sleep
        self._clock = clock

    def handle_chat_query(self, question: str, conversation_id: str) -> ChatAnswer:
        usage = TokenUsage()
        with Timer() as timer:
            outcome = self.understanding.understand(question)
            usage.add(outcome.input_tokens, outcome.output_tokens)
            understanding = outcome.understanding

            history = self._conversation_tail(conversation_id)
            context = self._assemble(question, understanding)

            structured, display_text, fallback_reason, messages = self._answer(
                question, history, context, usage
            )
            self._record_turns(conversation_id, question, display_text, structured, usage.total)

        reasoning = _reasoning_steps(understanding, context, outcome.fallback_reason, fallback_reason)
        record = self.trace_store.create_record(
            operation="chat",
            question=question,
            intent=understanding.intent.value,
            context_branch=context.branch,
            structured=structured is not None,
            fallback_reason=fallback_reason,
            validation_messages=messages,
            usage=usage,
            latency_ms=timer.elapsed_ms,
            subject_ids=[context.subject.subject_id] if context.subject else [],
        )
        return ChatAnswer(
            display_text=display_text,
            structured_response=structured,
            tokens_used=usage.total,
            reasoning_steps=reasoning,
            data_sources=_data_sources(understanding, context),
            trace_id=record.trace_id,
        )

    def generate_summary(self, subject_id: int) -> SummaryOutcome:
        usage = TokenUsage()
        with Timer() as timer:
            subject, context = self._subject_context(subject_id, include_history=True)
            benchmarks = self._benchmarks(context)
            payload = self._structured(
                prompts.summary_prompt(
                    subject,
                    context.metrics,
                    context.experience,
                    context.certifications,
                    context.events,
                    benchmarks,
                ),
                SummaryPayload,
                usage,
            )

            draft = SummaryDraft(
                subject_id=subject_id,
                summary_type="performance",
                summary_text=strip_codes(payload.summary_text),
                overall_rating=payload.overall_rating,
                risk_level=overall_risk_level(risk.severity for risk in payload.risk_indicators),
                strengths=[_strip_text_fields(item.model_dump()) for item in payload.strengths],
                development_areas=[
                    _strip_text_fields(item.model_dump()) for item in payload.development_areas
                ],
                risk_indicators=[
                    _strip_text_fields(item.model_dump()) for item in payload.risk_indicators
                ],
                recommendations=[
                    _strip_text_fields(item.model_dump()) for item in payload.recommendations
                ],
                metric_snapshot=context.metric_values(),
                valid_until=self._now() + timedelta(days=self.config.summary_valid_days),
                model_version=self.client.model_name,
                tokens_used=usage.total,
            )
            summary_id = self.data.save_summary(draft)
            saved = self.data.get_summary(summary_id)
            if saved is None:
                raise PersistenceError(f"Summary {summary_id} was saved but could not be read back")

        logger.info(
            "Generated summary %s for subject %s (risk %s)", summary_id, subject_id, saved.risk_level
        )
        record = self.trace_store.create_record(
            operation="generate_summary",
            structured=True,
            usage=usage,
            latency_ms=timer.elapsed_ms,
            subject_ids=[subject_id],
        )
        return SummaryOutcome(summary=saved, tokens_used=saved.tokens_used, trace_id=record.trace_id)

    def analyze_risks(self, subject_id: int) -> RiskOutcome:
        usage = TokenUsage()
        with Timer() as timer:
            subject, context = self._subject_context(subject_id, include_history=True)
            failures = self.data.get_events(subject_id, event_type="failure")
            payload = self._structured(
                prompts.risk_analysis_prompt(subject, context.metrics, context.events, failures),
                RiskAnalysisPayload,
                usage,
            )

        risks = [
            RiskItem(
                severity=indicator.severity.strip().upper(),
                category=strip_codes(indicator.category),
                description=strip_codes(indicator.description),
                action=strip_codes(indicator.action),
                metric_evidence=_codes_in(indicator.evidence),
            )
            for indicator in payload.indicators
        ]
        record = self.trace_store.create_record(
            operation="analyze_risks",
            structured=True,
            usage=usage,
            latency_ms=timer.elapsed_ms,
            subject_ids=[subject_id],
        )
        return RiskOutcome(
            risks=risks,
            risk_level=payload.risk_level.strip().upper() or "LOW",
            risk_score=payload.risk_score,
            summary=strip_codes(payload.summary),
            recommended_actions=[strip_codes(action) for action in payload.recommended_actions],
            tokens_used=usage.total,
            trace_id=record.trace_id,
        )

    def compare_subjects(
        self,
        first_id: int,
        second_id: int,
        aspects: Sequence[str] | None = None,
    ) -> ComparisonOutcome:
        usage = TokenUsage()
        chosen = [aspect for aspect in (aspects or ()) if aspect.strip()] or list(
            DEFAULT_COMPARISON_ASPECTS
        )
        with Timer() as timer:
            first_subject, first = self._subject_context(first_id)
            second_subject, second = self._subject_context(second_id)
            payload = self._structured(
                prompts.comparison_prompt(
                    _comparison_profile(first_subject, first),
                    _comparison_profile(second_subject, second),
                    chosen,
                ),
                ComparisonPayload,
                usage,
            )

        record = self.trace_store.create_record(
            operation="compare_subjects",
            structured=True,
            usage=usage,
            latency_ms=timer.elapsed_ms,
            subject_ids=[first_id, second_id],
        )
        return ComparisonOutcome(
            narrative=render_comparison(payload, first_subject.name, second_subject.name),
            structured=payload,
            tokens_used=usage.total,
            trace_id=record.trace_id,
        )

    def assess_readiness(self, subject_id: int, target_rank: str) -> ReadinessOutcome:
        usage = TokenUsage()
        with Timer() as timer:
            subject, context = self._subject_context(subject_id, include_history=True)
            payload = self._structured(
                prompts.readiness_prompt(
                    subject,
                    target_rank,
                    context.metrics,
                    context.certifications,
                    context.experience,
                    self.config.readiness,
                ),
                ReadinessPayload,
                usage,
            )

        record = self.trace_store.create_record(
            operation="assess_readiness",
            structured=True,
            usage=usage,
            latency_ms=timer.elapsed_ms,
            subject_ids=[subject_id],
        )
        return ReadinessOutcome(
            narrative=render_readiness(payload, target_rank),
            readiness_level=READINESS_LEVELS.get(payload.readiness_level.strip().upper(), "not_ready"),
            readiness_score=payload.readiness_score,
            gaps=[f"{gap.category}: {strip_codes(gap.description)}" for gap in payload.gaps],
            timeline=payload.estimated_readiness_date or "TBD",
            tokens_used=usage.total,
            trace_id=record.trace_id,
        )

    def regenerate_summaries(self, subject_ids: Iterable[int] | None = None) -> list[BatchItemResult]:
        """Regenerate summaries one subject at a time; defaults to stale subjects."""

        ids = list(subject_ids) if subject_ids is not None else self.data.subjects_needing_summary_refresh()
        limiter = RateLimiter(
            self.config.batch_spacing_seconds, clock=self._clock, sleep=self._sleep
        )
        return regenerate_summaries(ids, self._summary_for_batch, limiter=limiter)

    def format_plain_text(self, text: str, context: SubjectContext) -> StructuredResponse:
        """Structure a free-text answer after the fact, e.g. an archived reply."""

        response = self.extractor.extract(PlainTextCompletion(text=text), context.metrics)
        response, _ = validate_and_repair(response, self.config.limits)
        return response

    def _subject_context(
        self, subject_id: int, *, include_history: bool = False
    ) -> tuple[Subject, SubjectContext]:
        context = self.assembler.gather_subject(subject_id, include_history=include_history)
        if context.subject is None:
            raise SubjectNotFoundError(subject_id)
        return context.subject, context

    def _summary_for_batch(self, subject_id: int) -> tuple[int, int]:
        outcome = self.generate_summary(subject_id)
        return outcome.summary.summary_id, outcome.tokens_used

    def _structured(self, prompt: str, schema: type[ModelT], usage: TokenUsage) -> ModelT:
        request = CompletionRequest.single(prompt, system_prompt=self.system_prompt)
        value, result = self.client.complete_structured_result(request, schema)
        usage.add(result.input_tokens, result.output_tokens)
        return value

    def _answer(
        self,
        question: str,
        history: list[ConversationTurn],
        context: SubjectContext,
        usage: TokenUsage,
    ) -> tuple[StructuredResponse | None, str, str | None, list[str]]:
        limits = self.config.limits
        structured_request = CompletionRequest.single(
            prompts.chat_prompt(question, history, context, limits=limits),
            system_prompt=self.system_prompt,
        )
        try:
            payload, result = self.client.complete_structured_result(
                structured_request, ChatAnswerPayload
            )
            usage.add(result.input_tokens, result.output_tokens)
            response = self.extractor.extract(
                StructuredCompletion(payload=payload, raw_text=result.text), context.metrics
            )
            response, validation = validate_and_repair(response, limits)
            return response, render_display_text(response), None, validation.errors
        except Exception as exc:
            reason = _describe_failure(exc)
            logger.warning("Structured chat answer failed, falling back to plain text: %s", reason)

        plain_request = CompletionRequest.single(
            prompts.chat_prompt(question, history, context, limits=limits, structured=False),
            system_prompt=self.system_prompt,
        )
        try:
            result = self.client.complete(plain_request)
        except Exception as exc:
            logger.error("Plain-text chat answer failed: %s", _describe_failure(exc))
            return None, UNAVAILABLE_MESSAGE, reason, []
        usage.add(result.input_tokens, result.output_tokens)
        return None, strip_codes(result.text).strip(), reason, []

    def _conversation_tail(self, conversation_id: str) -> list[ConversationTurn]:
        try:
            return self.data.get_conversation_tail(conversation_id, limit=self.config.history_turns)
        except Exception as exc:
            logger.warning("Could not load conversation %s: %s", conversation_id, exc)
            return []

    def _assemble(self, question: str, understanding: QueryUnderstanding) -> SubjectContext:
        try:
            return self.assembler.assemble(question, understanding)
        except Exception as exc:
            logger.warning("Context assembly failed, answering without subject data: %s", exc)
            return SubjectContext()

    def _record_turns(
        self,
        conversation_id: str,
        question: str,
        display_text: str,
        structured: StructuredResponse | None,
        tokens_used: int,
    ) -> None:
        try:
            self.data.append_conversation_turn(
                conversation_id, ConversationTurn(role="user", content=question)
            )
            self.data.append_conversation_turn(
                conversation_id,
                ConversationTurn(
                    role="assistant",
                    content=display_text,
                    structured_response=structured.to_json_dict() if structured else None,
                    tokens_used=tokens_used,
                ),
            )
        except Exception as exc:
            logger.warning("Could not record conversation %s: %s", conversation_id, exc)

    def _benchmarks(self, context: SubjectContext) -> dict[str, Benchmark]:
        benchmarks: dict[str, Benchmark] = {}
        for reading in context.metrics[: self.config.benchmark_metric_limit]:
            try:
                benchmark = self.data.get_benchmark(reading.code)
            except Exception as exc:
                logger.warning("Skipping benchmark for %s: %s", reading.code, exc)
                continue
            if benchmark is not None:
                benchmarks[reading.code] = benchmark
        return benchmarks


def render_comparison(payload: ComparisonPayload, first_name: str, second_name: str) -> str:
    winners = {"first": first_name, "second": second_name, "tie": "Even"}
    parts = [strip_codes(payload.summary)]
    for aspect in payload.aspects:
        line = f"**{aspect.aspect}**: {strip_codes(aspect.comparison)}"
        if aspect.winner in winners:
            line += f" (stronger: {winners[aspect.winner]})"
        parts.append(line)
    if payload.key_differences:
        parts.append("**Key Differences:**")
        parts.extend(f"- {strip_codes(item)}" for item in payload.key_differences)
    for recommendation in payload.recommendations:
        if recommendation.for_first:
            parts.append(f"For {first_name}: {strip_codes(recommendation.for_first)}")
        if recommendation.for_second:
            parts.append(f"For {second_name}: {strip_codes(recommendation.for_second)}")
    return "\n\n".join(part for part in parts if part)


def render_readiness(payload: ReadinessPayload, target_rank: str) -> str:
    parts = [
        f"Readiness for {target_rank}: {payload.readiness_level} (score {payload.readiness_score:g}/100)",
        strip_codes(payload.summary),
    ]
    if payload.strengths:
        parts.append("**Strengths:**\n" + "\n".join(f"- {strip_codes(s)}" for s in payload.strengths))
    if payload.gaps:
        parts.append(
            "**Gaps:**\n"
            + "\n".join(
                f"- {gap.category} ({gap.severity}): {strip_codes(gap.description)}"
                for gap in payload.gaps
            )
        )
    if payload.recommendations:
        parts.append(
            "**Recommendations:**\n"
            + "\n".join(
                f"{index}. {strip_codes(item.action)}"
                for index, item in enumerate(payload.recommendations, start=1)
            )
        )
    return "\n\n".join(part for part in parts if part)


def _reasoning_steps(
    understanding: QueryUnderstanding,
    context: SubjectContext,
    understanding_fallback: str | None,
    answer_fallback: str | None,
) -> list[str]:
    entities = understanding.entities
    codes = ", ".join(metric_ref.describe(code) for code in entities.metric_codes) or "none"
    steps = [
        f"Identified intent: {understanding.intent.value} (confidence {understanding.confidence:.2f})",
        f"Extracted subjects: {', '.join(entities.subjects) or 'none'}; metrics: {codes}",
    ]
    if understanding_fallback:
        steps.append("Intent classified by keyword rules because the model was unavailable")
    if context.branch == "multi_subject":
        steps.append(f"Ranked {len(context.ranked_subjects)} subjects for a fleet-wide question")
    elif context.subject is not None:
        steps.append(
            f"Gathered data for {context.subject.name}: {len(context.metrics)} metrics, "
            f"{len(context.events)} events, {len(context.certifications)} certifications"
        )
    else:
        steps.append("No subject data found; answered without subject grounding")
    if answer_fallback:
        steps.append("Structured answer unavailable; responded in plain text")
    else:
        steps.append("Generated a validated structured answer")
    return steps


def _data_sources(understanding: QueryUnderstanding, context: SubjectContext) -> list[dict[str, Any]]:
    readings = {reading.code: reading for reading in context.metrics}
    sources: list[dict[str, Any]] = []
    for code in understanding.entities.metric_codes:
        reading = readings.get(code)
        if reading is None:
            continue
        sources.append(
            {
                "code": code,
                "human_name": metric_ref.human_name(code),
                "value": reading.score,
                "source": reading.view,
            }
        )
    return sources


def _comparison_profile(subject: Subject, context: SubjectContext) -> dict[str, Any]:
    return {
        "info": subject.profile(),
        "metrics": {annotate_codes(code): score for code, score in context.metric_values().items()},
        "experience_records": len(context.experience),
        "certifications": len(context.certifications),
    }


def _codes_in(values: Iterable[str]) -> list[str]:
    codes: list[str] = []
    for value in values:
        for code in metric_ref.find_codes(value):
            if code not in codes:
                codes.append(code)
    return codes


def _strip_text_fields(item: dict[str, Any]) -> dict[str, Any]:
    return {
        key: strip_codes(value) if isinstance(value, str) else value for key, value in item.items()
    }


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, InsightError):
        return f"{exc.kind}: {exc.message}"
    return f"{type(exc).__name__}: {exc}"
