"""Turn completion output into a :class:`StructuredResponse`.

Two extraction modes share one interface. Direct mode maps a structured JSON
completion field by field. Heuristic mode mines free text with regular
expressions; it is a best-effort formatter and will mis-read some phrasing.
Both strip internal metric codes out of every user-facing field.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from crew_insight.config import ResponseLimits
from crew_insight.pipeline.responses import (
    ChatAnswerPayload,
    KeyFinding,
    RiskIndicatorSummary,
    StructuredResponse,
    TraceabilityEntry,
)
from crew_insight.reference import metrics as metric_ref
from crew_insight.types import MetricReading

ELLIPSIS = "..."

_CRITICAL_WORDS = re.compile(
    r"\b(critical|urgent|severe|immediate|emergency|fail|failure|detention|incident)\b"
)
_CONCERN_WORDS = re.compile(r"\b(concern|warning|low|poor|below|decline|risk|issue|problem)\b")
_POSITIVE_WORDS = re.compile(r"\b(excellent|outstanding|strong|high|good|above|improve|success)\b")

_RISK_CRITICAL = re.compile(r"\b(critical|severe|emergency|immediate)\b")
_RISK_HIGH = re.compile(r"\b(high|significant|major)\b")
_RISK_MEDIUM = re.compile(r"\b(medium|moderate|some)\b")

_RISK_TYPES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Performance Risk", re.compile(r"\b(performance|capability|competency|skill)\b")),
    ("Compliance Risk", re.compile(r"\b(compliance|inspection|detention|violation)\b")),
    ("Health Risk", re.compile(r"\b(medical|health|fatigue)\b")),
    ("Behavioral Risk", re.compile(r"\b(behavioral|behavioural|conduct|disciplinary)\b")),
    ("Retention Risk", re.compile(r"\b(contract|retention|turnover)\b")),
)

_BULLET_LINE = re.compile(r"^[ \t]*[-•*][ \t]+(.+?)[ \t]*$", re.MULTILINE)
_NUMBERED_LINE = re.compile(r"^[ \t]*\d+[.)][ \t]+(.+?)[ \t]*$", re.MULTILINE)
_FINDING_MARKER = re.compile(r"(?:finding|insight|observation):\s*(.+?)(?=\n|\.|$)", re.IGNORECASE)
_RISK_PATTERNS = (
    re.compile(r"(?:risk|concern|issue):\s*(.+?)(?=\n|\.|$)", re.IGNORECASE),
    re.compile(r"(?:high|medium|low|critical)\s+risk[:\s]+(.+?)(?=\n|\.|$)", re.IGNORECASE),
)
_ACTION_PATTERN = re.compile(
    r"(?:recommend(?:ations?)?|suggest(?:ions?)?|action|should|must|next steps?|follow-up):"
    r"\s*(.+?)(?=\n|\.|$)",
    re.IGNORECASE,
)
_IMPERATIVE = re.compile(r"^(consider|review|ensure|implement|provide|conduct)", re.IGNORECASE)
_LIST_PREFIX = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s+")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_MARKDOWN_EMPHASIS = re.compile(r"\*\*(.+?)\*\*")


def strip_codes(text: str) -> str:
    """Replace each metric code with its human name; idempotent."""

    if not text:
        return text
    return metric_ref.CODE_PATTERN.sub(lambda match: metric_ref.human_name(match.group(0)), text)


def annotate_codes(text: str) -> str:
    """Replace each metric code with ``"<human name> (<code>)"``."""

    if not text:
        return text
    return metric_ref.CODE_PATTERN.sub(lambda match: metric_ref.describe(match.group(0)), text)


def truncate_summary(text: str, limit: int = 150) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def finding_severity(text: str) -> str:
    lowered = text.lower()
    if _CRITICAL_WORDS.search(lowered):
        return "critical"
    if _CONCERN_WORDS.search(lowered):
        return "concern"
    if _POSITIVE_WORDS.search(lowered):
        return "positive"
    return "neutral"


def risk_severity(text: str) -> str:
    lowered = text.lower()
    if _RISK_CRITICAL.search(lowered):
        return "CRITICAL"
    if _RISK_HIGH.search(lowered):
        return "HIGH"
    if _RISK_MEDIUM.search(lowered):
        return "MEDIUM"
    return "LOW"


def risk_type(text: str) -> str:
    lowered = text.lower()
    for label, pattern in _RISK_TYPES:
        if pattern.search(lowered):
            return label
    return "General Risk"


def build_traceability(raw_text: str, readings: Sequence[MetricReading]) -> list[TraceabilityEntry]:
    """One entry per distinct code mentioned anywhere in ``raw_text``."""

    by_code = {reading.code: reading for reading in readings}
    entries: list[TraceabilityEntry] = []
    for code in metric_ref.find_codes(raw_text):
        reading = by_code.get(code)
        if reading is not None:
            entries.append(
                TraceabilityEntry(
                    code=code,
                    human_name=metric_ref.human_name(code),
                    category=reading.category,
                    score=reading.score,
                    interpretation=metric_ref.interpret_score(reading.score),
                )
            )
        else:
            entries.append(
                TraceabilityEntry(
                    code=code,
                    human_name=metric_ref.human_name(code),
                    category=metric_ref.category(code),
                    score=None,
                    interpretation=metric_ref.DATA_NOT_AVAILABLE,
                )
            )
    return entries


@dataclass(frozen=True, slots=True)
class StructuredCompletion:
    """The model answered in the requested JSON shape."""

    payload: ChatAnswerPayload
    raw_text: str


@dataclass(frozen=True, slots=True)
class PlainTextCompletion:
    """The model answered in prose."""

    text: str


Completion = StructuredCompletion | PlainTextCompletion


class ResponseExtractor:
    def __init__(self, limits: ResponseLimits | None = None) -> None:
        self.limits = limits or ResponseLimits()

    def extract(
        self,
        completion: Completion,
        readings: Sequence[MetricReading] = (),
    ) -> StructuredResponse:
        if isinstance(completion, StructuredCompletion):
            return self.from_payload(completion.payload, completion.raw_text, readings)
        return self.from_text(completion.text, readings)

    def from_payload(
        self,
        payload: ChatAnswerPayload,
        raw_text: str,
        readings: Sequence[MetricReading] = (),
    ) -> StructuredResponse:
        """Direct mode: fields map one to one, counts are left for the validator."""

        findings = [
            KeyFinding(
                finding=strip_codes(item.finding.strip()),
                supporting_codes=_code_list(item.supporting_codes, item.finding),
                severity=item.severity.strip().lower() or "neutral",
            )
            for item in payload.key_findings
        ]
        risks = [
            RiskIndicatorSummary(
                risk_type=strip_codes(item.risk_type.strip()),
                severity=item.severity.strip().upper() or "LOW",
                description=strip_codes(item.description.strip()),
                affected_codes=_code_list(item.affected_codes, item.description),
            )
            for item in payload.risk_indicators
        ]
        detailed = (payload.detailed_analysis or "").strip()
        return StructuredResponse(
            summary=truncate_summary(strip_codes(payload.summary), self.limits.summary_chars),
            key_findings=findings,
            risk_indicators=risks,
            recommended_actions=[
                strip_codes(action.strip()) for action in payload.recommended_actions if action.strip()
            ],
            traceability=build_traceability(raw_text, readings),
            detailed_analysis=strip_codes(detailed) or None,
        )

    def from_text(self, text: str, readings: Sequence[MetricReading] = ()) -> StructuredResponse:
        """Heuristic mode over free text."""

        return StructuredResponse(
            summary=self._summary(text),
            key_findings=self._findings(text)[: self.limits.max_findings],
            risk_indicators=self._risks(text),
            recommended_actions=self._actions(text)[: self.limits.max_actions],
            traceability=build_traceability(text, readings),
            detailed_analysis=(
                strip_codes(text.strip())
                if len(text) > self.limits.detailed_analysis_min_chars
                else None
            ),
        )

    def _summary(self, text: str) -> str:
        plain = _MARKDOWN_EMPHASIS.sub(r"\1", text)
        sentences = [
            " ".join(part.split()) for part in _SENTENCE_SPLIT.split(plain) if part.strip()
        ]
        summary = ". ".join(sentences[:3]).strip()
        if summary and summary[-1] not in ".!?":
            summary += "."
        return truncate_summary(strip_codes(summary), self.limits.summary_chars)

    def _findings(self, text: str) -> list[KeyFinding]:
        seen: set[str] = set()
        findings: list[KeyFinding] = []
        for pattern in (_BULLET_LINE, _NUMBERED_LINE, _FINDING_MARKER):
            for match in pattern.finditer(text):
                candidate = match.group(1).strip()
                if len(candidate) <= 10 or candidate in seen:
                    continue
                seen.add(candidate)
                findings.append(
                    KeyFinding(
                        finding=strip_codes(candidate),
                        supporting_codes=metric_ref.find_codes(candidate),
                        severity=finding_severity(candidate),
                    )
                )
        if findings:
            return findings

        paragraphs = [part for part in re.split(r"\n\s*\n+", text) if len(part.strip()) > 20]
        for paragraph in paragraphs[: self.limits.max_findings]:
            paragraph = paragraph.strip()
            codes = metric_ref.find_codes(paragraph)
            if codes or len(paragraph) > 30:
                findings.append(
                    KeyFinding(
                        finding=strip_codes(paragraph[:200]),
                        supporting_codes=codes,
                        severity=finding_severity(paragraph),
                    )
                )
        return findings

    def _risks(self, text: str) -> list[RiskIndicatorSummary]:
        seen: set[str] = set()
        risks: list[RiskIndicatorSummary] = []
        for pattern in _RISK_PATTERNS:
            for match in pattern.finditer(text):
                description = match.group(1).strip()
                if not description or description in seen:
                    continue
                seen.add(description)
                line = _line_around(text, match.start())
                risks.append(
                    RiskIndicatorSummary(
                        risk_type=risk_type(line),
                        severity=risk_severity(line),
                        description=strip_codes(description),
                        affected_codes=metric_ref.find_codes(description),
                    )
                )
        return risks

    def _actions(self, text: str) -> list[str]:
        actions: list[str] = []
        for match in _ACTION_PATTERN.finditer(text):
            candidate = _LIST_PREFIX.sub("", match.group(1)).strip()
            if len(candidate) > 10 and strip_codes(candidate) not in actions:
                actions.append(strip_codes(candidate))
        if actions:
            return actions

        for sentence in _SENTENCE_SPLIT.split(text):
            candidate = _LIST_PREFIX.sub("", sentence.strip()).strip()
            if len(candidate) > 15 and _IMPERATIVE.match(candidate):
                actions.append(strip_codes(candidate))
        return actions


def render_display_text(response: StructuredResponse) -> str:
    """Readable narrative for chat display, rendered from the structured answer."""

    parts = [response.summary, ""]
    if response.key_findings:
        parts.append("**Key Findings:**")
        parts.extend(
            f"{_FINDING_MARKERS.get(finding.severity, '-')} {finding.finding}"
            for finding in response.key_findings
        )
        parts.append("")
    if response.risk_indicators:
        parts.append("**Risk Indicators:**")
        parts.extend(
            f"- **{risk.risk_type}** ({risk.severity}): {risk.description}"
            for risk in response.risk_indicators
        )
        parts.append("")
    if response.recommended_actions:
        parts.append("**Recommended Actions:**")
        parts.extend(
            f"{index}. {action}" for index, action in enumerate(response.recommended_actions, start=1)
        )
    return "\n".join(parts).strip()


_FINDING_MARKERS = {"positive": "+", "neutral": "-", "concern": "!", "critical": "!!"}


def _code_list(values: Iterable[str], text: str) -> list[str]:
    codes: list[str] = []
    for value in values:
        found = metric_ref.find_codes(value)
        for code in found or [value.strip()]:
            if code and code not in codes:
                codes.append(code)
    for code in metric_ref.find_codes(text):
        if code not in codes:
            codes.append(code)
    return codes


def _line_around(text: str, index: int) -> str:
    start = text.rfind("\n", 0, index) + 1
    end = text.find("\n", index)
    return text[start : end if end != -1 else len(text)]
