"""Business-rule checks and deterministic repair of structured answers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from crew_insight.config import ResponseLimits
from crew_insight.pipeline.extraction import strip_codes
from crew_insight.pipeline.responses import (
    FINDING_SEVERITIES,
    RISK_SEVERITIES,
    StructuredResponse,
)
from crew_insight.reference import metrics as metric_ref

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ValidationWarning:
    """A rule violation. Only leaked codes are ``critical`` and get repaired."""

    rule: str
    message: str
    critical: bool = False


@dataclass(slots=True)
class ValidationResult:
    warnings: list[ValidationWarning] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.warnings

    @property
    def errors(self) -> list[str]:
        return [warning.message for warning in self.warnings]

    @property
    def critical(self) -> list[ValidationWarning]:
        return [warning for warning in self.warnings if warning.critical]

    @property
    def soft(self) -> list[ValidationWarning]:
        return [warning for warning in self.warnings if not warning.critical]


def _has_code(text: str | None) -> bool:
    return bool(text) and metric_ref.CODE_PATTERN.search(text) is not None


def _leak(field_name: str) -> ValidationWarning:
    return ValidationWarning(
        rule="leaked_code",
        message=f"{field_name} contains metric codes - should use human-readable descriptions only",
        critical=True,
    )


def validate_response(
    response: StructuredResponse,
    limits: ResponseLimits | None = None,
) -> ValidationResult:
    """Check every rule independently and collect all violations."""

    limits = limits or ResponseLimits()
    warnings: list[ValidationWarning] = []

    if len(response.summary) > limits.summary_chars:
        warnings.append(
            ValidationWarning(
                "summary_length",
                f"Summary exceeds {limits.summary_chars} characters ({len(response.summary)} chars)",
            )
        )
    if len(response.key_findings) > limits.max_findings:
        warnings.append(
            ValidationWarning(
                "finding_count",
                f"Too many key findings ({len(response.key_findings)}, max {limits.max_findings})",
            )
        )
    if len(response.recommended_actions) > limits.max_actions:
        warnings.append(
            ValidationWarning(
                "action_count",
                f"Too many recommended actions ({len(response.recommended_actions)}, max {limits.max_actions})",
            )
        )

    if _has_code(response.summary):
        warnings.append(_leak("Summary"))
    for index, finding in enumerate(response.key_findings, start=1):
        if _has_code(finding.finding):
            warnings.append(_leak(f"Key finding #{index}"))
        if not finding.finding.strip():
            warnings.append(ValidationWarning("finding_text", f"Key finding #{index} has empty finding text"))
        if not isinstance(finding.supporting_codes, list):
            warnings.append(
                ValidationWarning("finding_codes", f"Key finding #{index} has invalid supporting codes (must be a list)")
            )
        if finding.severity not in FINDING_SEVERITIES:
            warnings.append(
                ValidationWarning("finding_severity", f"Key finding #{index} has invalid severity: {finding.severity}")
            )
    for index, action in enumerate(response.recommended_actions, start=1):
        if _has_code(action):
            warnings.append(_leak(f"Recommended action #{index}"))
    for index, risk in enumerate(response.risk_indicators, start=1):
        if _has_code(risk.description):
            warnings.append(_leak(f"Risk indicator #{index} description"))
        if _has_code(risk.risk_type):
            warnings.append(_leak(f"Risk indicator #{index} type"))
        if not risk.risk_type.strip():
            warnings.append(ValidationWarning("risk_type", f"Risk indicator #{index} has empty risk type"))
        if not risk.description.strip():
            warnings.append(ValidationWarning("risk_description", f"Risk indicator #{index} has empty description"))
        if risk.severity not in RISK_SEVERITIES:
            warnings.append(
                ValidationWarning("risk_severity", f"Risk indicator #{index} has invalid severity: {risk.severity}")
            )
        if not isinstance(risk.affected_codes, list):
            warnings.append(
                ValidationWarning("risk_codes", f"Risk indicator #{index} has invalid affected codes (must be a list)")
            )

    if response.detailed_analysis:
        if _has_code(response.detailed_analysis):
            warnings.append(_leak("Detailed analysis"))
        word_count = len(response.detailed_analysis.split())
        if word_count > limits.detailed_analysis_words:
            warnings.append(
                ValidationWarning(
                    "analysis_length",
                    f"Detailed analysis exceeds {limits.detailed_analysis_words} words ({word_count} words)",
                )
            )

    for index, entry in enumerate(response.traceability, start=1):
        if metric_ref.lookup(entry.code) is None:
            warnings.append(
                ValidationWarning("trace_code", f"Traceability #{index} has unknown code: {entry.code}")
            )
        if _has_code(entry.human_name) or _has_code(entry.interpretation):
            warnings.append(_leak(f"Traceability #{index} text"))

    return ValidationResult(warnings=warnings)


def repair_response(response: StructuredResponse) -> StructuredResponse:
    """Strip leaked codes from every user-facing field; other fields are untouched."""

    for finding in response.key_findings:
        finding.finding = strip_codes(finding.finding)
    for risk in response.risk_indicators:
        risk.risk_type = strip_codes(risk.risk_type)
        risk.description = strip_codes(risk.description)
    for entry in response.traceability:
        entry.human_name = strip_codes(entry.human_name)
        entry.interpretation = strip_codes(entry.interpretation)
    response.summary = strip_codes(response.summary)
    response.recommended_actions = [strip_codes(action) for action in response.recommended_actions]
    if response.detailed_analysis:
        response.detailed_analysis = strip_codes(response.detailed_analysis)
    return response


def validate_and_repair(
    response: StructuredResponse,
    limits: ResponseLimits | None = None,
) -> tuple[StructuredResponse, ValidationResult]:
    """Validate, repair leaked codes in place, and log what remains."""

    result = validate_response(response, limits)
    if result.critical:
        logger.warning("Repairing %d leaked-code violation(s)", len(result.critical))
        repair_response(response)
    for warning in result.soft:
        logger.warning("Response validation: %s", warning.message)
    return response, result
