"""Typed answer shapes.

``*Payload`` models describe what the completion service is asked to return
and are used for shape checks on structured completions. ``StructuredResponse``
is what callers receive after extraction, validation and repair.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

FINDING_SEVERITIES = ("positive", "neutral", "concern", "critical")
RISK_SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


def _none_as_empty(value: Any) -> Any:
    return [] if value is None else value


def _none_as_blank(value: Any) -> Any:
    return "" if value is None else value


class KeyFinding(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    finding: str
    supporting_codes: list[str] = Field(default_factory=list, alias="supportingCodes")
    severity: str = "neutral"


class RiskIndicatorSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    risk_type: str = Field(alias="riskType")
    severity: str
    description: str
    affected_codes: list[str] = Field(default_factory=list, alias="affectedCodes")


class TraceabilityEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    human_name: str = Field(alias="humanName")
    category: str
    score: float | None = None
    interpretation: str


class StructuredResponse(BaseModel):
    """Validated, traceable answer returned alongside the display text."""

    model_config = ConfigDict(populate_by_name=True)

    summary: str
    key_findings: list[KeyFinding] = Field(default_factory=list, alias="keyFindings")
    risk_indicators: list[RiskIndicatorSummary] = Field(default_factory=list, alias="riskIndicators")
    recommended_actions: list[str] = Field(default_factory=list, alias="recommendedActions")
    traceability: list[TraceabilityEntry] = Field(default_factory=list)
    detailed_analysis: str | None = Field(default=None, alias="detailedAnalysis")

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class FindingPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    finding: str = ""
    supporting_codes: list[str] = Field(default_factory=list, alias="supportingCodes")
    severity: str = "neutral"

    coerce_lists = field_validator("supporting_codes", mode="before")(_none_as_empty)
    coerce_text = field_validator("finding", "severity", mode="before")(_none_as_blank)


class RiskPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    risk_type: str = Field(default="", alias="riskType")
    severity: str = "LOW"
    description: str = ""
    affected_codes: list[str] = Field(default_factory=list, alias="affectedCodes")

    coerce_lists = field_validator("affected_codes", mode="before")(_none_as_empty)
    coerce_text = field_validator("risk_type", "severity", "description", mode="before")(_none_as_blank)


class ChatAnswerPayload(BaseModel):
    """Shape the chat prompt asks the model to answer in."""

    model_config = ConfigDict(populate_by_name=True)

    summary: str
    key_findings: list[FindingPayload] = Field(default_factory=list, alias="keyFindings")
    risk_indicators: list[RiskPayload] = Field(default_factory=list, alias="riskIndicators")
    recommended_actions: list[str] = Field(default_factory=list, alias="recommendedActions")
    detailed_analysis: str | None = Field(default=None, alias="detailedAnalysis")

    coerce_lists = field_validator(
        "key_findings", "risk_indicators", "recommended_actions", mode="before"
    )(_none_as_empty)


class Strength(BaseModel):
    area: str
    evidence: str = ""
    metric_codes: list[str] = Field(default_factory=list)

    coerce_lists = field_validator("metric_codes", mode="before")(_none_as_empty)


class DevelopmentArea(BaseModel):
    area: str
    evidence: str = ""
    recommendation: str = ""
    metric_codes: list[str] = Field(default_factory=list)

    coerce_lists = field_validator("metric_codes", mode="before")(_none_as_empty)


class SummaryRisk(BaseModel):
    severity: str = "LOW"
    category: str = ""
    description: str = ""
    action: str = ""


class Recommendation(BaseModel):
    priority: str = "MEDIUM"
    action: str
    owner: str = ""
    timeline: str = ""


class SummaryPayload(BaseModel):
    overall_rating: str
    summary_text: str
    strengths: list[Strength] = Field(default_factory=list)
    development_areas: list[DevelopmentArea] = Field(default_factory=list)
    risk_indicators: list[SummaryRisk] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)

    coerce_lists = field_validator(
        "strengths", "development_areas", "risk_indicators", "recommendations", mode="before"
    )(_none_as_empty)


class RiskFinding(BaseModel):
    severity: str = "LOW"
    category: str = ""
    description: str = ""
    action: str = ""
    evidence: list[str] = Field(default_factory=list)

    coerce_lists = field_validator("evidence", mode="before")(_none_as_empty)


class RiskAnalysisPayload(BaseModel):
    risk_level: str = "LOW"
    risk_score: float = 0.0
    indicators: list[RiskFinding] = Field(default_factory=list)
    summary: str = ""
    recommended_actions: list[str] = Field(default_factory=list)

    coerce_lists = field_validator("indicators", "recommended_actions", mode="before")(_none_as_empty)


class AspectComparison(BaseModel):
    aspect: str
    first_assessment: str = ""
    second_assessment: str = ""
    comparison: str = ""
    winner: str = "not_applicable"


class PairedRecommendation(BaseModel):
    for_first: str = ""
    for_second: str = ""


class ComparisonPayload(BaseModel):
    summary: str
    aspects: list[AspectComparison] = Field(default_factory=list)
    key_differences: list[str] = Field(default_factory=list)
    recommendations: list[PairedRecommendation] = Field(default_factory=list)

    coerce_lists = field_validator(
        "aspects", "key_differences", "recommendations", mode="before"
    )(_none_as_empty)


class ReadinessGap(BaseModel):
    category: str
    description: str
    severity: str = "MEDIUM"
    action_required: str = ""


class ReadinessPayload(BaseModel):
    readiness_level: str
    readiness_score: float = 0.0
    summary: str = ""
    requirements_met: dict[str, bool] = Field(default_factory=dict)
    gaps: list[ReadinessGap] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    estimated_readiness_date: str | None = None

    coerce_lists = field_validator("gaps", "strengths", "recommendations", mode="before")(_none_as_empty)
