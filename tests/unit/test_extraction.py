from crew_insight.config import ResponseLimits
from crew_insight.pipeline.extraction import (
    PlainTextCompletion,
    ResponseExtractor,
    StructuredCompletion,
    annotate_codes,
    finding_severity,
    render_display_text,
    risk_severity,
    risk_type,
    strip_codes,
    truncate_summary,
)
from crew_insight.pipeline.responses import ChatAnswerPayload
from crew_insight.reference import metrics as metric_ref

REPORT = (
    "Maria Santos shows strong appraisal results with CP0003 at 82. "
    "Leadership is below expectations.\n\n"
    "- Appraisal score CP0003 is excellent and stable\n"
    "- Leadership score CH0004 is poor at 45\n"
    "- Detention record CL0002 shows a failure in 2024\n\n"
    "High risk: detention exposure under CL0002\n"
    "Recommendation: Enroll in the leadership course next quarter\n"
)


def test_strip_codes_replaces_every_code_and_is_idempotent() -> None:
    text = "CP0003 is high but CH0004 and ZZ0001 lag"
    once = strip_codes(text)

    assert once == "Average appraisal score is high but Leadership score and Unknown metric lag"
    assert strip_codes(once) == once
    assert metric_ref.CODE_PATTERN.search(once) is None


def test_annotate_codes_keeps_code_in_parentheses() -> None:
    assert annotate_codes("CH0004: 45") == "Leadership score (CH0004): 45"


def test_truncate_summary() -> None:
    assert truncate_summary("  short  ") == "short"
    long_text = "word " * 60
    truncated = truncate_summary(long_text)
    assert len(truncated) <= 150
    assert truncated.endswith("...")


def test_keyword_severity_helpers() -> None:
    assert finding_severity("Urgent follow-up after detention") == "critical"
    assert finding_severity("Scores are below fleet average") == "concern"
    assert finding_severity("Excellent inspection record") == "positive"
    assert finding_severity("Rotation planned for May") == "neutral"
    assert risk_severity("Severe fatigue reported") == "CRITICAL"
    assert risk_severity("Significant gap in training") == "HIGH"
    assert risk_severity("Moderate delay on sign-on") == "MEDIUM"
    assert risk_severity("Minor note") == "LOW"
    assert risk_type("inspection findings pending") == "Compliance Risk"
    assert risk_type("fatigue after long contract") == "Health Risk"
    assert risk_type("nothing specific") == "General Risk"


def test_heuristic_mode_mines_free_text(crew_data) -> None:
    readings = crew_data.get_metric_snapshot(1)

    response = ResponseExtractor().extract(PlainTextCompletion(text=REPORT), readings)

    assert len(response.summary) <= 150
    assert response.summary.endswith("...")
    assert metric_ref.CODE_PATTERN.search(response.summary) is None

    assert [finding.severity for finding in response.key_findings] == [
        "positive",
        "concern",
        "critical",
    ]
    assert response.key_findings[1].supporting_codes == ["CH0004"]
    assert "Leadership score" in response.key_findings[1].finding
    assert all(
        metric_ref.CODE_PATTERN.search(finding.finding) is None for finding in response.key_findings
    )

    assert len(response.risk_indicators) == 1
    risk = response.risk_indicators[0]
    assert (risk.risk_type, risk.severity) == ("Compliance Risk", "HIGH")
    assert risk.affected_codes == ["CL0002"]
    assert "CL0002" not in risk.description

    assert response.recommended_actions == ["Enroll in the leadership course next quarter"]
    assert response.detailed_analysis is None

    trace = {entry.code: entry for entry in response.traceability}
    assert list(trace) == ["CP0003", "CH0004", "CL0002"]
    assert trace["CP0003"].score == 82
    assert trace["CP0003"].interpretation == "Excellent performance"


def test_heuristic_mode_falls_back_to_paragraphs_and_imperatives() -> None:
    text = (
        "Performance overall is steady across the last two contracts.\n\n"
        "Consider a refresher course on cargo operations before the next rotation."
    )

    response = ResponseExtractor().from_text(text)

    assert len(response.key_findings) == 2
    assert response.recommended_actions == [
        "Consider a refresher course on cargo operations before the next rotation"
    ]
    assert response.risk_indicators == []


def test_heuristic_mode_caps_counts_and_keeps_long_analysis() -> None:
    bullets = "\n".join(f"- Observation number {index} about the deck crew" for index in range(8))
    actions = "\n".join(f"Action: schedule review number {index} with the master" for index in range(5))
    text = f"Fleet overview follows.\n{bullets}\n{actions}\n" + "Additional context sentence. " * 20

    response = ResponseExtractor(ResponseLimits()).from_text(text)

    assert len(response.key_findings) == 5
    assert len(response.recommended_actions) == 3
    assert response.detailed_analysis is not None
    assert response.detailed_analysis.startswith("Fleet overview follows.")


def test_direct_mode_maps_payload_one_to_one(crew_data) -> None:
    payload = ChatAnswerPayload.model_validate(
        {
            "summary": "Leadership (CH0004) needs work while appraisals stay strong.",
            "keyFindings": [
                {"finding": "CH0004 is 45", "supportingCodes": ["CH0004"], "severity": "CONCERN"},
                {"finding": "Appraisal average is 82", "supportingCodes": None, "severity": None},
            ],
            "riskIndicators": [
                {
                    "riskType": "Behavioral",
                    "severity": "medium",
                    "description": "Low CH0004 may affect team cohesion",
                    "affectedCodes": [],
                }
            ],
            "recommendedActions": ["Mentoring", "Leadership course", "Follow-up appraisal", "Extra"],
        }
    )
    raw = payload.model_dump_json(by_alias=True)

    response = ResponseExtractor().extract(
        StructuredCompletion(payload=payload, raw_text=raw), crew_data.get_metric_snapshot(1)
    )

    assert response.summary == "Leadership (Leadership score) needs work while appraisals stay strong."
    assert response.key_findings[0].finding == "Leadership score is 45"
    assert response.key_findings[0].severity == "concern"
    assert response.key_findings[0].supporting_codes == ["CH0004"]
    assert response.key_findings[1].severity == "neutral"
    assert response.key_findings[1].supporting_codes == []
    assert response.risk_indicators[0].severity == "MEDIUM"
    assert response.risk_indicators[0].affected_codes == ["CH0004"]
    assert len(response.recommended_actions) == 4
    assert [entry.code for entry in response.traceability] == ["CH0004"]


def test_render_display_text_sections() -> None:
    payload = ChatAnswerPayload(
        summary="Overall steady.",
        key_findings=[{"finding": "Strong appraisals", "severity": "positive"}],
        risk_indicators=[{"riskType": "Retention", "severity": "LOW", "description": "Contract ends soon"}],
        recommended_actions=["Plan the next contract", "Schedule appraisal"],
    )
    response = ResponseExtractor().from_payload(payload, "")

    text = render_display_text(response)

    assert text.splitlines() == [
        "Overall steady.",
        "",
        "**Key Findings:**",
        "+ Strong appraisals",
        "",
        "**Risk Indicators:**",
        "- **Retention** (LOW): Contract ends soon",
        "",
        "**Recommended Actions:**",
        "1. Plan the next contract",
        "2. Schedule appraisal",
    ]
