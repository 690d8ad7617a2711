from crew_insight.llm.client import CompletionClient
from crew_insight.obs.tracing import TraceStore
from crew_insight.pipeline.orchestrator import UNAVAILABLE_MESSAGE, InsightOrchestrator
from crew_insight.pipeline.prompts import DATA_NOT_AVAILABLE_INSTRUCTION
from crew_insight.reference import metrics as metric_ref
from crew_insight.types import SubjectContext

UNDERSTOOD_METRIC_QUESTION = {
    "intent": "metric_query",
    "confidence": 0.92,
    "entities": {"subjects": ["Maria Santos"], "metric_codes": ["CH0004"]},
    "required_data_sources": ["subject_profile", "metric_snapshot"],
    "clarification_needed": False,
}

STRUCTURED_ANSWER = {
    "summary": "Leadership (CH0004) is below target while appraisals are strong.",
    "keyFindings": [
        {"finding": "CH0004 sits at 45", "supportingCodes": ["CH0004"], "severity": "concern"},
        {"finding": "Appraisal average of 82 is excellent", "supportingCodes": ["CP0003"], "severity": "positive"},
    ],
    "riskIndicators": [],
    "recommendedActions": ["Enroll in the CH0004 leadership programme"],
}


class AuthFailure(Exception):
    status_code = 403


def _orchestrator(llm, data, now) -> InsightOrchestrator:
    return InsightOrchestrator(
        client=CompletionClient(llm, sleep=lambda _: None),
        data=data,
        trace_store=TraceStore(),
        now=lambda: now,
    )


def test_structured_chat_answer(scripted_model, crew_data, now) -> None:
    llm = scripted_model([UNDERSTOOD_METRIC_QUESTION, STRUCTURED_ANSWER])
    orchestrator = _orchestrator(llm, crew_data, now)

    answer = orchestrator.handle_chat_query("How is Maria Santos doing on CH0004?", "conv-1")

    response = answer.structured_response
    assert response is not None
    assert response.summary == "Leadership (Leadership score) is below target while appraisals are strong."
    assert response.key_findings[0].supporting_codes == ["CH0004"]
    assert response.recommended_actions == ["Enroll in the Leadership score leadership programme"]
    assert {entry.code for entry in response.traceability} == {"CH0004", "CP0003"}
    assert "! Leadership score sits at 45" in answer.display_text
    assert "1. Enroll in the Leadership score leadership programme" in answer.display_text
    assert metric_ref.CODE_PATTERN.search(answer.display_text) is None

    assert answer.tokens_used == 100
    assert answer.data_sources == [
        {"code": "CH0004", "human_name": "Leadership score", "value": 45, "source": "character"}
    ]
    assert answer.reasoning_steps[0].startswith("Identified intent: metric_query")
    assert answer.reasoning_steps[-1] == "Generated a validated structured answer"

    chat_prompt = llm.prompts[1]
    assert "--- Metric: CH0004 ---" in chat_prompt
    assert "- Name: Maria Santos" in chat_prompt
    assert '"appraisals": [' in chat_prompt

    trace = orchestrator.trace_store.get(answer.trace_id)
    assert trace.structured is True
    assert trace.context_branch == "single_subject"
    assert trace.intent == "metric_query"
    assert trace.subject_ids == [1]
    assert trace.total_tokens == 100

    turns = crew_data.get_conversation_tail("conv-1")
    assert [turn.role for turn in turns] == ["user", "assistant"]
    assert turns[1].content == answer.display_text
    assert turns[1].structured_response["summary"] == response.summary


def test_malformed_structured_answer_falls_back_to_plain_text(scripted_model, crew_data, now) -> None:
    llm = scripted_model(
        [UNDERSTOOD_METRIC_QUESTION, "Sure! {not valid json", "  Maria's CH0004 is low at 45.  "]
    )
    orchestrator = _orchestrator(llm, crew_data, now)

    answer = orchestrator.handle_chat_query("How is Maria Santos doing on CH0004?", "conv-2")

    assert answer.structured_response is None
    assert answer.display_text == "Maria's Leadership score is low at 45."
    assert answer.tokens_used == 100
    assert answer.reasoning_steps[-1] == "Structured answer unavailable; responded in plain text"
    assert "Respond in plain prose" in llm.prompts[2]
    plain_system_prompt = llm.calls[2][0][0].content
    assert "Respond with valid JSON" not in plain_system_prompt

    trace = orchestrator.trace_store.get(answer.trace_id)
    assert trace.structured is False
    assert trace.fallback_reason.startswith("malformed_output:")


def test_unresolvable_question_is_answered_without_subject_data(scripted_model, crew_data, now) -> None:
    llm = scripted_model(
        [
            {"intent": "general_question", "confidence": 0.3, "entities": {}},
            {"summary": "I don't have data on that."},
        ]
    )
    orchestrator = _orchestrator(llm, crew_data, now)

    answer = orchestrator.handle_chat_query("What is the weather at sea today?", "conv-3")

    assert DATA_NOT_AVAILABLE_INSTRUCTION in llm.prompts[1]
    assert answer.display_text == "I don't have data on that."
    assert answer.data_sources == []
    assert orchestrator.trace_store.get(answer.trace_id).context_branch == "none"


def test_chat_never_raises_when_the_service_is_down(scripted_model, crew_data, now) -> None:
    llm = scripted_model([AuthFailure("denied"), AuthFailure("denied"), AuthFailure("denied")])
    orchestrator = _orchestrator(llm, crew_data, now)

    answer = orchestrator.handle_chat_query("Is subject S1001 onboard?", "conv-4")

    assert answer.display_text == UNAVAILABLE_MESSAGE
    assert answer.structured_response is None
    assert answer.tokens_used == 0
    assert len(llm.calls) == 3
    assert "keyword rules" in answer.reasoning_steps[2]
    assert orchestrator.trace_store.get(answer.trace_id).intent == "status_query"


def test_conversation_history_feeds_the_next_prompt(scripted_model, crew_data, now) -> None:
    llm = scripted_model(
        [
            UNDERSTOOD_METRIC_QUESTION,
            STRUCTURED_ANSWER,
            UNDERSTOOD_METRIC_QUESTION,
            {"summary": "Still below target."},
        ]
    )
    orchestrator = _orchestrator(llm, crew_data, now)

    orchestrator.handle_chat_query("How is Maria Santos doing on CH0004?", "conv-5")
    orchestrator.handle_chat_query("And compared to last year?", "conv-5")

    assert "USER: How is Maria Santos doing on CH0004?" in llm.prompts[3]
    assert "ASSISTANT: Leadership (Leadership score)" in llm.prompts[3]
    assert len(crew_data.get_conversation_tail("conv-5")) == 4


def test_multi_subject_question_lists_ranked_subjects(scripted_model, crew_data, now) -> None:
    crew_data.set_metrics(2, {code: 15 for code in list(metric_ref.METRICS)[:8]})
    llm = scripted_model(
        [
            {"intent": "risk_analysis", "confidence": 0.8, "entities": {}},
            {"summary": "One crew member stands out."},
        ]
    )
    orchestrator = _orchestrator(llm, crew_data, now)

    answer = orchestrator.handle_chat_query("Show me high risk crew", "conv-6")

    assert "Found 1 subjects:" in llm.prompts[1]
    assert '"name": "James Okafor"' in llm.prompts[1]
    assert '"source": "heuristic"' in llm.prompts[1]
    assert orchestrator.trace_store.get(answer.trace_id).context_branch == "multi_subject"


def test_historic_free_text_is_structured_heuristically(scripted_model, crew_data, now) -> None:
    orchestrator = _orchestrator(scripted_model([]), crew_data, now)
    text = (
        "Risk: detention exposure under CL0002 is high.\n"
        "Recommendation: Review CL0002 with the master."
    )

    response = orchestrator.format_plain_text(text, SubjectContext())

    assert response.risk_indicators[0].affected_codes == ["CL0002"]
    assert response.recommended_actions == ["Review Number of detentions (3 years) with the master"]
    assert metric_ref.CODE_PATTERN.search(response.summary) is None


def test_malformed_understanding_still_answers(scripted_model, crew_data, now) -> None:
    llm = scripted_model(
        [
            {"intent": "status_query", "entities": {"subjects": 5}},
            {"summary": "Maria Santos is onboard MV Aurora."},
        ]
    )
    orchestrator = _orchestrator(llm, crew_data, now)

    answer = orchestrator.handle_chat_query("Is subject S1001 onboard?", "conv-7")

    assert answer.display_text == "Maria Santos is onboard MV Aurora."
    assert any("keyword rules" in step for step in answer.reasoning_steps)
    trace = orchestrator.trace_store.get(answer.trace_id)
    assert trace.intent == "status_query"
    assert trace.context_branch == "single_subject"
    assert trace.subject_ids == [1]
