from fastapi.testclient import TestClient

from crew_insight.api.main import _build_orchestrator, create_app
from crew_insight.config import ServiceSettings
from crew_insight.llm.client import CompletionClient
from crew_insight.obs.tracing import TraceStore
from crew_insight.pipeline.orchestrator import InsightOrchestrator

DEV = ServiceSettings(environment="development")
PROD = ServiceSettings(environment="production")


def _client(llm, data, now, settings=DEV) -> TestClient:
    orchestrator = InsightOrchestrator(
        client=CompletionClient(llm, sleep=lambda _: None),
        data=data,
        trace_store=TraceStore(),
        now=lambda: now,
        sleep=lambda _: None,
    )
    return TestClient(create_app(orchestrator=orchestrator, settings=settings))


def test_api_chat_trace_metrics(scripted_model, crew_data, now) -> None:
    llm = scripted_model(
        [
            {"intent": "status_query", "confidence": 0.9, "entities": {"subjects": ["S1001"]}},
            {"summary": "Maria Santos is onboard MV Aurora.", "recommendedActions": []},
        ]
    )
    client = _client(llm, crew_data, now)

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["llm_configured"] is True
    assert health.json()["model"] == "scripted-model"

    chat_resp = client.post("/chat", json={"question": "Is S1001 onboard?", "conversation_id": "c-1"})
    assert chat_resp.status_code == 200
    payload = chat_resp.json()
    assert payload["display_text"] == "Maria Santos is onboard MV Aurora."
    assert payload["structured_response"]["summary"] == "Maria Santos is onboard MV Aurora."
    assert payload["tokens_used"] == 100

    trace_resp = client.get(f"/traces/{payload['trace_id']}")
    assert trace_resp.status_code == 200
    assert trace_resp.json()["intent"] == "status_query"

    assert client.get("/traces").json()["items"][0]["operation"] == "chat"
    assert client.get("/traces/unknown").status_code == 404

    metrics_resp = client.get("/metrics")
    assert metrics_resp.status_code == 200
    assert metrics_resp.json()["total_requests"] == 1
    assert metrics_resp.json()["structured_rate"] == 1.0


def test_api_subject_operations(scripted_model, crew_data, now) -> None:
    llm = scripted_model(
        [
            {"overall_rating": "Good", "summary_text": "Reliable officer.", "risk_indicators": []},
            {"risk_level": "LOW", "risk_score": 12, "indicators": [], "summary": "No concerns."},
            {"summary": "Comparable.", "aspects": []},
            {"readiness_level": "READY", "readiness_score": 88, "estimated_readiness_date": "2026-06-01"},
            {"overall_rating": "Satisfactory", "summary_text": "Steady."},
        ]
    )
    client = _client(llm, crew_data, now)

    summary_resp = client.post("/subjects/1/summary")
    assert summary_resp.status_code == 200
    assert summary_resp.json()["summary"]["risk_level"] == "LOW"
    assert summary_resp.json()["summary"]["valid_until"].startswith("2026-03-16")

    risks_resp = client.get("/subjects/1/risks")
    assert risks_resp.status_code == 200
    assert risks_resp.json()["risk_level"] == "LOW"
    assert risks_resp.json()["risks"] == []

    compare_resp = client.post("/subjects/compare", json={"first_subject_id": 1, "second_subject_id": 2})
    assert compare_resp.status_code == 200
    assert compare_resp.json()["narrative"] == "Comparable."

    readiness_resp = client.post("/subjects/1/readiness", json={"target_rank": "Master"})
    assert readiness_resp.status_code == 200
    assert readiness_resp.json()["readiness_level"] == "ready"
    assert readiness_resp.json()["timeline"] == "2026-06-01"

    regen_resp = client.post("/summaries/regenerate", json={})
    assert regen_resp.status_code == 200
    assert regen_resp.json()["succeeded"] == 1
    assert [item["subject_id"] for item in regen_resp.json()["items"]] == [2]


def test_api_maps_insight_errors(scripted_model, crew_data, now) -> None:
    client = _client(scripted_model([]), crew_data, now)

    missing = client.get("/subjects/99/risks")
    assert missing.status_code == 404
    assert missing.json()["kind"] == "subject_not_found"
    assert "traceback" in missing.json()

    assert client.post("/chat", json={"question": "", "conversation_id": "c"}).status_code == 422


def test_api_hides_tracebacks_in_production(scripted_model, crew_data, now) -> None:
    client = _client(scripted_model([]), crew_data, now, settings=PROD)

    missing = client.post("/subjects/99/summary")

    assert missing.status_code == 404
    assert missing.json() == {"kind": "subject_not_found", "message": "Subject not found: 99"}


def test_api_without_model_answers_503() -> None:
    client = TestClient(create_app(settings=ServiceSettings(openai_api_key=None, environment="production")))

    assert client.get("/health").json()["llm_configured"] is False
    resp = client.post("/chat", json={"question": "Is S1001 onboard?", "conversation_id": "c"})
    assert resp.status_code == 503
    assert resp.json()["kind"] == "service_unavailable"
    assert client.get("/metrics").json()["total_requests"] == 0


def test_empty_trace_store_is_shared_not_replaced(scripted_model, crew_data, now) -> None:
    store = TraceStore()
    orchestrator = InsightOrchestrator(
        client=CompletionClient(scripted_model([]), sleep=lambda _: None),
        data=crew_data,
        trace_store=store,
        now=lambda: now,
    )
    assert orchestrator.trace_store is store

    built = _build_orchestrator(ServiceSettings(openai_api_key="sk-test", environment="development"), store)
    assert built is not None
    assert built.trace_store is store


def test_app_reads_traces_from_the_store_it_was_given(scripted_model, crew_data, now) -> None:
    store = TraceStore()
    llm = scripted_model(
        [
            {"intent": "status_query", "confidence": 0.9, "entities": {"subjects": ["S1001"]}},
            {"summary": "Maria Santos is onboard MV Aurora."},
        ]
    )
    orchestrator = InsightOrchestrator(
        client=CompletionClient(llm, sleep=lambda _: None),
        data=crew_data,
        trace_store=store,
        now=lambda: now,
    )
    client = TestClient(create_app(orchestrator=orchestrator, trace_store=store, settings=DEV))

    trace_id = client.post("/chat", json={"question": "Is S1001 onboard?", "conversation_id": "c-2"}).json()[
        "trace_id"
    ]

    assert len(store) == 1
    assert client.get("/health").json()["trace_count"] == 1
    assert client.get(f"/traces/{trace_id}").status_code == 200
