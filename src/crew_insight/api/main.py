"""FastAPI entrypoint for chat, subject analysis and trace endpoints."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from crew_insight.config import CompletionConfig, PipelineConfig, ServiceSettings
from crew_insight.data.memory import InMemoryDataAccess
from crew_insight.errors import InsightError, ServiceUnavailableError
from crew_insight.llm.client import CompletionClient
from crew_insight.obs.tracing import TraceStore
from crew_insight.pipeline.orchestrator import InsightOrchestrator

logger = logging.getLogger(__name__)


def _create_llm(settings: ServiceSettings) -> Any:
    if not settings.openai_api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=settings.model, api_key=settings.openai_api_key)


class ChatRequest(BaseModel):
    question: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)


class CompareRequest(BaseModel):
    first_subject_id: int
    second_subject_id: int
    aspects: list[str] | None = None


class ReadinessRequest(BaseModel):
    target_rank: str = Field(min_length=1)


class RegenerateRequest(BaseModel):
    subject_ids: list[int] | None = None


def _build_orchestrator(settings: ServiceSettings, trace_store: TraceStore) -> InsightOrchestrator | None:
    llm = _create_llm(settings)
    if llm is None:
        logger.warning("OPENAI_API_KEY is not set; analysis endpoints will answer 503")
        return None
    data = (
        InMemoryDataAccess.from_json(settings.seed_path)
        if settings.seed_path
        else InMemoryDataAccess()
    )
    return InsightOrchestrator(
        client=CompletionClient(llm, config=CompletionConfig(model=settings.model)),
        data=data,
        config=PipelineConfig(),
        trace_store=trace_store,
    )


def create_app(
    orchestrator: InsightOrchestrator | None = None,
    trace_store: TraceStore | None = None,
    settings: ServiceSettings | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings.from_env()
    if orchestrator is not None:
        trace_store = trace_store if trace_store is not None else orchestrator.trace_store
    if trace_store is None:
        trace_store = TraceStore()
    if orchestrator is None:
        orchestrator = _build_orchestrator(settings, trace_store)

    app = FastAPI(title="Crew Insight Service", version="0.1.0")

    def _require_orchestrator() -> InsightOrchestrator:
        if orchestrator is None:
            raise ServiceUnavailableError("No completion model is configured")
        return orchestrator

    @app.exception_handler(InsightError)
    async def insight_error_handler(request: Request, exc: InsightError) -> JSONResponse:
        logger.warning("%s %s failed with %s: %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_payload(include_traceback=not settings.is_production),
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": orchestrator is not None,
            "model": orchestrator.client.model_name if orchestrator is not None else None,
            "trace_count": len(trace_store),
        }

    @app.post("/chat")
    def chat(request: ChatRequest) -> dict[str, Any]:
        answer = _require_orchestrator().handle_chat_query(request.question, request.conversation_id)
        return {
            "display_text": answer.display_text,
            "structured_response": (
                answer.structured_response.to_json_dict()
                if answer.structured_response is not None
                else None
            ),
            "tokens_used": answer.tokens_used,
            "reasoning_steps": answer.reasoning_steps,
            "data_sources": answer.data_sources,
            "trace_id": answer.trace_id,
        }

    @app.post("/subjects/{subject_id}/summary")
    def generate_summary(subject_id: int) -> dict[str, Any]:
        outcome = _require_orchestrator().generate_summary(subject_id)
        return {
            "summary": asdict(outcome.summary),
            "tokens_used": outcome.tokens_used,
            "trace_id": outcome.trace_id,
        }

    @app.get("/subjects/{subject_id}/risks")
    def analyze_risks(subject_id: int) -> dict[str, Any]:
        return asdict(_require_orchestrator().analyze_risks(subject_id))

    @app.post("/subjects/compare")
    def compare_subjects(request: CompareRequest) -> dict[str, Any]:
        outcome = _require_orchestrator().compare_subjects(
            request.first_subject_id, request.second_subject_id, request.aspects
        )
        return {
            "narrative": outcome.narrative,
            "structured": outcome.structured.model_dump(),
            "tokens_used": outcome.tokens_used,
            "trace_id": outcome.trace_id,
        }

    @app.post("/subjects/{subject_id}/readiness")
    def assess_readiness(subject_id: int, request: ReadinessRequest) -> dict[str, Any]:
        return asdict(_require_orchestrator().assess_readiness(subject_id, request.target_rank))

    @app.post("/summaries/regenerate")
    def regenerate(request: RegenerateRequest) -> dict[str, Any]:
        results = _require_orchestrator().regenerate_summaries(request.subject_ids)
        return {
            "items": [asdict(result) for result in results],
            "succeeded": sum(1 for result in results if result.success),
            "failed": sum(1 for result in results if not result.success),
        }

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        return {"items": [asdict(record) for record in trace_store.list_recent(limit=limit)]}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return trace_store.summary()

    return app


app = create_app()
