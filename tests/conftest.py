from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any

import pytest
from langchain_core.messages import AIMessage

from crew_insight.data.memory import InMemoryDataAccess
from crew_insight.types import Certification, ExperienceRecord, HistoryEvent, Subject

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class ScriptedChatModel:
    """Chat model double that answers from a queue of replies.

    A reply is a string (returned as an ``AIMessage``), a dict (serialised to
    JSON) or an exception instance (raised).
    """

    model_name = "scripted-model"

    def __init__(self, replies: list[Any], *, input_tokens: int = 40, output_tokens: int = 10) -> None:
        self.replies = list(replies)
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: list[tuple[list[Any], dict[str, Any]]] = []

    def invoke(self, messages: list[Any], **kwargs: Any) -> AIMessage:
        self.calls.append((messages, kwargs))
        if not self.replies:
            raise RuntimeError("scripted model ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return AIMessage(
            content=reply,
            usage_metadata={
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_tokens": self.input_tokens + self.output_tokens,
            },
            response_metadata={"finish_reason": "stop"},
        )

    @property
    def prompts(self) -> list[str]:
        return [str(messages[-1].content) for messages, _ in self.calls]


class NoSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def scripted_model() -> type[ScriptedChatModel]:
    return ScriptedChatModel


@pytest.fixture
def no_sleep() -> NoSleep:
    return NoSleep()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def crew_data() -> InMemoryDataAccess:
    data = InMemoryDataAccess(now=lambda: NOW)
    data.add_subject(
        Subject(
            subject_id=1,
            code="S1001",
            name="Maria Santos",
            rank="Chief Officer",
            department="Deck",
            vessel="MV Aurora",
            status="onboard",
        )
    )
    data.add_subject(
        Subject(
            subject_id=2,
            code="S1002",
            name="James Okafor",
            rank="Second Engineer",
            department="Engine",
            vessel="MV Borealis",
            status="on leave",
        )
    )
    data.set_metrics(
        1,
        {
            "CP0003": {"score": 82, "details": {"appraisals": [80, 84]}},
            "CH0004": 45,
            "CL0002": 10,
            "CO0001": 70,
        },
    )
    data.set_metrics(2, {"CP0003": 64, "CH0004": 71, "CL0002": 0, "CO0001": 35})
    data.add_event(
        HistoryEvent(
            event_id=1,
            subject_id=1,
            event_type="failure",
            event_date=date(2025, 6, 10),
            category="Navigation",
            description="Late passage plan update",
            severity="MEDIUM",
            vessel="MV Aurora",
        )
    )
    data.add_event(
        HistoryEvent(
            event_id=2,
            subject_id=1,
            event_type="appraisal",
            event_date=date(2023, 4, 2),
            category="Appraisal",
            description="Annual appraisal",
            vessel="MV Aurora",
        )
    )
    data.add_experience(
        ExperienceRecord(
            subject_id=1,
            vessel="MV Aurora",
            vessel_type="Oil Tanker",
            rank="Chief Officer",
            sign_on=date(2025, 11, 1),
            tenure_months=4,
        )
    )
    data.add_experience(
        ExperienceRecord(
            subject_id=1,
            vessel="MV Cassiopeia",
            vessel_type="Chemical Tanker",
            rank="Second Officer",
            sign_on=date(2021, 1, 10),
            sign_off=date(2021, 9, 1),
            tenure_months=8,
        )
    )
    data.add_certification(
        Certification(
            subject_id=1,
            name="STCW Basic Safety",
            certification_type="STCW",
            status="valid",
            expiry_date=date(2028, 1, 1),
        )
    )
    data.add_certification(
        Certification(
            subject_id=1,
            name="Tanker Familiarisation",
            certification_type="Tanker",
            status="expired",
            expiry_date=date(2024, 1, 1),
        )
    )
    return data
