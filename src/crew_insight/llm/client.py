"""Completion client wrapping a LangChain chat model with retry and JSON modes."""

from __future__ import annotations

import json
import logging
import math
import re
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Literal, TypeVar, overload

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError

from crew_insight.config import CompletionConfig
from crew_insight.errors import (
    AuthenticationError,
    InsightError,
    InvalidRequestError,
    MalformedOutputError,
    ServiceUnavailableError,
    TransientServiceError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

JSON_INSTRUCTION = "Respond with valid JSON matching the provided schema."
MESSAGE_OVERHEAD_TOKENS = 4

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class Turn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class CompletionRequest(BaseModel):
    """One request to the completion service."""

    turns: list[Turn] = Field(min_length=1)
    system_prompt: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=1.0)
    stop_sequences: list[str] | None = None

    @classmethod
    def single(cls, prompt: str, **kwargs: Any) -> "CompletionRequest":
        return cls(turns=[Turn(role="user", content=prompt)], **kwargs)


@dataclass(frozen=True, slots=True)
class CompletionResult:
    text: str
    stop_reason: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str) -> int:
    """Rough planning estimate: one token per four characters."""

    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_message_tokens(turns: Sequence[Turn]) -> int:
    return sum(estimate_tokens(turn.content) + MESSAGE_OVERHEAD_TOKENS for turn in turns)


def parse_json_text(text: str) -> Any:
    """Parse model text as JSON, tolerating a markdown code fence around it."""

    candidate = text.strip()
    match = _FENCE_PATTERN.search(candidate)
    if match:
        candidate = match.group(1).strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(f"Invalid JSON response from model: {exc}") from exc


class CompletionClient:
    """Calls the completion service with bounded exponential backoff.

    Failures are retried up to ``max_retries`` times with a delay of
    ``initial_retry_delay_seconds * 2**attempt``. Authentication failures and
    non-429 client errors fail on the first call.
    """

    def __init__(
        self,
        llm: Any,
        *,
        config: CompletionConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.config = config or CompletionConfig()
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        for attr in ("model_name", "model"):
            value = getattr(self.llm, attr, None)
            if isinstance(value, str) and value:
                return value
        return self.config.model

    def complete(self, request: CompletionRequest) -> CompletionResult:
        messages = self._to_messages(request, request.system_prompt)
        temperature = _pick(request.temperature, self.config.default_temperature)
        return self._retry(lambda: self._invoke(messages, request, temperature))

    @overload
    def complete_structured(self, request: CompletionRequest, schema: type[ModelT]) -> ModelT: ...

    @overload
    def complete_structured(self, request: CompletionRequest, schema: None = None) -> Any: ...

    def complete_structured(self, request: CompletionRequest, schema: type[BaseModel] | None = None) -> Any:
        value, _ = self.complete_structured_result(request, schema)
        return value

    def complete_structured_result(
        self,
        request: CompletionRequest,
        schema: type[BaseModel] | None = None,
    ) -> tuple[Any, CompletionResult]:
        """Structured completion that also hands back usage for accounting.

        Only the transport call is retried; a response that does not parse
        raises :class:`MalformedOutputError` straight away.
        """

        system_prompt = (
            f"{request.system_prompt}\n\n{JSON_INSTRUCTION}"
            if request.system_prompt
            else JSON_INSTRUCTION
        )
        messages = self._to_messages(request, system_prompt)
        temperature = _pick(request.temperature, self.config.structured_temperature)
        result = self._retry(lambda: self._invoke(messages, request, temperature))

        payload = parse_json_text(result.text)
        if schema is None:
            return payload, result
        try:
            return schema.model_validate(payload), result
        except ValidationError as exc:
            raise MalformedOutputError(
                f"Model output failed {schema.__name__} shape checks: {exc.error_count()} error(s)"
            ) from exc

    def stream_complete(self, request: CompletionRequest) -> Iterator[str]:
        """Yield text deltas as they arrive; other chunk content is ignored."""

        messages = self._to_messages(request, request.system_prompt)
        temperature = _pick(request.temperature, self.config.default_temperature)
        try:
            for chunk in self.llm.stream(messages, **self._call_kwargs(request, temperature)):
                for text in _text_deltas(getattr(chunk, "content", chunk)):
                    yield text
        except InsightError:
            raise
        except Exception as exc:
            classified = _classify(exc)
            if isinstance(classified, TransientServiceError):
                raise ServiceUnavailableError(f"Streaming completion failed: {exc}") from exc
            raise classified from exc

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    def estimate_message_tokens(self, turns: Sequence[Turn]) -> int:
        return estimate_message_tokens(turns)

    def _invoke(
        self,
        messages: list[BaseMessage],
        request: CompletionRequest,
        temperature: float,
    ) -> CompletionResult:
        response = self.llm.invoke(messages, **self._call_kwargs(request, temperature))
        text = "".join(_text_deltas(getattr(response, "content", response)))
        if not text.strip():
            raise TransientServiceError("No text content in model response")

        usage = getattr(response, "usage_metadata", None) or {}
        metadata = getattr(response, "response_metadata", None) or {}
        input_tokens = usage.get("input_tokens")
        if input_tokens is None:
            input_tokens = estimate_message_tokens(request.turns)
        output_tokens = usage.get("output_tokens")
        if output_tokens is None:
            output_tokens = estimate_tokens(text)
        return CompletionResult(
            text=text,
            stop_reason=str(
                metadata.get("stop_reason") or metadata.get("finish_reason") or "unknown"
            ),
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
        )

    def _call_kwargs(self, request: CompletionRequest, temperature: float) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "max_tokens": request.max_tokens or self.config.default_max_tokens,
            "temperature": temperature,
        }
        if request.stop_sequences:
            kwargs["stop"] = list(request.stop_sequences)
        return kwargs

    @staticmethod
    def _to_messages(request: CompletionRequest, system_prompt: str | None) -> list[BaseMessage]:
        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        for turn in request.turns:
            if turn.role == "user":
                messages.append(HumanMessage(content=turn.content))
            else:
                messages.append(AIMessage(content=turn.content))
        return messages

    def _retry(self, fn: Callable[[], T]) -> T:
        max_retries = self.config.max_retries
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            try:
                return fn()
            except Exception as exc:
                classified = exc if isinstance(exc, InsightError) else _classify(exc)
                if not isinstance(classified, TransientServiceError):
                    if classified is exc:
                        raise
                    raise classified from exc
                last_error = exc

            if attempt == max_retries:
                break
            delay = self.config.initial_retry_delay_seconds * (2**attempt)
            logger.warning(
                "Completion request failed (attempt %d/%d), retrying in %.1fs: %s",
                attempt + 1,
                max_retries + 1,
                delay,
                last_error,
            )
            self._sleep(delay)

        raise ServiceUnavailableError(
            f"Completion request failed after {max_retries + 1} attempts: {last_error}",
            attempts=max_retries + 1,
        ) from last_error


def _status_of(exc: BaseException) -> int | None:
    for candidate in (
        getattr(exc, "status_code", None),
        getattr(exc, "status", None),
        getattr(getattr(exc, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int):
            return candidate
    return None


def _classify(exc: Exception) -> InsightError:
    status = _status_of(exc)
    if status in (401, 403):
        return AuthenticationError(f"Completion service rejected credentials ({status}): {exc}")
    if status is not None and 400 <= status < 500 and status != 429:
        return InvalidRequestError(f"Completion service rejected request ({status}): {exc}", status=status)
    return TransientServiceError(str(exc) or exc.__class__.__name__, status=status)


def _text_deltas(content: Any) -> Iterator[str]:
    if isinstance(content, str):
        if content:
            yield content
        return
    if isinstance(content, list):
        for block in content:
            if isinstance(block, str):
                if block:
                    yield block
            elif isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                yield str(block["text"])


def _pick(value: float | None, default: float) -> float:
    return default if value is None else value
