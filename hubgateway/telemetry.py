"""Span recording and export for gateway requests and responses."""

from __future__ import annotations

import enum
import json
import logging
import os
import queue
import threading
import time
from typing import Any, Callable, Iterable, Mapping

import httpx

logger = logging.getLogger(__name__)

TRACER_NAME = "traceloop_hub"

GEN_AI_REQUEST_MODEL = "gen_ai.request.model"
GEN_AI_REQUEST_FREQUENCY_PENALTY = "gen_ai.request.frequency_penalty"
GEN_AI_REQUEST_PRESENCE_PENALTY = "gen_ai.request.presence_penalty"
GEN_AI_REQUEST_TOP_P = "gen_ai.request.top_p"
GEN_AI_REQUEST_TEMPERATURE = "gen_ai.request.temperature"
GEN_AI_RESPONSE_MODEL = "gen_ai.response.model"
GEN_AI_RESPONSE_ID = "gen_ai.response.id"

AttributeValue = str | bool | int | float
Recorder = Callable[[Mapping[str, Any], "Span"], None]


class SpanStatus(enum.IntEnum):
    """Span status codes as used on the wire."""

    UNSET = 0
    OK = 1
    ERROR = 2


class SpanKind(enum.IntEnum):
    INTERNAL = 1
    SERVER = 2
    CLIENT = 3


class Span:
    """A unit of traced work holding attributes and a final status."""

    def __init__(self, name: str, kind: SpanKind = SpanKind.CLIENT) -> None:
        self.name = name
        self.kind = kind
        self.attributes: dict[str, AttributeValue] = {}
        self.status = SpanStatus.UNSET
        self.status_description: str | None = None
        self.trace_id = os.urandom(16).hex()
        self.span_id = os.urandom(8).hex()
        self.start_time_ns = time.time_ns()
        self.end_time_ns: int | None = None

    @property
    def is_ended(self) -> bool:
        return self.end_time_ns is not None

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        """Set an attribute; ignored once the span has ended."""
        if self.is_ended:
            return
        if not isinstance(value, (str, bool, int, float)):
            raise TypeError(f"unsupported attribute type for {key!r}: {type(value).__name__}")
        self.attributes[key] = value

    def set_status(self, status: SpanStatus, description: str | None = None) -> None:
        """Set the status. OK is final; UNSET never replaces a set status."""
        if self.is_ended or self.status is SpanStatus.OK or status is SpanStatus.UNSET:
            return
        self.status = status
        self.status_description = description if status is SpanStatus.ERROR else None

    def end(self) -> None:
        """Finish the span and hand it to listeners and the exporter. Idempotent."""
        if self.is_ended:
            return
        self.end_time_ns = time.time_ns()
        _dispatch_finished(self)

    def to_otlp(self) -> dict[str, Any]:
        status: dict[str, Any] = {"code": int(self.status)}
        if self.status_description:
            status["message"] = self.status_description
        return {
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "name": self.name,
            "kind": int(self.kind),
            "startTimeUnixNano": str(self.start_time_ns),
            "endTimeUnixNano": str(self.end_time_ns or time.time_ns()),
            "attributes": [
                {"key": key, "value": _otlp_value(value)}
                for key, value in self.attributes.items()
            ],
            "status": status,
        }


def _otlp_value(value: AttributeValue) -> dict[str, Any]:
    if isinstance(value, bool):
        return {"boolValue": value}
    if isinstance(value, int):
        return {"intValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    return {"stringValue": value}


class SpanExporter:
    """Sends finished spans to an OTLP/HTTP collector as JSON."""

    def __init__(
        self,
        endpoint: str,
        headers: Mapping[str, str] | None = None,
        *,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
    ) -> None:
        try:
            url = httpx.URL(endpoint)
        except httpx.InvalidURL as exc:
            raise ValueError(f"invalid tracing endpoint {endpoint!r}: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"invalid tracing endpoint {endpoint!r}")
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self._client = client
        self._timeout = timeout

    def payload(self, spans: Iterable[Span]) -> dict[str, Any]:
        return {
            "resourceSpans": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": TRACER_NAME}}
                        ]
                    },
                    "scopeSpans": [
                        {
                            "scope": {"name": TRACER_NAME},
                            "spans": [span.to_otlp() for span in spans],
                        }
                    ],
                }
            ]
        }

    def export(self, spans: Iterable[Span]) -> None:
        """Post the spans; raises httpx.HTTPError when the collector refuses them."""
        body = self.payload(spans)
        headers = {**self.headers, "Content-Type": "application/json"}
        if self._client is not None:
            response = self._client.post(self.endpoint, json=body, headers=headers)
        else:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(self.endpoint, json=body, headers=headers)
        response.raise_for_status()


class _BatchSpanProcessor:
    def __init__(self, exporter: SpanExporter, max_batch: int = 512, interval: float = 5.0) -> None:
        self._exporter = exporter
        self._max_batch = max_batch
        self._interval = interval
        self._queue: queue.Queue[Span] = queue.Queue()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="span-exporter", daemon=True)
        self._thread.start()

    def on_end(self, span: Span) -> None:
        self._queue.put(span)

    def shutdown(self) -> None:
        self._stop.set()
        self._thread.join(timeout=self._interval + 1)

    def _drain(self, batch: list[Span]) -> None:
        while len(batch) < self._max_batch:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                first = self._queue.get(timeout=self._interval)
            except queue.Empty:
                continue
            batch = [first]
            self._drain(batch)
            self._export(batch)
        remaining: list[Span] = []
        self._drain(remaining)
        if remaining:
            self._export(remaining)

    def _export(self, batch: list[Span]) -> None:
        try:
            self._exporter.export(batch)
        except httpx.HTTPError as exc:
            logger.error("Failed to export %d spans to %s: %s", len(batch), self._exporter.endpoint, exc)


_lock = threading.Lock()
_listeners: list[Callable[[Span], None]] = []
_processor: _BatchSpanProcessor | None = None
_trace_content = True


def add_span_listener(listener: Callable[[Span], None]) -> None:
    """Register a callable that receives every span when it ends."""
    with _lock:
        _listeners.append(listener)


def _dispatch_finished(span: Span) -> None:
    with _lock:
        listeners = list(_listeners)
        processor = _processor
    for listener in listeners:
        listener(span)
    if processor is not None:
        processor.on_end(span)


def init_tracing(endpoint: str, api_key: str) -> bool:
    """Start exporting spans to endpoint in the background.

    Returns False, leaving the current setup in place, when the exporter
    cannot be built. Never blocks on the network.
    """
    global _processor
    try:
        exporter = SpanExporter(endpoint, {"Authorization": f"Bearer {api_key}"})
    except ValueError as exc:
        logger.error(
            "Failed to initialize OpenTelemetry exporter for endpoint %s: %s. Tracing will be disabled.",
            endpoint,
            exc,
        )
        return False
    processor = _BatchSpanProcessor(exporter)
    with _lock:
        previous, _processor = _processor, processor
    if previous is not None:
        threading.Thread(target=previous.shutdown, daemon=True).start()
    logger.debug("OpenTelemetry tracer initialized for endpoint: %s", endpoint)
    return True


def set_trace_content_enabled(enabled: bool) -> None:
    """Choose whether prompt and completion text is recorded on spans."""
    global _trace_content
    _trace_content = bool(enabled)


def trace_content_enabled() -> bool:
    return _trace_content


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, separators=(",", ":"))


def _record_sampling(request: Mapping[str, Any], span: Span) -> None:
    for field, key in (
        ("frequency_penalty", GEN_AI_REQUEST_FREQUENCY_PENALTY),
        ("presence_penalty", GEN_AI_REQUEST_PRESENCE_PENALTY),
        ("top_p", GEN_AI_REQUEST_TOP_P),
        ("temperature", GEN_AI_REQUEST_TEMPERATURE),
    ):
        value = request.get(field)
        if value is not None:
            span.set_attribute(key, float(value))


def record_chat_request(request: Mapping[str, Any], span: Span) -> None:
    span.set_attribute("llm.request.type", "chat")
    span.set_attribute(GEN_AI_REQUEST_MODEL, request.get("model", ""))
    _record_sampling(request, span)
    if not trace_content_enabled():
        return
    for i, message in enumerate(request.get("messages") or []):
        content = message.get("content")
        if content is None:
            continue
        span.set_attribute(f"gen_ai.prompt.{i}.role", message.get("role", ""))
        span.set_attribute(f"gen_ai.prompt.{i}.content", _content_text(content))


def record_chat_completion(completion: Mapping[str, Any], span: Span) -> None:
    span.set_attribute(GEN_AI_RESPONSE_MODEL, completion.get("model") or "")
    span.set_attribute(GEN_AI_RESPONSE_ID, completion.get("id") or "")
    record_usage(completion.get("usage") or {}, span)
    if not trace_content_enabled():
        return
    for choice in completion.get("choices") or []:
        index = choice.get("index", 0)
        message = choice.get("message") or {}
        content = message.get("content")
        if content is not None:
            span.set_attribute(f"gen_ai.completion.{index}.role", message.get("role", ""))
            span.set_attribute(f"gen_ai.completion.{index}.content", _content_text(content))
        span.set_attribute(
            f"gen_ai.completion.{index}.finish_reason", choice.get("finish_reason") or ""
        )


def record_completion_request(request: Mapping[str, Any], span: Span) -> None:
    span.set_attribute("llm.request.type", "completion")
    span.set_attribute(GEN_AI_REQUEST_MODEL, request.get("model", ""))
    span.set_attribute("gen_ai.prompt", request.get("prompt", ""))
    _record_sampling(request, span)


def record_completion_response(response: Mapping[str, Any], span: Span) -> None:
    span.set_attribute(GEN_AI_RESPONSE_MODEL, response.get("model") or "")
    span.set_attribute(GEN_AI_RESPONSE_ID, response.get("id") or "")
    record_usage(response.get("usage") or {}, span)
    for choice in response.get("choices") or []:
        index = choice.get("index", 0)
        span.set_attribute(f"gen_ai.completion.{index}.role", "assistant")
        span.set_attribute(f"gen_ai.completion.{index}.content", choice.get("text", ""))
        span.set_attribute(
            f"gen_ai.completion.{index}.finish_reason", choice.get("finish_reason") or ""
        )


def record_embeddings_request(request: Mapping[str, Any], span: Span) -> None:
    span.set_attribute("llm.request.type", "embeddings")
    span.set_attribute(GEN_AI_REQUEST_MODEL, request.get("model", ""))
    if not trace_content_enabled():
        return
    data = request.get("input")
    if isinstance(data, str):
        span.set_attribute("llm.prompt.0.content", data)
        return
    items = list(data or [])
    if all(isinstance(item, str) for item in items):
        for i, text in enumerate(items):
            span.set_attribute(f"llm.prompt.{i}.role", "user")
            span.set_attribute(f"llm.prompt.{i}.content", text)
    elif all(isinstance(item, int) for item in items):
        span.set_attribute("llm.prompt.0.content", str(items))
    else:
        for i, token_ids in enumerate(items):
            span.set_attribute(f"llm.prompt.{i}.role", "user")
            span.set_attribute(f"llm.prompt.{i}.content", str(list(token_ids)))


def record_embeddings_response(response: Mapping[str, Any], span: Span) -> None:
    span.set_attribute(GEN_AI_RESPONSE_MODEL, response.get("model") or "")
    record_embedding_usage(response.get("usage") or {}, span)


def record_usage(usage: Mapping[str, Any], span: Span) -> None:
    for field in ("prompt_tokens", "completion_tokens", "total_tokens"):
        span.set_attribute(f"gen_ai.usage.{field}", int(usage.get(field) or 0))


def record_embedding_usage(usage: Mapping[str, Any], span: Span) -> None:
    for field in ("prompt_tokens", "total_tokens"):
        span.set_attribute(f"gen_ai.usage.{field}", int(usage.get(field) or 0))


def _empty_usage() -> dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


class OtelTracer:
    """Traces one gateway operation, including streamed responses.

    Used as a context manager, the span ends when the block exits;
    a finished stream ends it through streaming_end.
    """

    def __init__(self, span: Span) -> None:
        self.span = span
        self.accumulated_completion: dict[str, Any] | None = None

    @classmethod
    def start(cls, operation: str, request: Mapping[str, Any], record: Recorder) -> "OtelTracer":
        span = Span(f"{TRACER_NAME}.{operation}", SpanKind.CLIENT)
        record(request, span)
        return cls(span)

    def __enter__(self) -> "OtelTracer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.span.end()

    def log_chunk(self, chunk: Mapping[str, Any]) -> None:
        """Fold a streamed chunk into the completion being accumulated."""
        if self.accumulated_completion is None:
            self.accumulated_completion = {
                "id": chunk.get("id"),
                "object": None,
                "created": None,
                "model": chunk.get("model"),
                "choices": [],
                "usage": _empty_usage(),
                "system_fingerprint": chunk.get("system_fingerprint"),
            }
        choices = self.accumulated_completion["choices"]
        for chunk_choice in chunk.get("choices") or []:
            index = chunk_choice.get("index", 0)
            delta = chunk_choice.get("delta") or {}
            finish_reason = chunk_choice.get("finish_reason")
            tool_calls = delta.get("tool_calls")
            if 0 <= index < len(choices):
                existing = choices[index]
                message = existing["message"]
                content = delta.get("content")
                if content is not None and isinstance(message.get("content"), str):
                    message["content"] += content
                if finish_reason is not None:
                    existing["finish_reason"] = finish_reason
                if tool_calls is not None:
                    message["tool_calls"] = list(tool_calls)
            else:
                choices.append(
                    {
                        "index": index,
                        "message": {
                            "name": None,
                            "role": delta.get("role") or "assistant",
                            "content": delta.get("content") or "",
                            "tool_calls": list(tool_calls) if tool_calls is not None else None,
                            "refusal": None,
                        },
                        "finish_reason": finish_reason,
                        "logprobs": None,
                    }
                )

    def streaming_end(self) -> None:
        """Record the accumulated completion, if any, and end the span."""
        completion, self.accumulated_completion = self.accumulated_completion, None
        if completion is not None:
            record_chat_completion(completion, self.span)
            self.span.set_status(SpanStatus.OK)
        self.span.end()

    def log_success(self, response: Mapping[str, Any], record: Recorder) -> None:
        record(response, self.span)
        self.span.set_status(SpanStatus.OK)

    def log_error(self, description: str) -> None:
        self.span.set_status(SpanStatus.ERROR, description)