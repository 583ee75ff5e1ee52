import json
import time

import httpx
import pytest

from hubgateway.telemetry import (
    OtelTracer,
    Span,
    SpanExporter,
    SpanStatus,
    add_span_listener,
    init_tracing,
    record_chat_completion,
    record_chat_request,
    record_completion_request,
    record_completion_response,
    record_embedding_usage,
    record_embeddings_request,
    record_embeddings_response,
    record_usage,
    set_trace_content_enabled,
    trace_content_enabled,
)


@pytest.fixture(autouse=True)
def content_enabled():
    previous = trace_content_enabled()
    set_trace_content_enabled(True)
    yield
    set_trace_content_enabled(previous)


def chat_request():
    return {
        "model": "gpt-4",
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": [{"type": "text", "text": "hi"}]},
            {"role": "assistant", "content": None},
        ],
        "temperature": 0.5,
        "top_p": 1,
    }


def test_chat_request_attributes():
    span = Span("s")
    record_chat_request(chat_request(), span)
    attrs = span.attributes
    assert attrs["llm.request.type"] == "chat"
    assert attrs["gen_ai.request.model"] == "gpt-4"
    assert attrs["gen_ai.request.temperature"] == 0.5
    assert attrs["gen_ai.request.top_p"] == 1.0
    assert isinstance(attrs["gen_ai.request.top_p"], float)
    assert "gen_ai.request.frequency_penalty" not in attrs
    assert attrs["gen_ai.prompt.0.role"] == "system"
    assert attrs["gen_ai.prompt.0.content"] == "be brief"
    assert json.loads(attrs["gen_ai.prompt.1.content"]) == [{"type": "text", "text": "hi"}]
    assert "gen_ai.prompt.2.role" not in attrs


def test_chat_request_without_content_tracing():
    set_trace_content_enabled(False)
    span = Span("s")
    record_chat_request(chat_request(), span)
    assert not any(key.startswith("gen_ai.prompt") for key in span.attributes)
    assert span.attributes["gen_ai.request.model"] == "gpt-4"


def test_chat_completion_attributes():
    span = Span("s")
    completion = {
        "id": "cmpl-1",
        "model": "gpt-4",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": "hello"}, "finish_reason": None}
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
    }
    record_chat_completion(completion, span)
    attrs = span.attributes
    assert attrs["gen_ai.response.id"] == "cmpl-1"
    assert attrs["gen_ai.response.model"] == "gpt-4"
    assert attrs["gen_ai.completion.0.content"] == "hello"
    assert attrs["gen_ai.completion.0.finish_reason"] == ""
    assert attrs["gen_ai.usage.total_tokens"] == 7


def test_completion_request_and_response():
    span = Span("s")
    record_completion_request({"model": "m", "prompt": "say", "presence_penalty": 1}, span)
    set_trace_content_enabled(False)
    record_completion_response(
        {"id": "r", "model": "m", "choices": [{"index": 2, "text": "done", "finish_reason": "stop"}]},
        span,
    )
    attrs = span.attributes
    assert attrs["llm.request.type"] == "completion"
    assert attrs["gen_ai.prompt"] == "say"
    assert attrs["gen_ai.request.presence_penalty"] == 1.0
    assert attrs["gen_ai.completion.2.role"] == "assistant"
    assert attrs["gen_ai.completion.2.content"] == "done"
    assert attrs["gen_ai.completion.2.finish_reason"] == "stop"
    assert attrs["gen_ai.usage.prompt_tokens"] == 0


@pytest.mark.parametrize(
    "data, expected",
    [
        ("one", {"llm.prompt.0.content": "one"}),
        (
            ["a", "b"],
            {
                "llm.prompt.0.role": "user",
                "llm.prompt.0.content": "a",
                "llm.prompt.1.role": "user",
                "llm.prompt.1.content": "b",
            },
        ),
        ([1, 2, 3], {"llm.prompt.0.content": "[1, 2, 3]"}),
        (
            [[1], [2, 3]],
            {
                "llm.prompt.0.role": "user",
                "llm.prompt.0.content": "[1]",
                "llm.prompt.1.role": "user",
                "llm.prompt.1.content": "[2, 3]",
            },
        ),
        ([], {}),
    ],
)
def test_embeddings_request_inputs(data, expected):
    span = Span("s")
    record_embeddings_request({"model": "emb", "input": data}, span)
    prompt = {k: v for k, v in span.attributes.items() if k.startswith("llm.prompt")}
    assert prompt == expected
    assert span.attributes["llm.request.type"] == "embeddings"


def test_embeddings_response_and_usage_defaults():
    span = Span("s")
    record_embeddings_response({"model": "emb", "usage": {"prompt_tokens": None, "total_tokens": 5}}, span)
    assert span.attributes["gen_ai.response.model"] == "emb"
    assert span.attributes["gen_ai.usage.prompt_tokens"] == 0
    assert span.attributes["gen_ai.usage.total_tokens"] == 5
    assert "gen_ai.usage.completion_tokens" not in span.attributes


def test_usage_records_all_counts():
    span = Span("s")
    record_usage({"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}, span)
    record_embedding_usage({"prompt_tokens": 9}, span)
    assert span.attributes["gen_ai.usage.prompt_tokens"] == 9
    assert span.attributes["gen_ai.usage.completion_tokens"] == 2
    assert span.attributes["gen_ai.usage.total_tokens"] == 0


def test_tracer_start_names_span():
    tracer = OtelTracer.start("chat", chat_request(), record_chat_request)
    assert tracer.span.name == "traceloop_hub.chat"
    assert tracer.span.attributes["gen_ai.request.model"] == "gpt-4"
    assert tracer.span.status is SpanStatus.UNSET


def test_streaming_accumulates_chunks():
    finished = []
    add_span_listener(finished.append)
    tracer = OtelTracer.start("chat", {"model": "gpt-4", "messages": []}, record_chat_request)
    tracer.log_chunk({"id": "c1", "model": "gpt-4", "choices": [{"index": 0, "delta": {"content": "Hel"}}]})
    tracer.log_chunk(
        {"id": "c1", "model": "gpt-4", "choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}
    )
    completion = tracer.accumulated_completion
    message = completion["choices"][0]["message"]
    assert message["content"] == "Hello"
    assert message["role"] == "assistant"
    assert completion["choices"][0]["finish_reason"] == "stop"

    tracer.streaming_end()
    assert tracer.accumulated_completion is None
    assert tracer.span.status is SpanStatus.OK
    assert tracer.span.attributes["gen_ai.completion.0.content"] == "Hello"
    assert tracer.span.attributes["gen_ai.response.id"] == "c1"
    assert tracer.span in finished


def test_tool_calls_replace_existing():
    tracer = OtelTracer.start("chat", {"model": "m", "messages": []}, record_chat_request)
    tracer.log_chunk({"id": "x", "model": "m", "choices": [{"index": 0, "delta": {"role": "tool"}}]})
    tracer.log_chunk({"id": "x", "model": "m", "choices": [{"index": 0, "delta": {"tool_calls": [{"id": "t1"}]}}]})
    tracer.log_chunk({"id": "x", "model": "m", "choices": [{"index": 0, "delta": {"tool_calls": [{"id": "t2"}]}}]})
    message = tracer.accumulated_completion["choices"][0]["message"]
    assert message["role"] == "tool"
    assert message["tool_calls"] == [{"id": "t2"}]
    assert message["content"] == ""


def test_streaming_end_without_chunks_keeps_error():
    tracer = OtelTracer.start("chat", {"model": "m", "messages": []}, record_chat_request)
    tracer.log_error("stream broke")
    tracer.streaming_end()
    assert tracer.span.status is SpanStatus.ERROR
    assert tracer.span.status_description == "stream broke"
    assert tracer.span.is_ended


def test_ok_overrides_earlier_error():
    tracer = OtelTracer.start("chat", {"model": "m", "messages": []}, record_chat_request)
    tracer.log_chunk({"id": "x", "model": "m", "choices": [{"index": 0, "delta": {"content": "a"}}]})
    tracer.log_error("late failure")
    tracer.streaming_end()
    assert tracer.span.status is SpanStatus.OK
    assert tracer.span.status_description is None


def test_ok_status_is_final():
    span = Span("s")
    span.set_status(SpanStatus.OK)
    span.set_status(SpanStatus.ERROR, "nope")
    assert span.status is SpanStatus.OK


def test_context_manager_ends_span_and_freezes_it():
    finished = []
    add_span_listener(finished.append)
    with OtelTracer.start("completion", {"model": "m", "prompt": "p"}, record_completion_request) as tracer:
        tracer.log_success({"id": "r", "model": "m", "choices": []}, record_completion_response)
    assert tracer.span.is_ended
    assert finished.count(tracer.span) == 1
    tracer.span.set_attribute("late", "value")
    tracer.span.end()
    assert "late" not in tracer.span.attributes
    assert finished.count(tracer.span) == 1


def test_attribute_type_checked():
    span = Span("s")
    with pytest.raises(TypeError):
        span.set_attribute("bad", None)


def test_exporter_posts_spans():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    exporter = SpanExporter("http://collector.example.com/v1/traces", {"Authorization": "Bearer token"}, client=client)
    span = Span("traceloop_hub.chat")
    span.set_attribute("count", 3)
    span.set_attribute("flag", True)
    span.set_status(SpanStatus.ERROR, "bad")
    span.end()
    exporter.export([span])

    assert len(seen) == 1
    assert seen[0].headers["Authorization"] == "Bearer token"
    body = json.loads(seen[0].content)
    exported = body["resourceSpans"][0]["scopeSpans"][0]["spans"][0]
    assert exported["name"] == "traceloop_hub.chat"
    assert exported["traceId"] == span.trace_id
    assert exported["status"] == {"code": 2, "message": "bad"}
    values = {a["key"]: a["value"] for a in exported["attributes"]}
    assert values["count"] == {"intValue": "3"}
    assert values["flag"] == {"boolValue": True}


def test_exporter_raises_on_rejection():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    exporter = SpanExporter("https://collector.example.com/v1/traces", client=client)
    with pytest.raises(httpx.HTTPStatusError):
        exporter.export([Span("s")])


@pytest.mark.parametrize("endpoint", ["not a url", "ftp://collector.example.com/traces"])
def test_exporter_rejects_bad_endpoint(endpoint):
    with pytest.raises(ValueError):
        SpanExporter(endpoint)


def test_init_tracing_rejects_bad_endpoint():
    assert init_tracing("no scheme here", "placeholder") is False


def test_init_tracing_returns_without_blocking():
    started = time.monotonic()
    assert init_tracing("http://127.0.0.1:9/v1/traces", "placeholder") is True
    assert time.monotonic() - started < 1.0