# hubgateway

This package provides pipelines for an LLM gateway, built on Starlette. A
pipeline takes OpenAI-style chat, completion and embeddings requests and sends
each one to a model that its configuration names. Every call is recorded as a
tracing span. Spans can be exported to an OTLP/HTTP collector as JSON.

The package has two modules:

- `hubgateway.pipeline`: the pipeline configuration, the model registry and
  the ASGI application.
- `hubgateway.telemetry`: spans, the recorders that write requests and
  responses onto spans, and span export.

## Installation

```
pip install hubgateway
```

To install the test dependencies as well:

```
pip install "hubgateway[test]"
```

## Models and the registry

`ModelRegistry(models)` indexes models by their `key` attribute.

Each model needs these attributes:

- `key`
- `model_type`
- `provider`

Each model also needs these coroutine methods. Each one takes the request
payload as a dict.

- `chat_completions`: returns either a completion mapping or an async
  iterable of chunk mappings. An async iterable means the response streams.
- `completions`: returns a response mapping.
- `embeddings`: returns a response mapping.

A model reports a failure by raising `starlette.exceptions.HTTPException`.

The registry has these methods:

- `ModelRegistry.get(key)` returns the model for `key`, or `None`.
- `ModelRegistry.get_filtered_model_info(keys)` returns the model listing
  in the OpenAI format. It includes only the registered models named in
  `keys`. Each entry has the form
  `{"id": key, "object": "model", "owned_by": provider}`.

## Building a pipeline

```python
from hubgateway.pipeline import (
    ModelRegistry, ModelRouterPlugin, Pipeline, PipelineType, TracingPlugin,
    create_pipeline,
)

pipeline = Pipeline(
    name="default",
    type=PipelineType.CHAT,
    plugins=[
        TracingPlugin(endpoint="http://localhost:4318/v1/traces", api_key="placeholder"),
        ModelRouterPlugin(models=["gpt-4"]),
    ],
)
app = create_pipeline(pipeline, ModelRegistry([my_model]))
```

`create_pipeline` returns a Starlette application with these routes:

- `GET /models` lists the models named by the first `ModelRouterPlugin`.
- `POST /chat/completions` is served by `PipelineType.CHAT` pipelines.
- `POST /completions` is served by `PipelineType.COMPLETION` pipelines.
- `POST /embeddings` is served by `PipelineType.EMBEDDINGS` pipelines.

The POST routes are added only when the pipeline has a `ModelRouterPlugin`.
A pipeline with more than one router plugin raises `ValueError`, because the
same path would be routed twice.

A `TracingPlugin` calls `init_tracing(endpoint, api_key)` when the
application is built.

### Request handling

The pipeline goes through its router's model keys in order. The first model
whose `model_type` equals the request's `model` field handles the request.

Other outcomes:

- No model matches: the response is 404.
- A body that is not valid JSON: the response is 400.
- A body that is JSON but not an object: the response is 422.
- A router key that is not in the registry: `KeyError` is raised.

The handlers are also available as coroutines:

- `chat_completions(request, model_registry, model_keys)`
- `completions(request, model_registry, model_keys)`
- `embeddings(request, model_registry, model_keys)`

Each handler returns a Starlette response.

A streamed chat response is sent as server-sent events, one `data:` line per
chunk. While the model is idle, a keep-alive comment is sent every 15 seconds.

`trace_and_stream(tracer, stream)` converts a chunk stream into SSE strings.
It also folds each chunk into the tracer.

## Tracing

`OtelTracer.start(operation, request, record)` opens a client span named
`traceloop_hub.<operation>`. It records the request with the recorder
function `record`, for example `record_chat_request`.

After the call, use the tracer as follows:

- `log_success(response, record)` records the response and marks the span OK.
- `log_chunk(chunk)` accumulates a streamed chunk into a completion.
- `streaming_end()` records the accumulated completion and ends the span.
- `log_error(description)` marks the span as an error.

Used as a context manager, an `OtelTracer` ends its span when the block exits.

The recorder functions write `gen_ai.*` and `llm.*` attributes onto a `Span`:

- `record_chat_request`
- `record_chat_completion`
- `record_completion_request`
- `record_completion_response`
- `record_embeddings_request`
- `record_embeddings_response`
- `record_usage`
- `record_embedding_usage`

Prompt and completion text is recorded only while content tracing is on. It
is on by default. To change it, call `set_trace_content_enabled(enabled)`. To
read it, call `trace_content_enabled()`.

### Span behaviour

A `Span` works as follows:

- It holds string, bool, int and float attributes.
- It holds a `SpanStatus` of `UNSET`, `OK` or `ERROR`. Once the status is
  `OK`, it does not change.
- After `Span.end()`, the span ignores further changes.
- `Span.end()` passes the span to every callable registered with
  `add_span_listener(listener)`.

### Export

`init_tracing(endpoint, api_key)` starts a background thread that batches
finished spans. It sends them with `SpanExporter.export(spans)` as OTLP JSON,
with the header `Authorization: Bearer <api_key>`.

If the endpoint is not an http or https URL, `init_tracing` returns `False`
and leaves the current setup in place. Export failures are logged and the
batch is dropped.

## What this package does not do

- It has no command and does not start a server. You serve the application
  that `create_pipeline` returns with an ASGI server of your choice.
- It contains no model providers. The model objects in the registry do the
  actual calls.
- It does not read configuration files or a database.
- It has no management API and no storage.
- It does not combine several pipelines into one application.