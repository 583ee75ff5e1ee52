"""HTTP routes for one gateway pipeline: model listing and request routing."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from hubgateway.telemetry import (
    OtelTracer,
    init_tracing,
    record_chat_completion,
    record_chat_request,
    record_completion_request,
    record_completion_response,
    record_embeddings_request,
    record_embeddings_response,
)

logger = logging.getLogger(__name__)

KEEP_ALIVE_INTERVAL = 15.0


class PipelineType(enum.Enum):
    CHAT = "chat"
    COMPLETION = "completion"
    EMBEDDINGS = "embeddings"


@dataclass(frozen=True)
class ModelRouterPlugin:
    """Routes requests to the first listed model whose type matches."""

    models: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TracingPlugin:
    """Exports spans for the pipeline's requests to an OTLP endpoint."""

    endpoint: str
    api_key: str


@dataclass
class Pipeline:
    name: str
    type: PipelineType
    plugins: list[Any] = field(default_factory=list)


class ModelRegistry:
    """Models by key.

    A model has ``key``, ``model_type`` and ``provider`` attributes and the
    coroutine methods ``chat_completions``, ``completions`` and
    ``embeddings``, each taking the request payload. ``chat_completions``
    returns either a completion mapping or an async iterable of chunks.
    Failures are raised as ``HTTPException``.
    """

    def __init__(self, models: Iterable[Any] = ()) -> None:
        self._models: dict[str, Any] = {model.key: model for model in models}

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, key: object) -> bool:
        return key in self._models

    def __iter__(self) -> AsyncIterator[Any] | Any:
        return iter(self._models.values())

    def get(self, key: str) -> Any | None:
        return self._models.get(key)

    def get_filtered_model_info(self, keys: Iterable[str]) -> dict[str, Any]:
        """Model listing, in the OpenAI format, for the models named in keys."""
        wanted = set(keys)
        return {
            "object": "list",
            "data": [
                {"id": key, "object": "model", "owned_by": model.provider}
                for key, model in self._models.items()
                if key in wanted
            ],
        }


def _require_model(registry: ModelRegistry, key: str) -> Any:
    model = registry.get(key)
    if model is None:
        raise KeyError(f"model {key!r} is routed to but not registered")
    return model


def _sse_data(payload: Any) -> str:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


async def trace_and_stream(
    tracer: OtelTracer, stream: AsyncIterable[Mapping[str, Any]]
) -> AsyncIterator[str]:
    """Yield each chunk as a server-sent event while accumulating it on the tracer."""
    try:
        async for chunk in stream:
            tracer.log_chunk(chunk)
            yield _sse_data(chunk)
    except Exception as exc:
        logger.error("Error in stream: %r", exc)
        tracer.log_error(str(exc))
        raise
    else:
        tracer.streaming_end()
    finally:
        tracer.span.end()


async def _with_keep_alive(
    events: AsyncIterator[str], interval: float = KEEP_ALIVE_INTERVAL
) -> AsyncIterator[str]:
    """Pass events through, sending an SSE comment whenever the source is idle."""
    pending: asyncio.Future[str] | None = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(events.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=interval)
            if not done:
                yield ":\n\n"
                continue
            try:
                item = pending.result()
            except StopAsyncIteration:
                pending = None
                break
            pending = None
            yield item
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await pending
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


def _no_match(tracer: OtelTracer, model: Any) -> HTTPException:
    tracer.log_error("No matching model found")
    logger.error("No matching model found for: %s", model)
    return HTTPException(status_code=404)


async def chat_completions(
    request: Mapping[str, Any], model_registry: ModelRegistry, model_keys: Sequence[str]
) -> Response:
    """Send a chat request to the first matching model; stream if it streams."""
    tracer = OtelTracer.start("chat", request, record_chat_request)
    try:
        for model_key in model_keys:
            model = _require_model(model_registry, model_key)
            if request.get("model") != model.model_type:
                continue
            try:
                response = await model.chat_completions(dict(request))
            except Exception as exc:
                logger.error("Chat completion error for model %s: %r", model_key, exc)
                raise
            if isinstance(response, Mapping):
                tracer.log_success(response, record_chat_completion)
                tracer.span.end()
                return JSONResponse(dict(response))
            events = _with_keep_alive(trace_and_stream(tracer, response))
            return StreamingResponse(events, media_type="text/event-stream")
        raise _no_match(tracer, request.get("model"))
    except BaseException:
        tracer.span.end()
        raise


async def completions(
    request: Mapping[str, Any], model_registry: ModelRegistry, model_keys: Sequence[str]
) -> Response:
    """Send a completion request to the first matching model."""
    with OtelTracer.start("completion", request, record_completion_request) as tracer:
        for model_key in model_keys:
            model = _require_model(model_registry, model_key)
            if request.get("model") != model.model_type:
                continue
            try:
                response = await model.completions(dict(request))
            except Exception as exc:
                logger.error("Completion error for model %s: %r", model_key, exc)
                raise
            tracer.log_success(response, record_completion_response)
            return JSONResponse(dict(response))
        raise _no_match(tracer, request.get("model"))


async def embeddings(
    request: Mapping[str, Any], model_registry: ModelRegistry, model_keys: Sequence[str]
) -> Response:
    """Send an embeddings request to the first matching model."""
    with OtelTracer.start("embeddings", request, record_embeddings_request) as tracer:
        for model_key in model_keys:
            model = _require_model(model_registry, model_key)
            if request.get("model") != model.model_type:
                continue
            try:
                response = await model.embeddings(dict(request))
            except Exception as exc:
                logger.error("Embeddings error for model %s: %r", model_key, exc)
                raise
            tracer.log_success(response, record_embeddings_response)
            return JSONResponse(dict(response))
        raise _no_match(tracer, request.get("model"))


async def _json_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=422, detail="request body must be a JSON object")
    return payload


_HANDLERS = {
    PipelineType.CHAT: ("/chat/completions", chat_completions),
    PipelineType.COMPLETION: ("/completions", completions),
    PipelineType.EMBEDDINGS: ("/embeddings", embeddings),
}


def _post_route(path: str, handler: Any, registry: ModelRegistry, models: list[str]) -> Route:
    async def endpoint(request: Request) -> Response:
        payload = await _json_payload(request)
        return await handler(payload, registry, models)

    return Route(path, endpoint, methods=["POST"])


def create_pipeline(pipeline: Pipeline, model_registry: ModelRegistry) -> Starlette:
    """Build the ASGI application serving one pipeline."""
    available_models = next(
        (list(p.models) for p in pipeline.plugins if isinstance(p, ModelRouterPlugin)), []
    )

    async def list_models(request: Request) -> Response:
        return JSONResponse(model_registry.get_filtered_model_info(available_models))

    routes = [Route("/models", list_models, methods=["GET"])]
    seen_paths = {"/models"}

    for plugin in pipeline.plugins:
        if isinstance(plugin, TracingPlugin):
            logger.info("Initializing OtelTracer for pipeline %s", pipeline.name)
            init_tracing(plugin.endpoint, plugin.api_key)
        elif isinstance(plugin, ModelRouterPlugin):
            path, handler = _HANDLERS[pipeline.type]
            if path in seen_paths:
                raise ValueError(f"pipeline {pipeline.name!r} routes {path} more than once")
            seen_paths.add(path)
            routes.append(_post_route(path, handler, model_registry, list(plugin.models)))

    return Starlette(routes=routes)