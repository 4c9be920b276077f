"""ASGI application exposing the goal action server over HTTP."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from osprey.action import ActionServer, Goal, GoalResult, GoalStream
from osprey.config import ServerConfig
from osprey.engine.base import EngineHandle
from osprey.engine.loader import load_engine
from osprey.sampling import SamplingConfig
from osprey.utils.codec import b64decode
from osprey.utils.image import ImagePayload, image_payload_from_base64

logger = logging.getLogger(__name__)


STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

EngineFactory = Callable[[], EngineHandle]


def _sse_payload(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _result_payload(result: GoalResult) -> Dict[str, Any]:
    payload = result.to_dict()
    payload["type"] = "result"
    return payload


class _ServerState:
    """Container that owns the action server shared by all requests."""

    __slots__ = ("config", "engine_factory", "server")

    def __init__(
        self,
        config: ServerConfig,
        engine_factory: Optional[EngineFactory] = None,
    ) -> None:
        self.config = config
        self.engine_factory = engine_factory or (
            lambda: load_engine(config.engine, config.engine_options)
        )
        self.server: Optional[ActionServer] = None

    # ------------------------------------------------------------------
    # Lifecycle hooks

    async def startup(self) -> None:
        if self.server is not None:
            return
        logger.info("Loading engine %s", self.config.engine)
        loop = asyncio.get_running_loop()
        engine = await loop.run_in_executor(None, self.engine_factory)
        self.server = self._build_server(engine)
        logger.info("Action server ready")

    async def shutdown(self) -> None:
        if self.server is None:
            return
        if self.server.cancel():
            logger.info("Canceled active goal during shutdown")
        self.server = None

    def _build_server(self, engine: EngineHandle) -> ActionServer:
        return ActionServer(
            engine,
            debug=self.config.debug,
            jpeg_quality=self.config.jpeg_quality,
            url_safe_images=self.config.url_safe_images,
        )

    # ------------------------------------------------------------------
    # Request handlers

    async def handle_health(self, _request: Request) -> Response:
        if self.server is None:
            return JSONResponse({"status": "starting"}, status_code=503)
        return JSONResponse({"status": "ok", "busy": self.server.busy})

    async def handle_status(self, _request: Request) -> Response:
        if self.server is None:
            return JSONResponse({"error": "Server is not ready"}, status_code=503)
        active = self.server.active_goal()
        if active is None:
            return JSONResponse({"active": False, "goal_id": None, "status": None})
        goal_id, status = active
        return JSONResponse({"active": True, "goal_id": goal_id, "status": status.value})

    async def handle_generate(self, request: Request) -> Response:
        if self.server is None:
            return JSONResponse({"error": "Server is not ready"}, status_code=503)

        payload = await _read_json(request)
        if isinstance(payload, Response):
            return payload

        try:
            prompt = _parse_str(payload.get("prompt"), "prompt")
            reset = _parse_bool(payload.get("reset", False), "reset")
            stream = _parse_bool(payload.get("stream", True), "stream")

            sampling_payload = payload.get("sampling_config")
            if sampling_payload is None:
                sampling_payload = {}
            if not isinstance(sampling_payload, dict):
                raise ValueError("Field 'sampling_config' must be an object if provided")
            sampling = SamplingConfig.from_mapping(
                sampling_payload, base=self.config.default_sampling
            )

            image = _parse_image(payload)
        except ValueError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)

        server = self.server
        goal = Goal(prompt=prompt, image=image, reset=reset, sampling_config=sampling)
        try:
            goal_stream = await server.submit_streaming(goal)
        except Exception as exc:  # pragma: no cover
            logger.exception("Goal failed to start")
            return JSONResponse(
                {"error": "Goal failed to start", "detail": str(exc)}, status_code=500
            )

        if goal_stream is None:
            active = server.active_goal()
            return JSONResponse(
                {
                    "status": "rejected",
                    "error": "Another goal is still active",
                    "active_goal_id": active[0] if active is not None else None,
                },
                status_code=409,
            )

        if stream:
            return StreamingResponse(
                self._event_generator(goal_stream),
                media_type="text/event-stream",
                headers=STREAM_HEADERS,
            )

        try:
            result = await goal_stream.result()
        except asyncio.CancelledError:
            self._cancel_unfinished(goal_stream)
            raise
        return JSONResponse(_result_payload(result))

    async def handle_cancel(self, request: Request) -> Response:
        if self.server is None:
            return JSONResponse({"error": "Server is not ready"}, status_code=503)

        goal_id: Optional[str] = None
        body = await request.body()
        if body:
            payload = await _read_json(request)
            if isinstance(payload, Response):
                return payload
            raw_id = payload.get("goal_id")
            if raw_id is not None and not isinstance(raw_id, str):
                return JSONResponse(
                    {"error": "Field 'goal_id' must be a string if provided"}, status_code=400
                )
            goal_id = raw_id

        canceling = self.server.cancel(goal_id)
        return JSONResponse({"status": "accepted", "canceling": canceling})

    # ------------------------------------------------------------------

    async def _event_generator(self, goal_stream: GoalStream) -> AsyncIterator[str]:
        try:
            yield _sse_payload({"type": "accepted", "goal_id": goal_stream.goal_id})
            async for feedback in goal_stream:
                event = feedback.to_dict()
                event["type"] = "feedback"
                yield _sse_payload(event)
            result = await goal_stream.result()
            yield _sse_payload(_result_payload(result))
        finally:
            self._cancel_unfinished(goal_stream)

    def _cancel_unfinished(self, goal_stream: GoalStream) -> None:
        # Consumer went away before the terminal event; free the engine.
        if goal_stream.done or self.server is None:
            return
        logger.info("Client disconnected from goal %s; canceling", goal_stream.goal_id)
        self.server.cancel(goal_stream.goal_id)


def create_app(
    config: ServerConfig,
    *,
    engine_factory: Optional[EngineFactory] = None,
) -> Starlette:
    """Create a Starlette application bound to the given server configuration."""

    state = _ServerState(config, engine_factory)

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncIterator[None]:
        await state.startup()
        try:
            yield
        finally:
            await state.shutdown()

    routes = [
        Route("/v1/generate", state.handle_generate, methods=["POST"]),
        Route("/v1/cancel", state.handle_cancel, methods=["POST"]),
        Route("/v1/status", state.handle_status, methods=["GET"]),
        Route("/healthz", state.handle_health, methods=["GET"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.server_state = state
    return app


async def _read_json(request: Request) -> Dict[str, Any] | Response:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    except ValueError:
        return JSONResponse({"error": "Request body must be JSON"}, status_code=400)

    if not isinstance(payload, dict):
        return JSONResponse({"error": "Request body must be an object"}, status_code=400)
    return payload


def _parse_image(payload: Dict[str, Any]) -> Optional[ImagePayload]:
    image_data = payload.get("image")
    image_url = payload.get("image_url")
    if image_data is not None and image_url is not None:
        raise ValueError("Provide either 'image' or 'image_url', not both")

    if image_url is not None:
        if not isinstance(image_url, str):
            raise ValueError("Field 'image_url' must be a string if provided")
        if not image_url:
            return None
        return image_payload_from_base64(image_url)

    if image_data is None:
        return None
    if not isinstance(image_data, dict):
        raise ValueError("Field 'image' must be an object if provided")
    data = image_data.get("data", "")
    if not isinstance(data, str):
        raise ValueError("Field 'image.data' must be a base64 string")
    encoding = _parse_str(image_data.get("encoding", "auto"), "image.encoding")
    width = _parse_int(image_data.get("width", 0), "image.width", minimum=0)
    height = _parse_int(image_data.get("height", 0), "image.height", minimum=0)
    try:
        raw = b64decode(data)
    except ValueError as exc:
        raise ValueError(f"Field 'image.data' is not valid base64: {exc}") from exc
    if not raw:
        return None
    return ImagePayload(data=raw, encoding=encoding, width=width, height=height)


def _parse_str(value: Any, field: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"Field '{field}' must be a string")
    return value


def _parse_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"Field '{field}' must be a boolean")


def _parse_int(
    value: Any,
    field: str,
    *,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Field '{field}' must be an integer")
    if minimum is not None and value < minimum:
        raise ValueError(
            f"Field '{field}' must be >= {minimum}, received {value}"
        )
    if maximum is not None and value > maximum:
        raise ValueError(
            f"Field '{field}' must be <= {maximum}, received {value}"
        )
    return value


__all__ = ["create_app"]
