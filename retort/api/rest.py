"""REST API for retort.

Endpoints:
  POST /api/generate       - Relay to the completion endpoint (SSE or JSON, verbatim)
  POST /api/replies        - Generate replies server-side, return them parsed
  POST /api/replies/stream - Generate replies server-side as an SSE event stream
  GET  /health             - Health check (configuration present)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from retort.api.client import CompletionClient, StreamCallbacks
from retort.api.relay import SSERelay
from retort.cancel import CancelToken
from retort.config import Settings
from retort.errors import UNKNOWN_ERROR, ConfigurationError, RetortError
from retort.replies import parse_replies, project_cards
from retort.schemas import ApiResponse, GenerateRequest

logger = logging.getLogger(__name__)

MISSING_MESSAGE_ERROR = "参数缺失：opponentMessage"


class BadRequest(Exception):
    """Request body rejected before any generation work."""


async def _read_generate_request(request: Request) -> GenerateRequest:
    """Parse and validate the JSON body. Raises BadRequest."""
    try:
        body = await request.json()
    except Exception as e:
        raise BadRequest("Invalid JSON body") from e
    if not isinstance(body, dict):
        raise BadRequest("Invalid JSON body")
    try:
        return GenerateRequest.model_validate(body)
    except ValidationError as e:
        raise BadRequest(MISSING_MESSAGE_ERROR) from e


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def create_app(
    client: CompletionClient,
    relay: SSERelay,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def envelope(status_code: int = 200, **fields: Any) -> JSONResponse:
        return JSONResponse(ApiResponse(**fields).model_dump(exclude_none=True), status_code=status_code)

    async def generate(request: Request) -> Response:
        """POST /api/generate - relay to upstream."""
        try:
            body = await _read_generate_request(request)
        except BadRequest as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            return await relay.forward(body)
        except Exception as e:
            logger.error("Relay error: %s", e, exc_info=True)
            return JSONResponse({"error": str(e) or UNKNOWN_ERROR}, status_code=500)

    async def replies(request: Request) -> JSONResponse:
        """POST /api/replies - parsed replies in an ApiResponse envelope."""
        try:
            body = await _read_generate_request(request)
        except BadRequest as e:
            return envelope(400, success=False, error=str(e))

        try:
            data = await client.generate(body.opponent_message, body.intensity)
        except ConfigurationError as e:
            return envelope(500, success=False, error=e.message)
        except RetortError as e:
            logger.warning("Reply generation failed: %s", e.message)
            return envelope(502, success=False, error=e.message)
        return envelope(success=True, data=data)

    async def replies_stream(request: Request) -> Response:
        """POST /api/replies/stream - server-side generation as SSE."""
        try:
            body = await _read_generate_request(request)
        except BadRequest as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        cancel = CancelToken()
        parts: list[str] = []

        def cards(text: str, complete: bool) -> list[dict[str, Any]]:
            return [card.model_dump(mode="json") for card in project_cards(text, complete)]

        async def on_message(text: str) -> None:
            parts.append(text)
            await queue.put({"type": "delta", "text": text, "cards": cards("".join(parts), False)})

        async def on_complete(text: str) -> None:
            await queue.put({
                "type": "done",
                "text": text,
                "replies": parse_replies(text),
                "cards": cards(text, True),
            })

        async def on_error(error: RetortError) -> None:
            await queue.put({"type": "error", "text": error.message})

        async def produce() -> None:
            try:
                await client.generate_stream(
                    body.opponent_message,
                    body.intensity,
                    StreamCallbacks(on_message, on_complete, on_error),
                    cancel=cancel,
                )
            finally:
                await queue.put(None)

        async def event_generator() -> AsyncIterator[str]:
            task = asyncio.create_task(produce(), name="reply-stream")
            try:
                while (event := await queue.get()) is not None:
                    yield _sse(event)
            finally:
                # Client went away: stop the in-flight generation
                cancel.cancel()
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - liveness plus configuration presence."""
        return JSONResponse({"status": "ok", "configured": settings.is_valid()})

    routes = [
        Route("/api/generate", generate, methods=["POST"]),
        Route("/api/replies", replies, methods=["POST"]),
        Route("/api/replies/stream", replies_stream, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
