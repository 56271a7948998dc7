"""SSE relay -- forwards a generation request upstream and pipes the answer back.

No business logic and no SSE parsing happens here. The upstream status
is inspected before the first byte goes downstream: failures become a
JSON ``{"error": ...}`` body carrying the upstream status code, success
streams upstream's bytes through unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, Response, StreamingResponse

from retort.api.client import build_headers, build_timeout
from retort.config import Settings
from retort.errors import NETWORK_FAILURE_MESSAGE, upstream_error_from_body
from retort.prompts import build_messages
from retort.schemas import CompletionRequest, GenerateRequest

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


async def _relay_body(upstream: httpx.Response) -> AsyncIterator[bytes]:
    """Yield upstream chunks as received; always release the upstream connection."""
    try:
        async for chunk in upstream.aiter_bytes():
            yield chunk
    finally:
        await upstream.aclose()


class SSERelay:
    """Server-side hop between the consumer and the completion endpoint."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=build_timeout(self._settings))
            self._owns_http = True

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    async def forward(self, body: GenerateRequest) -> Response:
        """Relay one request. Returns the downstream response."""
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")

        missing = self._settings.missing_fields()
        if missing:
            return JSONResponse({"error": f"环境变量缺失：{', '.join(missing)}"}, status_code=500)

        config = self._settings.get_config()
        payload = CompletionRequest(
            model=config.model,
            messages=build_messages(body.opponent_message, body.intensity),
            stream=body.stream,
            max_tokens=self._settings.max_tokens,
            temperature=self._settings.temperature,
        ).to_payload()

        request = self._http.build_request(
            "POST",
            config.api_base_url,
            json=payload,
            headers=build_headers(config),
        )
        try:
            upstream = await self._http.send(request, stream=True)
        except httpx.TransportError as e:
            logger.error("Relay could not reach upstream: %s", e)
            return JSONResponse({"error": NETWORK_FAILURE_MESSAGE}, status_code=500)

        logger.info("Relay upstream responded %d (stream=%s)", upstream.status_code, body.stream)

        if not upstream.is_success:
            try:
                error_text = (await upstream.aread()).decode("utf-8", errors="replace")
            finally:
                await upstream.aclose()
            error = upstream_error_from_body(upstream.status_code, error_text)
            logger.error("Relay upstream error: %s", error.message)
            return JSONResponse({"error": error.message}, status_code=upstream.status_code)

        if body.stream:
            return StreamingResponse(
                _relay_body(upstream),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
                background=BackgroundTask(upstream.aclose),
            )

        try:
            text = (await upstream.aread()).decode("utf-8", errors="replace")
        finally:
            await upstream.aclose()
        return Response(text, status_code=200, media_type="application/json")
