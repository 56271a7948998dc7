"""Completion client -- generates rebuttals via an OpenAI-style chat endpoint.

Two entry points share request construction, the reply cache and the
rate limiter:

- generate(): full-response call, returns the parsed replies or raises
  a RetortError.
- generate_stream(): streaming call; increments go to on_message and
  exactly one of on_complete / on_error fires. Cache hits are replayed
  through a simulated typing emitter instead of calling upstream.

The cache is consulted before the limiter in both paths so pure cache
hits are never throttled.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from retort.cache import ReplyCache, fingerprint
from retort.cancel import CancelToken
from retort.config import Settings, UpstreamConfig
from retort.errors import (
    INVALID_JSON_MESSAGE,
    INVALID_SHAPE_MESSAGE,
    UNKNOWN_ERROR,
    NetworkError,
    ProtocolError,
    RetortError,
    upstream_error_from_body,
)
from retort.limiter import RateLimiter
from retort.prompts import build_messages
from retort.replies import parse_replies
from retort.schemas import ChatMessage, CompletionRequest, CompletionResponse
from retort.sse import TextHandler, pump_stream, simulate_stream

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[RetortError], Awaitable[None]]


@dataclass
class StreamCallbacks:
    """Consumer hooks for generate_stream()."""

    on_message: TextHandler
    on_complete: TextHandler
    on_error: ErrorHandler


def parse_completion_body(body: str) -> CompletionResponse:
    """Validate a stream=false body, raising ProtocolError if it is unusable."""
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ProtocolError(INVALID_JSON_MESSAGE) from e
    try:
        return CompletionResponse.model_validate(data)
    except ValidationError as e:
        logger.error("Invalid completion structure: %s", str(data)[:500])
        raise ProtocolError(INVALID_SHAPE_MESSAGE) from e


def build_headers(config: UpstreamConfig) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
    }


def build_timeout(settings: Settings) -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.api_timeout_connect,
        read=settings.api_timeout_read,
        write=10.0,
        pool=10.0,
    )


class CompletionClient:
    """One per process; holds the shared reply cache and rate limiter."""

    def __init__(
        self,
        settings: Settings,
        cache: ReplyCache | None = None,
        limiter: RateLimiter | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self.cache = cache or ReplyCache(ttl=settings.cache_ttl)
        self.limiter = limiter or RateLimiter(min_interval=settings.min_request_interval)
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Create the httpx client unless one was injected."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=build_timeout(self._settings),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
            self._owns_http = True
            logger.info("Completion client initialized (model: %s)", self._settings.model or "<unset>")

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def _build_request(self, config: UpstreamConfig, messages: list[ChatMessage], stream: bool) -> dict[str, Any]:
        """Upstream payload. Shared by both modes so they cannot diverge."""
        return CompletionRequest(
            model=config.model,
            messages=messages,
            stream=stream,
            max_tokens=self._settings.max_tokens,
            temperature=self._settings.temperature,
        ).to_payload()

    # ------------------------------------------------------------------
    # Full response
    # ------------------------------------------------------------------

    async def generate(self, opponent_message: str, intensity: int | float) -> list[str]:
        """Return up to three replies for the opponent's message.

        Raises ConfigurationError, NetworkError, UpstreamHTTPError or
        ProtocolError, each carrying a display-ready message.
        """
        config = self._settings.require_valid()
        messages = build_messages(opponent_message, intensity)
        key = fingerprint(messages, intensity)

        cached = self.cache.get(key)
        if cached is not None:
            return parse_replies(cached)

        await self.limiter.await_turn()
        content = await self._call_api(config, messages)
        self.cache.put(key, content)
        return parse_replies(content)

    async def _call_api(self, config: UpstreamConfig, messages: list[ChatMessage]) -> str:
        payload = self._build_request(config, messages, stream=False)
        logger.info("Sending completion request to %s", config.api_base_url)
        try:
            response = await self._client().post(
                config.api_base_url,
                json=payload,
                headers=build_headers(config),
            )
        except httpx.TransportError as e:
            logger.error("Completion request failed: %s", e)
            raise NetworkError(e) from e

        logger.info("Upstream responded %d", response.status_code)
        if not response.is_success:
            logger.error("Upstream error body: %s", response.text[:500])
            raise upstream_error_from_body(response.status_code, response.text)

        completion = parse_completion_body(response.text)
        logger.debug("Completion content: %s", completion.content[:200])
        return completion.content

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def generate_stream(
        self,
        opponent_message: str,
        intensity: int | float,
        callbacks: StreamCallbacks,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Stream replies into ``callbacks``. Never raises for generation failures."""
        try:
            text = await self._stream_text(opponent_message, intensity, callbacks, cancel)
        except RetortError as e:
            logger.warning("Streaming generation failed: %s", e.message)
            await callbacks.on_error(e)
            return
        except Exception as e:
            logger.error("Unexpected streaming error: %s", e, exc_info=True)
            await callbacks.on_error(RetortError(str(e) or UNKNOWN_ERROR))
            return

        await callbacks.on_complete(text)

    async def _stream_text(
        self,
        opponent_message: str,
        intensity: int | float,
        callbacks: StreamCallbacks,
        cancel: CancelToken | None,
    ) -> str:
        config = self._settings.require_valid()
        messages = build_messages(opponent_message, intensity)
        key = fingerprint(messages, intensity)
        if cancel is not None:
            cancel.raise_if_cancelled()

        cached = self.cache.get(key)
        if cached is not None:
            return await simulate_stream(
                parse_replies(cached),
                callbacks.on_message,
                char_delay=self._settings.typing_delay,
                reply_gap=self._settings.reply_gap,
                cancel=cancel,
            )

        await self.limiter.await_turn()
        if cancel is not None:
            cancel.raise_if_cancelled()
        text = await self._call_api_stream(config, messages, callbacks.on_message, cancel)
        logger.info("Stream complete (%d chars)", len(text))
        if text.strip():
            self.cache.put(key, text)
        return text

    async def _call_api_stream(
        self,
        config: UpstreamConfig,
        messages: list[ChatMessage],
        on_message: TextHandler,
        cancel: CancelToken | None,
    ) -> str:
        payload = self._build_request(config, messages, stream=True)
        logger.info("Sending streaming completion request to %s", config.api_base_url)
        try:
            async with self._client().stream(
                "POST",
                config.api_base_url,
                json=payload,
                headers=build_headers(config),
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("Upstream error %d: %s", response.status_code, body[:500])
                    raise upstream_error_from_body(response.status_code, body)

                return await pump_stream(
                    response.aiter_bytes(),
                    on_message,
                    delay=self._settings.typing_delay,
                    cancel=cancel,
                )
        except httpx.TransportError as e:
            logger.error("Streaming request failed: %s", e)
            raise NetworkError(e) from e
