"""Tests for CompletionClient against a scripted upstream (httpx.MockTransport).

Tests cover:
- generate(): payload shape, caching, error mapping
- generate_stream(): increments, exactly-one terminal callback, cache replay,
  cancellation, no caching of failed or empty streams
"""

import httpx
import pytest
import pytest_asyncio

from conftest import UPSTREAM_URL, make_settings
from retort.api.client import CompletionClient, StreamCallbacks, build_timeout
from retort.cache import ReplyCache
from retort.cancel import CancelToken
from retort.errors import (
    INVALID_JSON_MESSAGE,
    INVALID_SHAPE_MESSAGE,
    NETWORK_FAILURE_MESSAGE,
    ConfigurationError,
    GenerationCancelled,
    NetworkError,
    ProtocolError,
    RetortError,
    UpstreamHTTPError,
)
from retort.limiter import RateLimiter


class StreamRecorder:
    """Collects everything generate_stream() reports."""

    def __init__(self, cancel: CancelToken | None = None, cancel_after: int | None = None) -> None:
        self.increments: list[str] = []
        self.completed: list[str] = []
        self.errors: list[RetortError] = []
        self._cancel = cancel
        self._cancel_after = cancel_after

    async def on_message(self, text: str) -> None:
        self.increments.append(text)
        if self._cancel is not None and len(self.increments) == self._cancel_after:
            self._cancel.cancel()

    async def on_complete(self, text: str) -> None:
        self.completed.append(text)

    async def on_error(self, error: RetortError) -> None:
        self.errors.append(error)

    @property
    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(self.on_message, self.on_complete, self.on_error)

    @property
    def terminal_calls(self) -> int:
        return len(self.completed) + len(self.errors)


@pytest_asyncio.fixture
async def client(settings, upstream_http):
    c = CompletionClient(settings, http=upstream_http)
    await c.start()
    yield c
    await c.close()


# ---------------------------------------------------------------------------
# generate()
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.asyncio
    async def test_returns_parsed_replies(self, client, upstream):
        upstream.respond_completion("第一条\n第二条\n第三条")
        assert await client.generate("你错了", 5) == ["第一条", "第二条", "第三条"]

    @pytest.mark.asyncio
    async def test_request_shape(self, client, upstream):
        await client.generate("你错了", 7)

        request = upstream.requests[0]
        assert str(request.url) == UPSTREAM_URL
        assert request.headers["Authorization"] == "Bearer test-key"
        assert request.headers["Content-Type"] == "application/json"

        payload = upstream.payload()
        assert payload["model"] == "test-model"
        assert payload["stream"] is False
        assert payload["max_tokens"] == 1000
        assert payload["temperature"] == 0.8
        assert [m["role"] for m in payload["messages"]] == ["system", "user"]
        assert payload["messages"][1]["content"].endswith("你错了")

    @pytest.mark.asyncio
    async def test_identical_requests_hit_upstream_once(self, client, upstream):
        first = await client.generate("同一句话", 5)
        second = await client.generate("同一句话", 5)
        assert first == second
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_different_intensity_is_a_different_request(self, client, upstream):
        await client.generate("同一句话", 5)
        await client.generate("同一句话", 6)
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_expired_entry_calls_upstream_again(self, upstream_http, upstream):
        now = [0.0]
        cache = ReplyCache(ttl=10.0, clock=lambda: now[0])
        c = CompletionClient(make_settings(), cache=cache, http=upstream_http)

        await c.generate("x", 5)
        now[0] = 10.0
        await c.generate("x", 5)
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_missing_config(self, upstream_http, upstream):
        c = CompletionClient(make_settings(API_KEY=""), http=upstream_http)
        with pytest.raises(ConfigurationError) as exc_info:
            await c.generate("x", 5)
        assert "API_KEY" in exc_info.value.message
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_upstream_json_error(self, client, upstream):
        upstream.respond_status(401, {"error": {"message": "Invalid API key"}})
        with pytest.raises(UpstreamHTTPError) as exc_info:
            await client.generate("x", 5)
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "API请求失败 (401): Invalid API key"

    @pytest.mark.asyncio
    async def test_upstream_text_error(self, client, upstream):
        upstream.respond_status(503, "Service Unavailable")
        with pytest.raises(UpstreamHTTPError) as exc_info:
            await client.generate("x", 5)
        assert exc_info.value.message == "API请求失败 (503): Service Unavailable"

    @pytest.mark.asyncio
    async def test_failed_request_not_cached(self, client, upstream):
        upstream.respond_status(500, "boom")
        with pytest.raises(UpstreamHTTPError):
            await client.generate("x", 5)
        upstream.respond_completion("a\nb\nc")
        assert await client.generate("x", 5) == ["a", "b", "c"]
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, client, upstream):
        upstream.respond_status(200, "<html>not json</html>")
        with pytest.raises(ProtocolError) as exc_info:
            await client.generate("x", 5)
        assert exc_info.value.message == INVALID_JSON_MESSAGE

    @pytest.mark.asyncio
    async def test_wrong_shape_body(self, client, upstream):
        upstream.respond_status(200, {"choices": []})
        with pytest.raises(ProtocolError) as exc_info:
            await client.generate("x", 5)
        assert exc_info.value.message == INVALID_SHAPE_MESSAGE

    @pytest.mark.asyncio
    async def test_transport_failure(self, client, upstream):
        upstream.fail(httpx.ConnectError("connection refused"))
        with pytest.raises(NetworkError) as exc_info:
            await client.generate("x", 5)
        assert exc_info.value.message == NETWORK_FAILURE_MESSAGE
        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_requires_start(self, settings):
        c = CompletionClient(settings)
        with pytest.raises(RuntimeError):
            await c.generate("x", 5)


def test_timeouts_from_settings():
    timeout = build_timeout(make_settings(api_timeout_connect=3.0, api_timeout_read=30.0))
    assert timeout.connect == 3.0
    assert timeout.read == 30.0
    assert build_timeout(make_settings()).read is None


# ---------------------------------------------------------------------------
# generate_stream()
# ---------------------------------------------------------------------------


class TestGenerateStream:
    @pytest.mark.asyncio
    async def test_increments_then_complete(self, client, upstream):
        upstream.respond_stream("第一条\n", "第二条\n", "第三条")
        rec = StreamRecorder()

        await client.generate_stream("你错了", 5, rec.callbacks)

        assert rec.increments == ["第一条\n", "第二条\n", "第三条"]
        assert rec.completed == ["第一条\n第二条\n第三条"]
        assert rec.errors == []
        assert upstream.payload()["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_without_sentinel_completes(self, client, upstream):
        upstream.respond_stream("a\n", "b\n", "c", done=False)
        rec = StreamRecorder()
        await client.generate_stream("x", 5, rec.callbacks)
        assert rec.completed == ["a\nb\nc"]

    @pytest.mark.asyncio
    async def test_upstream_error_reported_once(self, client, upstream):
        upstream.respond_status(429, {"error": {"message": "Rate limit exceeded"}})
        rec = StreamRecorder()

        await client.generate_stream("x", 5, rec.callbacks)

        assert rec.terminal_calls == 1
        assert rec.completed == []
        assert rec.increments == []
        assert isinstance(rec.errors[0], UpstreamHTTPError)
        assert rec.errors[0].message == "API请求失败 (429): Rate limit exceeded"

    @pytest.mark.asyncio
    async def test_transport_failure_reported(self, client, upstream):
        upstream.fail(httpx.ConnectError("dns failure"))
        rec = StreamRecorder()
        await client.generate_stream("x", 5, rec.callbacks)
        assert rec.terminal_calls == 1
        assert isinstance(rec.errors[0], NetworkError)

    @pytest.mark.asyncio
    async def test_missing_config_reported(self, upstream_http, upstream):
        c = CompletionClient(make_settings(MODEL=""), http=upstream_http)
        rec = StreamRecorder()
        await c.generate_stream("x", 5, rec.callbacks)
        assert isinstance(rec.errors[0], ConfigurationError)
        assert rec.completed == []
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_cache_hit_replays_without_upstream(self, client, upstream):
        upstream.respond_stream("第一条\n", "第二条\n", "第三条")
        await client.generate_stream("重复", 5, StreamRecorder().callbacks)

        rec = StreamRecorder()
        await client.generate_stream("重复", 5, rec.callbacks)

        assert upstream.calls == 1
        assert rec.completed == ["第一条\n第二条\n第三条"]
        assert "".join(rec.increments) == rec.completed[0]
        assert len(rec.increments) > 3

    @pytest.mark.asyncio
    async def test_stream_and_full_share_cache(self, client, upstream):
        upstream.respond_stream("a\n", "b\n", "c")
        await client.generate_stream("共享", 5, StreamRecorder().callbacks)
        assert await client.generate("共享", 5) == ["a", "b", "c"]
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_empty_stream_not_cached(self, client, upstream):
        upstream.respond_stream()
        rec = StreamRecorder()
        await client.generate_stream("x", 5, rec.callbacks)
        assert rec.completed == [""]

        await client.generate_stream("x", 5, StreamRecorder().callbacks)
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, client, upstream):
        upstream.respond_stream("a\n", "b\n", "c")
        cancel = CancelToken()
        rec = StreamRecorder(cancel=cancel, cancel_after=1)

        await client.generate_stream("x", 5, rec.callbacks, cancel=cancel)

        assert rec.increments == ["a\n"]
        assert rec.completed == []
        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], GenerationCancelled)
        assert len(client.cache) == 0

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, client, upstream):
        cancel = CancelToken()
        cancel.cancel()
        rec = StreamRecorder()
        await client.generate_stream("x", 5, rec.callbacks, cancel=cancel)
        assert isinstance(rec.errors[0], GenerationCancelled)
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_while_throttled(self, upstream_http, upstream):
        """A cancel that lands during the rate-limit wait stops before the upstream call."""
        cancel = CancelToken()

        async def sleep(seconds: float) -> None:
            cancel.cancel()

        limiter = RateLimiter(min_interval=1.0, clock=lambda: 100.0, sleep=sleep)
        limiter.last_call_at = 100.0
        c = CompletionClient(make_settings(), limiter=limiter, http=upstream_http)
        rec = StreamRecorder()

        await c.generate_stream("x", 5, rec.callbacks, cancel=cancel)

        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], GenerationCancelled)
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, client, upstream):
        async def broken(text: str) -> None:
            raise ValueError("display failed")

        upstream.respond_stream("a")
        rec = StreamRecorder()
        await client.generate_stream("x", 5, StreamCallbacks(broken, rec.on_complete, rec.on_error))

        assert rec.completed == []
        assert type(rec.errors[0]) is RetortError
        assert rec.errors[0].message == "display failed"


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_numbered_lines_kept_and_cached(client, upstream):
    """Line split wins over numbering, and the repeat call is served from cache."""
    upstream.respond_completion("1. 回复一\n2. 回复二\n3. 回复三")

    assert await client.generate("你根本不懂", 8) == ["1. 回复一", "2. 回复二", "3. 回复三"]
    assert await client.generate("你根本不懂", 8) == ["1. 回复一", "2. 回复二", "3. 回复三"]
    assert upstream.calls == 1


@pytest.mark.asyncio
async def test_single_delta_then_sentinel(client, upstream):
    upstream.respond_stream("hi")
    rec = StreamRecorder()

    await client.generate_stream("x", 5, rec.callbacks)

    assert rec.increments == ["hi"]
    assert rec.completed == ["hi"]
    assert rec.errors == []


@pytest.mark.asyncio
async def test_inline_numbered_replies_stripped(client, upstream):
    upstream.respond_completion("1. 回复一 2. 回复二 3. 回复三")
    assert await client.generate("你根本不懂", 8) == ["回复一", "回复二", "回复三"]
