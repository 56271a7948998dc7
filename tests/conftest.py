"""Shared fixtures: test settings and a scripted upstream behind httpx.MockTransport."""

import json

import httpx
import pytest
import pytest_asyncio

from retort.config import Settings

UPSTREAM_URL = "https://upstream.test/v1/chat/completions"


def make_settings(**overrides) -> Settings:
    """Valid settings with pacing and throttling switched off.

    The three upstream fields are passed by alias; the .env file is
    ignored so the developer's local config cannot leak into tests.
    """
    values = {
        "API_BASE_URL": UPSTREAM_URL,
        "API_KEY": "test-key",
        "MODEL": "test-model",
        "typing_delay": 0.0,
        "reply_gap": 0.0,
        "min_request_interval": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sse_frame(text: str) -> str:
    chunk = {"id": "chunk", "choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"


def sse_body(*texts: str, done: bool = True) -> bytes:
    """A streaming completion body carrying ``texts`` as content deltas."""
    body = "".join(sse_frame(t) for t in texts)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


def completion_body(content: str) -> dict:
    return {
        "id": "cmpl-1",
        "object": "chat.completion",
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


class UpstreamStub:
    """Scripted chat-completion endpoint.

    Every request is recorded; the next response is whatever was last
    configured with one of the respond_* / fail methods.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._respond = lambda request: httpx.Response(200, json=completion_body("a\nb\nc"))

    @property
    def calls(self) -> int:
        return len(self.requests)

    def payload(self, i: int = -1) -> dict:
        return json.loads(self.requests[i].content)

    def respond_completion(self, content: str) -> None:
        self._respond = lambda request: httpx.Response(200, json=completion_body(content))

    def respond_stream(self, *texts: str, done: bool = True) -> None:
        body = sse_body(*texts, done=done)
        self._respond = lambda request: httpx.Response(
            200, content=body, headers={"Content-Type": "text/event-stream"}
        )

    def respond(self, factory) -> None:
        """Answer with ``factory(request)``, for bodies the helpers above cannot express."""
        self._respond = factory

    def respond_status(self, status_code: int, body: str | dict) -> None:
        if isinstance(body, dict):
            self._respond = lambda request: httpx.Response(status_code, json=body)
        else:
            self._respond = lambda request: httpx.Response(status_code, text=body)

    def fail(self, exc: Exception) -> None:
        def _raise(request):
            raise exc

        self._respond = _raise

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest_asyncio.fixture
async def upstream_http(upstream):
    """httpx client whose every request lands on the upstream stub."""
    async with httpx.AsyncClient(transport=upstream.transport) as http:
        yield http
