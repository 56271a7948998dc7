"""Terminal consumer for the retort relay.

Posts the opponent's message to a running relay (/api/generate), decodes
the relayed SSE stream itself, echoes increments as they arrive and
prints the three replies once the stream ends.

Usage:
    RETORT_API_URL=http://localhost:8000 python -m retort.console "你根本不懂" -i 8

Environment:
    RETORT_API_URL  - retort server base URL (default: http://localhost:8000)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, TextIO

import httpx

from retort.api.client import parse_completion_body
from retort.errors import NETWORK_FAILURE_MESSAGE, RetortError, upstream_error_from_body
from retort.replies import parse_replies
from retort.sse import pump_stream

logger = logging.getLogger(__name__)

EMPTY_MESSAGE_ERROR = "请输入对方的话"


class RetortConsole:
    """Sends one request per call and renders the result to ``out``."""

    def __init__(
        self,
        api_url: str = "http://localhost:8000",
        http: httpx.AsyncClient | None = None,
        out: TextIO | None = None,
        typing_delay: float = 0.03,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=120, write=10, pool=10))
        self._out = out or sys.stdout
        self._typing_delay = typing_delay

    async def run(self, message: str, intensity: int = 5, stream: bool = True) -> list[str]:
        """Generate replies for ``message``. Raises RetortError on failure."""
        if not message.strip():
            raise RetortError(EMPTY_MESSAGE_ERROR)

        payload: dict[str, Any] = {
            "opponentMessage": message,
            "intensity": intensity,
            "stream": stream,
        }
        url = f"{self.api_url}/api/generate"

        if not stream:
            response = await self._http.post(url, json=payload)
            if response.status_code != 200:
                raise self._error_from(response.status_code, response.text)
            replies = parse_replies(parse_completion_body(response.text).content)
            self._print_replies(replies)
            return replies

        async with self._http.stream("POST", url, json=payload) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise self._error_from(response.status_code, body)
            text = await pump_stream(
                response.aiter_bytes(),
                self._echo,
                delay=self._typing_delay,
            )

        self._out.write("\n")
        replies = parse_replies(text)
        self._print_replies(replies)
        return replies

    async def _echo(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _print_replies(self, replies: list[str]) -> None:
        self._out.write("\n")
        for i, reply in enumerate(replies, 1):
            self._out.write(f"[{i}] {reply}\n")
        self._out.flush()

    @staticmethod
    def _error_from(status_code: int, body: str) -> RetortError:
        """Relay errors arrive as {"error": "..."} and are already display-ready."""
        try:
            data = json.loads(body)
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("error"), str):
            return RetortError(data["error"])
        return upstream_error_from_body(status_code, body)

    async def close(self) -> None:
        await self._http.aclose()


async def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    parser = argparse.ArgumentParser(prog="retort-console", description="Generate three rebuttals.")
    parser.add_argument("message", help="what the other side said")
    parser.add_argument("-i", "--intensity", type=int, default=5, choices=range(1, 11), metavar="1-10")
    parser.add_argument("--no-stream", action="store_true", help="wait for the full response")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    console = RetortConsole(os.environ.get("RETORT_API_URL", "http://localhost:8000"))
    try:
        await console.run(args.message, args.intensity, stream=not args.no_stream)
    except RetortError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except httpx.TransportError as e:
        logger.error("Could not reach retort server: %s", e)
        print(f"Error: {NETWORK_FAILURE_MESSAGE}", file=sys.stderr)
        return 1
    finally:
        await console.close()
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
