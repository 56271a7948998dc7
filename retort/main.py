"""retort server entry point.

Builds the process-wide components and starts the server:
  Settings -> ReplyCache + RateLimiter -> CompletionClient, SSERelay -> App -> Uvicorn

Components are constructed once per process; their httpx clients are
opened and closed by the Starlette lifespan on uvicorn's event loop.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from retort.api.client import CompletionClient
from retort.api.relay import SSERelay
from retort.api.rest import create_app
from retort.cache import ReplyCache
from retort.config import Settings
from retort.limiter import RateLimiter

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """One cache, one limiter, one client and one relay for the process."""
    cache = ReplyCache(ttl=settings.cache_ttl)
    limiter = RateLimiter(min_interval=settings.min_request_interval)
    client = CompletionClient(settings, cache=cache, limiter=limiter)
    relay = SSERelay(settings)
    return {
        "cache": cache,
        "limiter": limiter,
        "client": client,
        "relay": relay,
    }


async def start_components(components: dict) -> None:
    await components["client"].start()
    await components["relay"].start()


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down retort...")
    relay = components.get("relay")
    if relay:
        await relay.close()
    client = components.get("client")
    if client:
        await client.close()
    logger.info("retort shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with lifespan-managed components."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components)
        # Store on app.state for access in tests
        app.state.components = components
        logger.info(
            "retort started: cache_ttl=%.0fs, min_interval=%.1fs",
            components["cache"].ttl,
            components["limiter"].min_interval,
        )
        yield
        await shutdown_components(components)

    return create_app(
        client=components["client"],
        relay=components["relay"],
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting retort on %s:%d", settings.host, settings.port)
    logger.info("Model: %s", settings.model or "<unset>")

    missing = settings.missing_fields()
    if missing:
        logger.warning("Missing upstream settings: %s -- generation endpoints will fail", ", ".join(missing))

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
