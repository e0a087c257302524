"""Chat bridge entry point.

Settings -> TelemetrySink -> OpenAICompatibleGenerator -> App -> Uvicorn

The generator's httpx client and the telemetry loop are started in the
Starlette lifespan so they live on uvicorn's event loop.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from chatbridge.api.generator import GeneratorConfig, OpenAICompatibleGenerator
from chatbridge.api.rest import create_app
from chatbridge.config import Settings, validate_auth_method
from chatbridge.events import TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)


def _log_event(event: TelemetryEvent) -> None:
    logger.debug("telemetry %r", event)


def build_app(settings: Settings) -> Starlette:
    """Wire generator, telemetry and REST routes together."""
    telemetry = TelemetrySink() if settings.telemetry_enabled else None
    if telemetry is not None:
        telemetry.subscribe(_log_event)

    generator = OpenAICompatibleGenerator(
        GeneratorConfig.from_settings(settings), telemetry=telemetry
    )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if telemetry is not None:
            await telemetry.start()
        await generator.start()
        app.state.generator = generator
        logger.info(
            "Chat bridge started: %s (%s)", generator.config.model, settings.auth_type
        )
        yield

        # Shutdown (reverse order)
        await generator.close()
        if telemetry is not None:
            await telemetry.stop()

    return create_app(generator, settings, lifespan=lifespan)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else getattr(
            logging, settings.log_level.upper(), logging.INFO
        ),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    problem = validate_auth_method(settings)
    if problem:
        logger.error(problem)
        sys.exit(1)

    logger.info("Backend: %s (%s)", settings.resolved_base_url, settings.auth_type)
    logger.info("Model: %s", settings.resolved_model or "<unset>")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
