"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from cctp_payment_relay import __version__
from cctp_payment_relay.api import api_router
from cctp_payment_relay.api.dependencies import get_relay_service, get_settings


def create_app() -> FastAPI:
    """Build FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build the relay graph, resume pending transfers, stop on exit."""

        provider = app.dependency_overrides.get(get_relay_service, get_relay_service)
        service = provider()
        await service.startup()
        try:
            yield
        finally:
            await service.shutdown()

    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()


def run() -> None:
    """Run the relay server."""

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "cctp_payment_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


__all__ = ["app", "create_app", "run"]
