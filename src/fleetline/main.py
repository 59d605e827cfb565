"""Fleetline application entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware

import fleetline.database as db
from fleetline.config import Settings, load_config, settings
from fleetline.poller.orchestrator import Orchestrator
from fleetline.transport.base import BaseTransport

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def _create_transport(cfg: Settings) -> BaseTransport:
    """Factory: instantiate the configured device transport."""
    if cfg.transport == "mock":
        from fleetline.transport.mock import MockTransport

        return MockTransport(jitter=True)
    from fleetline.transport.routeros import RouterOSTransport

    return RouterOSTransport(timeout=cfg.device_timeout, verify=cfg.routeros_verify_tls)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    db.init_db()
    logger.info("Database initialized")

    cfg = load_config()
    orchestrator = Orchestrator(db.engine, _create_transport(cfg), cfg)
    if cfg.scheduler_enabled:
        await orchestrator.start()
    else:
        logger.info("Scheduler disabled; devices are only polled on manual triggers")
    app.state.orchestrator = orchestrator

    yield

    await orchestrator.stop()
    logger.info("Scheduler stopped")


app = FastAPI(
    title="Fleetline",
    description="PPPoE access-concentrator reconciliation, telemetry and incidents",
    version="0.1.0",
    lifespan=lifespan,
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app.add_middleware(SecurityHeadersMiddleware)


# Register routers
from fleetline.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting Fleetline on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
