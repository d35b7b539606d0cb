from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from link_ingest.api.router import api_router
from link_ingest.core.config import Settings, get_settings
from link_ingest.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from link_ingest.services.repository import get_repository

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            shutdown_telemetry(app.state.telemetry)
            await get_repository().close()
            get_repository.cache_clear()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.telemetry = setup_telemetry(settings, role="api", app=app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started_at) * 1000.0,
        )
        return response

    app.include_router(api_router)
    return app


app = create_app()
