from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from oppdesc.api.router import api_router
from oppdesc.core.config import Settings, get_settings
from oppdesc.core.telemetry import configure_logging, setup_api_telemetry, shutdown_api_telemetry
from oppdesc.services.descriptions import get_description_fetcher
from oppdesc.services.repository import get_repository

logger = logging.getLogger("oppdesc.http")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        runtime = getattr(app.state, "telemetry", None)
        if runtime is not None:
            shutdown_api_telemetry(app, runtime)
        await get_repository().close()
        get_repository.cache_clear()
        get_description_fetcher.cache_clear()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.state.telemetry = setup_api_telemetry(application, settings)

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        return response

    application.include_router(api_router)
    return application


app = create_app()
