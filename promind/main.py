"""
Main Application - FastAPI application for the bot's operational API.

Serves order redemption for the shop, plus /health and /metrics for the
deployment. Token adjustments go through GenerationService.credit; there is
no HTTP route for them.
"""

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from promind.api.routes import router
from promind.config import settings
from promind.db.session import close_engines
from promind.observability import get_logger, log_context, setup_logging

setup_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log the provider setup on startup; dispose database pools on shutdown."""
    logger.info(
        "promind_api_starting",
        version=settings.service_version,
        kling_configured=settings.kling_configured,
        video_b_model=settings.video_b_model,
        shop_db_configured=settings.main_database_url is not None,
    )
    try:
        yield
    finally:
        await close_engines()
        logger.info("promind_api_stopped")


app = FastAPI(
    title=settings.service_name,
    version=settings.service_version,
    description="Operational API for the Promind generation bot",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Bind a request id to every log entry of the request and echo it back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    started = time.perf_counter()

    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http_request_failed",
                method=request.method,
                path=request.url.path,
                elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
            )
            raise

        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.service_name,
        "version": settings.service_version,
        "status": "running",
    }


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "promind.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
