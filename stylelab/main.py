"""
StyleLab - automated email style optimization.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from stylelab.config import get_settings
from stylelab.api.router import api_router
from stylelab.utils.logging import (
    clear_log_context,
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("stylelab")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        clear_log_context()
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("StyleLab starting up (env=%s)", settings.app_env)

    if not settings.anthropic_api_key and not settings.openai_api_key:
        logger.warning("No AI provider key set - every segment will fail message generation")
    if not settings.sendgrid_api_key:
        logger.warning("SENDGRID_API_KEY not set - every segment will fail sending")

    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    if settings.round_scheduler_enabled:
        from stylelab.workers.round_scheduler import run_round_scheduler
        worker_tasks.append(asyncio.create_task(run_round_scheduler()))
        logger.info("Round scheduler started")
    else:
        logger.info("Round scheduler disabled (ROUND_SCHEDULER_ENABLED=false)")

    yield

    logger.info("StyleLab shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from stylelab.database import dispose_engine
    from stylelab.utils.redis import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("StyleLab shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="StyleLab",
        description="Round-based email style optimization",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
