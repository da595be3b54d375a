"""
Patient intake funnel - FastAPI entry point.

The app serves the channel webhooks and health checks. Its lifespan runs the
two background workers (task processor and follow-up scheduler) in-process.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from funnel.api.router import api_router
from funnel.config import get_settings
from funnel.database import dispose_engine
from funnel.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("funnel")

SHUTDOWN_GRACE_SECONDS = 10.0
CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuses the caller's correlation id or mints one, and echoes it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.app_env, traces_sample_rate=0.1)
    logger.info("Sentry enabled (env=%s)", settings.app_env)


def _start_workers() -> list[asyncio.Task]:
    from funnel.workers.followup_scheduler import run_followup_scheduler
    from funnel.workers.task_processor import run_task_processor

    return [
        asyncio.create_task(run_task_processor(), name="task_processor"),
        asyncio.create_task(run_followup_scheduler(), name="followup_scheduler"),
    ]


async def _stop_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_SECONDS)
    if pending:
        logger.warning("%d worker(s) did not stop within %.0fs", len(pending), SHUTDOWN_GRACE_SECONDS)
        await asyncio.gather(*pending, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Funnel starting (env=%s)", settings.app_env)
    if not settings.telegram_webhook_secret:
        logger.warning("TELEGRAM_WEBHOOK_SECRET not set - Telegram webhook accepts unsigned requests")
    if not settings.vision_service_url:
        logger.info("Vision service disabled - photos are recorded with a neutral slot")
    _init_sentry(settings)

    workers = _start_workers()
    logger.info("Started workers: %s", ", ".join(t.get_name() for t in workers))
    try:
        yield
    finally:
        # Open photo bursts live in memory only and are dropped here
        from funnel.agents.conductor import reset_photo_debounce
        reset_photo_debounce()

        await _stop_workers(workers)
        await dispose_engine()
        logger.info("Funnel stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level, json_output=settings.app_env != "development")

    application = FastAPI(
        title="Funnel",
        description="Conversational patient intake over Telegram, WhatsApp and web chat",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
