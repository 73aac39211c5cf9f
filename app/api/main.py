"""FastAPI application factory.

Assembles the error handler, the daily reminder scheduler and all API
routers.  This module is the authoritative app object; app/main.py
re-exports it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.routes.auth import router as auth_router
from app.api.routes.events import router as events_router
from app.api.routes.health import router as health_router
from app.api.routes.invitations import router as invitations_router
from app.api.routes.notifications import router as notifications_router
from app.api.routes.reminders import router as reminders_router
from app.api.routes.webhooks import router as webhooks_router
from app.core.errors import NotificationError
from app.core.logging import setup_logging
from app.core.settings import get_settings
from app.tasks.scheduler import reminder_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    settings = get_settings()
    task = None
    if settings.reminder_scheduler_enabled:
        task = asyncio.create_task(reminder_loop(settings))
    yield
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


@app.exception_handler(NotificationError)
async def notification_error_handler(request: Request, exc: NotificationError) -> JSONResponse:
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


app.include_router(health_router)
app.include_router(notifications_router)
app.include_router(invitations_router)
app.include_router(reminders_router)
app.include_router(auth_router)
app.include_router(webhooks_router)
app.include_router(events_router)
