"""Daily payment-reminder trigger.

``reminder_loop`` is started from the application lifespan when
``REMINDER_SCHEDULER_ENABLED`` is set and runs each pass on a worker
thread with its own event loop, away from the server loop.
``scripts/run_payment_reminders.py`` runs a single pass for cron-style
deployments.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from app.core.clock import utcnow
from app.core.settings import Settings
from app.db.session import get_session_factory
from app.notification.orchestrator import DeliveryOrchestrator
from app.tasks.reminders import ReminderBatchJob, ReminderJobCursor

logger = logging.getLogger(__name__)


def next_run_at(now: datetime, *, hour: int, minute: int, timezone: str) -> datetime:
    """Next occurrence of ``hour:minute`` local time strictly after *now*."""
    tz = ZoneInfo(timezone)
    local_now = now.astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = candidate + timedelta(days=1)
    return candidate


async def run_payment_reminders(settings: Settings) -> ReminderJobCursor:
    db = get_session_factory()()
    try:
        job = ReminderBatchJob(db, DeliveryOrchestrator.from_settings(settings), settings)
        cursor = await job.run()
        db.commit()
        return cursor
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_payment_reminders_blocking(settings: Settings) -> ReminderJobCursor:
    return asyncio.run(run_payment_reminders(settings))


async def reminder_loop(
    settings: Settings, *, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> None:
    while True:
        now = utcnow()
        run_at = next_run_at(
            now,
            hour=settings.reminder_schedule_hour,
            minute=settings.reminder_schedule_minute,
            timezone=settings.timezone,
        )
        delay = (run_at - now).total_seconds()
        logger.info("Next payment reminder run at %s", run_at.isoformat())
        await sleep(delay)
        try:
            await asyncio.to_thread(run_payment_reminders_blocking, settings)
        except Exception:
            # The loop survives a failed run; the next day rescans everything.
            logger.exception("Payment reminder run failed")
