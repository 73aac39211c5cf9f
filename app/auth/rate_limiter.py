"""Fixed-window rate limiter keyed by ``(subject, action)``.

There is no counter to decay: each allowed action is stored as a
timestamped row and the window is applied at query time.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.settings import Settings
from app.db.repositories import RateLimitEntryRepository

logger = logging.getLogger(__name__)

TEST_NOTIFICATION_ACTION = "test_notification"

# Smallest step the timestamp column keeps.
_TICK = timedelta(microseconds=1)


class RateLimiter:
    def __init__(
        self,
        db: Session,
        action: str,
        *,
        limit: int,
        window: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.entries = RateLimitEntryRepository(db)
        self.action = action
        self.limit = limit
        self.window = window
        self._clock = clock

    @classmethod
    def for_test_notifications(cls, db: Session, settings: Settings) -> RateLimiter:
        return cls(
            db,
            TEST_NOTIFICATION_ACTION,
            limit=settings.test_notification_limit,
            window=timedelta(minutes=settings.test_notification_window_minutes),
        )

    def check_and_record(
        self,
        subject_key: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
        *,
        at: datetime | None = None,
    ) -> bool:
        """Count actions in ``[window_start, window_end)``; record one more if under *limit*.

        The new entry is stamped *at* (default: now), clamped into the window.
        """
        count = self.entries.count_in_window(subject_key, self.action, window_start, window_end)
        if count >= limit:
            logger.info("Rate limit reached for action=%s (%d/%d)", self.action, count, limit)
            return False
        at = at or self._clock()
        # Stored inside the half-open window it was counted against.
        created_at = min(max(at, window_start), window_end - _TICK)
        self.entries.create(subject_key=subject_key, action=self.action, created_at=created_at)
        return True

    def allow(self, subject_key: str, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return self.check_and_record(subject_key, now - self.window + _TICK, now + _TICK, self.limit, at=now)
