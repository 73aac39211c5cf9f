"""FastAPI dependency injection — database sessions, callers and services."""
from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Generator
from typing import Any, TypeVar

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.core.errors import NotificationError, UnauthenticatedError
from app.core.security import SessionClaims, decode_session_token
from app.core.settings import Settings, get_settings
from app.db.session import get_session_factory
from app.notification.orchestrator import DeliveryOrchestrator
from app.tasks.events import TaskContext

T = TypeVar("T")


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error.

    A ``NotificationError`` is a deliberate rejection; the state written on
    the way to it (OTP attempt counters, purged challenges) is kept.
    """
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except NotificationError:
        db.commit()
        raise
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_orchestrator(settings: Settings = Depends(get_settings)) -> DeliveryOrchestrator:
    return DeliveryOrchestrator.from_settings(settings)


def get_task_context(
    db: Session = Depends(get_db),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
) -> TaskContext:
    return TaskContext(db=db, orchestrator=orchestrator, settings=settings)


def run_task(task: Coroutine[Any, Any, T]) -> T:
    """Run a task coroutine to completion on the calling thread.

    Routes that touch the database are plain ``def`` and run in the
    threadpool; each drives its task on a private event loop there.
    """
    return asyncio.run(task)


def get_caller(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> SessionClaims:
    """Resolve the bearer session token into caller claims."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise UnauthenticatedError("Must be authenticated")
    token = authorization.split(" ", 1)[1].strip()
    try:
        return decode_session_token(token, settings)
    except jwt.InvalidTokenError:
        raise UnauthenticatedError("Invalid or expired session") from None
