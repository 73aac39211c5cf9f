"""Event kinds, immutable snapshots and the per-invocation task context.

Each inbound trigger runs as an isolated invocation with its own
``TaskContext``; nothing is shared between invocations except the
database.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.settings import Settings
from app.notification.orchestrator import DeliveryOrchestrator

EVENT_ATTENDANCE_CREATED = "attendance.created"
EVENT_INVITATION_CREATED = "invitation.created"
EVENT_LEAVE_REQUEST_UPDATED = "leave_request.updated"

VALID_EVENT_KINDS: frozenset[str] = frozenset({
    EVENT_ATTENDANCE_CREATED,
    EVENT_INVITATION_CREATED,
    EVENT_LEAVE_REQUEST_UPDATED,
})


@dataclass
class TaskContext:
    db: Session
    orchestrator: DeliveryOrchestrator
    settings: Settings
    clock: Callable[[], datetime] = utcnow
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)


@dataclass(frozen=True)
class AttendanceCreated:
    institute_id: UUID
    attendance_id: UUID
    batch_id: UUID | None = None
    submitted_at: datetime | None = None


@dataclass(frozen=True)
class InvitationCreated:
    invitation_id: UUID


@dataclass(frozen=True)
class LeaveRequestUpdated:
    request_id: UUID
    before_status: str
    after_status: str
