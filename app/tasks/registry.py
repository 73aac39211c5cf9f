"""Event dispatch table — event kind → handler.

Inbound change events arrive as plain payloads; ``parse_event`` turns them
into immutable snapshots and ``dispatch_event`` runs the matching handler.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from app.auth.access import parse_uuid
from app.core.clock import as_utc
from app.core.errors import InvalidInputError, NotFoundError
from app.tasks.attendance import handle_attendance_created
from app.tasks.events import (
    EVENT_ATTENDANCE_CREATED,
    EVENT_INVITATION_CREATED,
    EVENT_LEAVE_REQUEST_UPDATED,
    AttendanceCreated,
    InvitationCreated,
    LeaveRequestUpdated,
    TaskContext,
)
from app.tasks.invitations import handle_invitation_created
from app.tasks.leave import handle_leave_request_updated

logger = logging.getLogger(__name__)

Handler = Callable[[TaskContext, Any], Awaitable[Any]]

EVENT_HANDLERS: dict[str, Handler] = {
    EVENT_ATTENDANCE_CREATED: handle_attendance_created,
    EVENT_INVITATION_CREATED: handle_invitation_created,
    EVENT_LEAVE_REQUEST_UPDATED: handle_leave_request_updated,
}


def _require(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise InvalidInputError(f"{key} is required")
    return value


def _parse_timestamp(value: Any, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        raise InvalidInputError(f"{field} is not a valid timestamp") from None


def parse_event(kind: str, payload: Mapping[str, Any]):
    if kind == EVENT_ATTENDANCE_CREATED:
        batch_id = payload.get("batch_id")
        return AttendanceCreated(
            institute_id=parse_uuid(_require(payload, "institute_id"), "institute_id"),
            attendance_id=parse_uuid(_require(payload, "attendance_id"), "attendance_id"),
            batch_id=parse_uuid(batch_id, "batch_id") if batch_id else None,
            submitted_at=_parse_timestamp(payload.get("submitted_at"), "submitted_at"),
        )
    if kind == EVENT_INVITATION_CREATED:
        return InvitationCreated(invitation_id=parse_uuid(_require(payload, "invitation_id"), "invitation_id"))
    if kind == EVENT_LEAVE_REQUEST_UPDATED:
        return LeaveRequestUpdated(
            request_id=parse_uuid(_require(payload, "request_id"), "request_id"),
            before_status=str(_require(payload, "before_status")),
            after_status=str(_require(payload, "after_status")),
        )
    raise NotFoundError(f"Unknown event kind {kind!r}")


async def dispatch_event(ctx: TaskContext, kind: str, payload: Mapping[str, Any]) -> Any:
    handler = EVENT_HANDLERS.get(kind)
    if handler is None:
        raise NotFoundError(f"Unknown event kind {kind!r}")
    event = parse_event(kind, payload)
    logger.info("Dispatching event %s", kind)
    return await handler(ctx, event)
