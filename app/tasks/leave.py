"""Leave decision notification to the requesting parent."""
from __future__ import annotations

import logging

from app.core.logging import bind_logger
from app.db.models import LeaveNotification
from app.db.repositories import LeaveNotificationRepository, LeaveRequestRepository, ParentRepository, StudentRepository
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest
from app.tasks.events import LeaveRequestUpdated, TaskContext

logger = logging.getLogger(__name__)

_DECISIONS = frozenset({"approved", "rejected"})


async def handle_leave_request_updated(ctx: TaskContext, event: LeaveRequestUpdated) -> LeaveNotification | None:
    """Notify once, when a request leaves ``pending`` for a decision."""
    if event.before_status == event.after_status or event.before_status != "pending":
        return None
    if event.after_status not in _DECISIONS:
        return None

    leave = LeaveRequestRepository(ctx.db).get(event.request_id)
    if leave is None:
        logger.error("Leave request %s not found", event.request_id)
        return None
    log = bind_logger(
        logger,
        function="handle_leave_request_updated",
        institute_id=leave.institute_id,
        request_id=leave.id,
    )

    parent = ParentRepository(ctx.db).get(leave.parent_id)
    if parent is None:
        log.error("Parent not found", context={"parent_id": leave.parent_id})
        return None

    student = StudentRepository(ctx.db).get(leave.student_id)
    if student is not None and student.institute_id != leave.institute_id:
        student = None

    request = NotificationRequest(
        kind=NotificationKind.LEAVE_DECISION,
        recipient=parent.phone,
        facts=MessageFacts(
            student_name=student.name if student is not None else "",
            occurred_at=leave.start_date,
            period_end=leave.end_date,
            status=event.after_status,
            review_notes=leave.review_notes,
        ),
        correlation_id=str(leave.id),
    )
    result = await ctx.orchestrator.deliver(request)
    if result.success:
        log.info("Leave notification sent", context={"status": event.after_status, "channel": result.channel})
    else:
        log.error("Leave notification failed", context={"error": result.error})

    return LeaveNotificationRepository(ctx.db).create(
        request_id=leave.id,
        parent_id=parent.id,
        student_id=leave.student_id,
        status=event.after_status,
        channel=result.channel.value if result.channel else "unknown",
        provider_message_id=result.provider_message_id,
        success=result.success,
        error=result.error,
        sent_at=ctx.clock(),
    )
