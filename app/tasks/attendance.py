"""Attendance notifications.

``handle_attendance_created`` runs once per submitted attendance sheet:
it waits briefly for the per-student records to become visible, filters
them by the institute's preferences and dispatches them in concurrent
chunks.  Each record carries its own delivery state; one parent's
failure never affects another's.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.auth.access import parse_uuid, require_institute_access
from app.core.errors import NotFoundError
from app.core.logging import bind_logger
from app.core.security import SessionClaims
from app.db.models import AttendanceRecord, AttendanceSession, Batch, DeliveryStatus, Institute
from app.db.repositories import (
    AttendanceRecordRepository,
    AttendanceSessionRepository,
    BatchRepository,
    InstituteRepository,
)
from app.notification.renderer import ATTENDANCE_STATUSES
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest
from app.tasks.events import AttendanceCreated, TaskContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttendanceSummary:
    attendance_id: UUID
    total_records: int
    sent: int
    failed: int


def _institute_template(institute: Institute, status: str) -> str | None:
    return {
        "absent": institute.absent_template,
        "late": institute.late_template,
        "present": institute.present_template,
    }.get(status)


def build_attendance_request(
    record: AttendanceRecord,
    session: AttendanceSession,
    batch: Batch,
    institute: Institute,
    occurred_at: datetime,
) -> NotificationRequest:
    return NotificationRequest(
        kind=NotificationKind.ATTENDANCE,
        recipient=record.parent_phone,
        facts=MessageFacts(
            student_name=record.student_name,
            batch_name=batch.name,
            institute_name=institute.name,
            occurred_at=occurred_at,
            status=record.status,
            template=_institute_template(institute, record.status),
        ),
        correlation_id=f"{session.id}:{record.student_id}",
    )


def delivery_outcome(record: AttendanceRecord) -> dict:
    return {
        "success": record.notification_status == DeliveryStatus.SENT,
        "status": record.notification_status,
        "channel": record.notification_channel,
        "provider": record.notification_provider,
        "provider_message_id": record.provider_message_id,
        "retry_count": record.retry_count,
        "error": record.notification_error,
    }


async def _read_records(ctx: TaskContext, attendance_id: UUID, log) -> list[AttendanceRecord]:
    """Re-read the records on a short backoff while none are visible yet."""
    repo = AttendanceRecordRepository(ctx.db)
    records = repo.for_session(attendance_id)
    for delay in ctx.settings.records_read_delays_s:
        if records:
            break
        log.warning("Records empty, retrying", context={"retry_delay_s": delay})
        await ctx.sleep(delay)
        records = repo.for_session(attendance_id)
    return records


async def handle_attendance_created(ctx: TaskContext, event: AttendanceCreated) -> AttendanceSummary | None:
    log = bind_logger(
        logger,
        function="handle_attendance_created",
        institute_id=event.institute_id,
        attendance_id=event.attendance_id,
    )
    log.info("Processing attendance")

    institute = InstituteRepository(ctx.db).get(event.institute_id)
    if institute is None:
        log.error("Institute not found")
        return None
    if not institute.notifications_enabled:
        log.info("Notifications disabled, skipping")
        return None

    session = AttendanceSessionRepository(ctx.db).get(event.attendance_id)
    if session is None or session.institute_id != institute.id:
        log.error("Attendance session not found")
        return None

    batch = BatchRepository(ctx.db).get_in_institute(institute.id, event.batch_id or session.batch_id)
    if batch is None:
        log.error("Batch not found", context={"batch_id": event.batch_id or session.batch_id})
        return None

    records = await _read_records(ctx, session.id, log)
    if not records:
        log.warning("No records found after retries, skipping")
        return None

    statuses = set(ATTENDANCE_STATUSES)
    if not institute.notify_for_present:
        statuses.discard("present")

    # Failed records only move on through retry_attendance_notification.
    to_notify = [
        record
        for record in records
        if record.status in statuses and record.notification_status == DeliveryStatus.PENDING
    ]
    log.info("Sending notifications", context={"to_notify": len(to_notify), "total_records": len(records)})
    if not to_notify:
        log.info("No notifications to send")
        return AttendanceSummary(session.id, len(records), 0, 0)

    occurred_at = session.date or session.submitted_at or event.submitted_at or ctx.clock()
    items = [
        (build_attendance_request(record, session, batch, institute, occurred_at), record)
        for record in to_notify
    ]
    dispatched = await ctx.orchestrator.dispatch_chunked(items)

    sent = sum(1 for record in dispatched if record.notification_status == DeliveryStatus.SENT)
    failed = len(dispatched) - sent
    AttendanceSessionRepository(ctx.db).update(
        session,
        notifications_sent=sent,
        notifications_failed=failed,
        notifications_processed_at=ctx.clock(),
    )
    log.info("Completed processing attendance", context={"sent": sent, "failed": failed})
    return AttendanceSummary(session.id, len(records), sent, failed)


async def retry_attendance_notification(
    ctx: TaskContext,
    caller: SessionClaims | None,
    institute_id: str | UUID,
    attendance_id: str | UUID,
    student_id: str | UUID,
) -> dict:
    """Manually retry one student's notification.

    Raises ``RetryLimitExceededError`` once the record has used all attempts.
    """
    institute_uuid = parse_uuid(institute_id, "institute_id")
    attendance_uuid = parse_uuid(attendance_id, "attendance_id")
    student_uuid = parse_uuid(student_id, "student_id")
    require_institute_access(ctx.db, caller, institute_uuid)

    record = AttendanceRecordRepository(ctx.db).get_for_student(attendance_uuid, student_uuid)
    if record is None or record.session.institute_id != institute_uuid:
        raise NotFoundError("Record not found")
    session = record.session

    institute = InstituteRepository(ctx.db).get(institute_uuid)
    if institute is None:
        raise NotFoundError("Institute not found")
    batch = BatchRepository(ctx.db).get_in_institute(institute_uuid, session.batch_id)
    if batch is None:
        raise NotFoundError("Batch not found")

    occurred_at = session.date or session.submitted_at
    request = build_attendance_request(record, session, batch, institute, occurred_at)
    await ctx.orchestrator.retry(request, record)
    bind_logger(logger, function="retry_attendance_notification", attendance_id=attendance_uuid).info(
        "Retry finished", context={"status": record.notification_status, "retry_count": record.retry_count}
    )
    return delivery_outcome(record)
