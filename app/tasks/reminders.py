"""Payment reminders — daily batch job and the manual per-invoice reminder.

The batch job is sequential and time-budgeted.  Institutes are read in
keyset pages ordered by id; the elapsed time is checked before every page
fetch and before every institute, and the job stops cleanly once the
budget is spent.  Nothing is persisted to resume from: the next run
rescans from the start, and since balances are re-checked an invoice paid
in the meantime is skipped.

Sends are committed per institute so an early stop keeps every reminder
already sent.
"""
from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.auth.access import parse_uuid, require_institute_access
from app.core.clock import as_utc, utcnow
from app.core.errors import FailedPreconditionError, InvalidInputError, NotFoundError
from app.core.logging import bind_logger
from app.core.security import SessionClaims
from app.core.settings import Settings
from app.db.models import FeeInvoice, Institute, PaymentReminder, Student
from app.db.repositories import (
    BatchRepository,
    FeeInvoiceRepository,
    InstituteRepository,
    PaymentReminderRepository,
    StudentRepository,
)
from app.normalization.phone_normalizer import is_valid_phone
from app.notification.channels import SendResult
from app.notification.orchestrator import DeliveryOrchestrator
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest
from app.tasks.events import TaskContext

logger = logging.getLogger(__name__)

UNKNOWN_BATCH = "Unknown Batch"
REMINDER_STATUSES = ("pending", "partial")
_SECONDS_PER_DAY = 86400


@dataclass
class ReminderJobCursor:
    """In-memory progress of one run; never persisted."""

    last_institute_id: UUID | None = None
    elapsed_s: float = 0.0
    institutes: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    stopped_early: bool = False

    def summary(self) -> dict:
        data = asdict(self)
        data["last_institute_id"] = str(self.last_institute_id) if self.last_institute_id else None
        return data


def days_overdue(due_date: datetime, now: datetime) -> int:
    return math.floor((now - as_utc(due_date)).total_seconds() / _SECONDS_PER_DAY)


def _batch_name(db: Session, institute_id: UUID, batch_id: UUID) -> str:
    batch = BatchRepository(db).get_in_institute(institute_id, batch_id)
    return (batch.name if batch is not None else None) or UNKNOWN_BATCH


def _find_student(db: Session, invoice: FeeInvoice) -> Student | None:
    return StudentRepository(db).get_in_batch(invoice.institute_id, invoice.batch_id, invoice.student_id)


def build_reminder_request(
    invoice: FeeInvoice, student: Student, institute: Institute, batch_name: str, overdue_days: int
) -> NotificationRequest:
    return NotificationRequest(
        kind=NotificationKind.PAYMENT_REMINDER,
        recipient=student.parent_phone,
        facts=MessageFacts(
            student_name=student.name,
            batch_name=batch_name,
            institute_name=institute.name,
            amount=invoice.balance_due,
            days_overdue=overdue_days,
        ),
        correlation_id=str(invoice.id),
    )


def _record_reminder(
    db: Session,
    invoice: FeeInvoice,
    student: Student,
    overdue_days: int,
    result: SendResult,
    sent_at: datetime,
    *,
    manual: bool = False,
) -> PaymentReminder:
    return PaymentReminderRepository(db).create(
        institute_id=invoice.institute_id,
        invoice_id=invoice.id,
        student_id=invoice.student_id,
        student_name=student.name,
        amount=invoice.balance_due,
        days_overdue=overdue_days,
        channel=result.channel.value if result.channel else "sms",
        provider=result.provider,
        provider_message_id=result.provider_message_id,
        manual=manual,
        sent_at=sent_at,
    )


class ReminderBatchJob:
    def __init__(
        self,
        db: Session,
        orchestrator: DeliveryOrchestrator,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.orchestrator = orchestrator
        self.page_size = settings.reminder_page_size
        self.budget_s = settings.reminder_time_budget_s
        self.country_code = settings.default_country_code
        self._clock = clock
        self._monotonic = monotonic
        self.log = bind_logger(logger, function="payment_reminders")

    def _over_budget(self, cursor: ReminderJobCursor, started: float) -> bool:
        cursor.elapsed_s = self._monotonic() - started
        return cursor.elapsed_s > self.budget_s

    async def run(self) -> ReminderJobCursor:
        self.log.info("Starting payment reminder job")
        started = self._monotonic()
        now = self._clock()
        cursor = ReminderJobCursor()
        institutes = InstituteRepository(self.db)

        while True:
            if self._over_budget(cursor, started):
                cursor.stopped_early = True
                self.log.warning("Time budget reached, stopping", context={"sent": cursor.sent, "failed": cursor.failed})
                break

            page = institutes.page_after(cursor.last_institute_id, self.page_size)
            if not page:
                break

            for institute in page:
                if self._over_budget(cursor, started):
                    cursor.stopped_early = True
                    break
                await self._process_institute(institute, now, cursor)
                cursor.last_institute_id = institute.id
                self.db.commit()

            if cursor.stopped_early:
                self.log.warning("Time budget reached, stopping", context={"sent": cursor.sent, "failed": cursor.failed})
                break
            if len(page) < self.page_size:
                break

        self.log.info("Payment reminder job complete", context=cursor.summary())
        return cursor

    async def _process_institute(self, institute: Institute, now: datetime, cursor: ReminderJobCursor) -> None:
        cursor.institutes += 1
        if not institute.notifications_enabled:
            return

        invoices = FeeInvoiceRepository(self.db).overdue_for_institute(institute.id, now, REMINDER_STATUSES)
        for invoice in invoices:
            log_context = {"institute_id": institute.id, "invoice_id": invoice.id}
            if invoice.balance_due <= 0:
                cursor.skipped += 1
                continue

            student = _find_student(self.db, invoice)
            if student is None:
                cursor.skipped += 1
                continue
            if not student.parent_phone or not is_valid_phone(student.parent_phone, country_code=self.country_code):
                self.log.warning("Skipping invalid phone for payment reminder", context=log_context)
                cursor.skipped += 1
                continue

            overdue_days = days_overdue(invoice.due_date, now)
            request = build_reminder_request(
                invoice, student, institute, _batch_name(self.db, institute.id, invoice.batch_id), overdue_days
            )
            try:
                result = await self.orchestrator.deliver(request)
            except Exception:
                cursor.failed += 1
                self.log.exception("Exception sending payment reminder", context=log_context)
                continue

            if result.success:
                cursor.sent += 1
                _record_reminder(self.db, invoice, student, overdue_days, result, self._clock())
            else:
                cursor.failed += 1
                self.log.error("Failed to send payment reminder", context={**log_context, "error": result.error})


async def send_payment_reminder_for_invoice(
    ctx: TaskContext,
    caller: SessionClaims | None,
    institute_id: str | UUID | None,
    invoice_id: str | UUID | None,
) -> dict:
    if not institute_id or not invoice_id:
        raise InvalidInputError("Institute ID and Invoice ID are required")
    institute_uuid = parse_uuid(institute_id, "institute_id")
    invoice_uuid = parse_uuid(invoice_id, "invoice_id")
    require_institute_access(ctx.db, caller, institute_uuid)

    institute = InstituteRepository(ctx.db).get(institute_uuid)
    if institute is None:
        raise NotFoundError("Institute not found")
    invoice = FeeInvoiceRepository(ctx.db).get(invoice_uuid)
    if invoice is None or invoice.institute_id != institute_uuid:
        raise NotFoundError("Invoice not found")
    if invoice.balance_due <= 0:
        raise FailedPreconditionError("Invoice is already paid")

    student = _find_student(ctx.db, invoice)
    if student is None:
        raise NotFoundError("Student not found")
    if not student.parent_phone or not is_valid_phone(
        student.parent_phone, country_code=ctx.settings.default_country_code
    ):
        raise FailedPreconditionError("Student has no valid parent phone number")

    now = ctx.clock()
    # Not yet due renders the "due soon" wording.
    overdue_days = max(0, days_overdue(invoice.due_date, now))
    request = build_reminder_request(
        invoice, student, institute, _batch_name(ctx.db, institute_uuid, invoice.batch_id), overdue_days
    )
    result = await ctx.orchestrator.deliver(request)
    log = bind_logger(logger, function="send_payment_reminder_for_invoice", invoice_id=invoice.id)
    if not result.success:
        log.error("Failed to send reminder", context={"error": result.error})
        return {"success": False, "error": result.error or "Failed to send reminder"}

    _record_reminder(ctx.db, invoice, student, overdue_days, result, now, manual=True)
    log.info("Manual reminder sent", context={"channel": result.channel})
    return {
        "success": True,
        "provider_message_id": result.provider_message_id,
        "channel": result.channel.value if result.channel else None,
    }
