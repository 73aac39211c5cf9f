from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return self.db.execute(stmt).scalars().all()

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity

    def delete(self, entity: ModelT) -> None:
        self.db.delete(entity)
        self.db.flush()


class InstituteRepository(BaseRepository[models.Institute]):
    model = models.Institute

    def page_after(self, last_id: UUID | None, limit: int) -> list[models.Institute]:
        """Keyset page of institutes ordered by id, starting after *last_id*."""
        stmt = select(models.Institute).order_by(models.Institute.id).limit(limit)
        if last_id is not None:
            stmt = stmt.where(models.Institute.id > last_id)
        return list(self.db.execute(stmt).scalars().all())


class BatchRepository(BaseRepository[models.Batch]):
    model = models.Batch

    def get_in_institute(self, institute_id: UUID, batch_id: UUID) -> models.Batch | None:
        batch = self.get(batch_id)
        if batch is None or batch.institute_id != institute_id:
            return None
        return batch


class StudentRepository(BaseRepository[models.Student]):
    model = models.Student

    def get_in_batch(self, institute_id: UUID, batch_id: UUID, student_id: UUID) -> models.Student | None:
        student = self.get(student_id)
        if student is None or student.institute_id != institute_id or student.batch_id != batch_id:
            return None
        return student


class TeacherRepository(BaseRepository[models.Teacher]):
    model = models.Teacher


class ParentRepository(BaseRepository[models.Parent]):
    model = models.Parent

    def find_by_phone(self, phone: str) -> models.Parent | None:
        stmt = select(models.Parent).where(models.Parent.phone == phone).limit(1)
        return self.db.execute(stmt).scalars().first()


class AttendanceSessionRepository(BaseRepository[models.AttendanceSession]):
    model = models.AttendanceSession


class AttendanceRecordRepository(BaseRepository[models.AttendanceRecord]):
    model = models.AttendanceRecord

    def for_session(self, attendance_id: UUID) -> list[models.AttendanceRecord]:
        stmt = (
            select(models.AttendanceRecord)
            .where(models.AttendanceRecord.attendance_id == attendance_id)
            .order_by(models.AttendanceRecord.student_name.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_for_student(self, attendance_id: UUID, student_id: UUID) -> models.AttendanceRecord | None:
        stmt = select(models.AttendanceRecord).where(
            models.AttendanceRecord.attendance_id == attendance_id,
            models.AttendanceRecord.student_id == student_id,
        )
        return self.db.execute(stmt).scalars().first()


class TeacherInvitationRepository(BaseRepository[models.TeacherInvitation]):
    model = models.TeacherInvitation


class FeeInvoiceRepository(BaseRepository[models.FeeInvoice]):
    model = models.FeeInvoice

    def overdue_for_institute(
        self,
        institute_id: UUID,
        now: datetime,
        statuses: Sequence[str] = ("pending", "partial"),
    ) -> list[models.FeeInvoice]:
        stmt = (
            select(models.FeeInvoice)
            .where(
                models.FeeInvoice.institute_id == institute_id,
                models.FeeInvoice.due_date < now,
                models.FeeInvoice.status.in_(statuses),
            )
            .order_by(models.FeeInvoice.due_date.asc(), models.FeeInvoice.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class PaymentReminderRepository(BaseRepository[models.PaymentReminder]):
    model = models.PaymentReminder

    def for_invoice(self, invoice_id: UUID) -> list[models.PaymentReminder]:
        stmt = (
            select(models.PaymentReminder)
            .where(models.PaymentReminder.invoice_id == invoice_id)
            .order_by(models.PaymentReminder.sent_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class LeaveRequestRepository(BaseRepository[models.LeaveRequest]):
    model = models.LeaveRequest


class LeaveNotificationRepository(BaseRepository[models.LeaveNotification]):
    model = models.LeaveNotification


class OtpChallengeRepository(BaseRepository[models.OtpChallenge]):
    model = models.OtpChallenge


class OtpLogRepository(BaseRepository[models.OtpLog]):
    model = models.OtpLog


class RateLimitEntryRepository(BaseRepository[models.RateLimitEntry]):
    model = models.RateLimitEntry

    def count_in_window(self, subject_key: str, action: str, window_start: datetime, window_end: datetime) -> int:
        stmt = select(func.count(models.RateLimitEntry.id)).where(
            models.RateLimitEntry.subject_key == subject_key,
            models.RateLimitEntry.action == action,
            models.RateLimitEntry.created_at >= window_start,
            models.RateLimitEntry.created_at < window_end,
        )
        return int(self.db.execute(stmt).scalar_one())
