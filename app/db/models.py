from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text, func, text as sql_text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class DeliveryStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryStateMixin:
    """Per-recipient delivery record.

    Mutated only by ``DeliveryOrchestrator``.  ``retry_count`` never
    decreases; a ``failed`` record returns to ``pending`` only through an
    explicit retry.
    """

    notification_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DeliveryStatus.PENDING, server_default=sql_text("'pending'")
    )
    notification_channel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    notification_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    notification_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Institute(Base):
    __tablename__ = "institutes"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=sql_text("true")
    )
    notify_for_present: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=sql_text("true")
    )
    absent_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    late_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    present_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    batches: Mapped[list[Batch]] = relationship(back_populates="institute")


class Batch(Base):
    __tablename__ = "batches"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    institute: Mapped[Institute] = relationship(back_populates="batches")
    students: Mapped[list[Student]] = relationship(back_populates="batch")


class Student(Base):
    __tablename__ = "students"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    batch_id: Mapped[UUID] = mapped_column(ForeignKey("batches.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    parent_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    batch: Mapped[Batch] = relationship(back_populates="students")


class Teacher(Base):
    __tablename__ = "teachers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="teacher", server_default=sql_text("'teacher'"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Parent(Base):
    __tablename__ = "parents"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default=sql_text("'pending'"))
    student_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AttendanceSession(Base):
    """One submitted attendance sheet for a batch on a date."""

    __tablename__ = "attendance_sessions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    batch_id: Mapped[UUID] = mapped_column(ForeignKey("batches.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    notifications_sent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notifications_failed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notifications_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    records: Mapped[list[AttendanceRecord]] = relationship(back_populates="session")


class AttendanceRecord(DeliveryStateMixin, Base):
    __tablename__ = "attendance_records"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    attendance_id: Mapped[UUID] = mapped_column(
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[UUID] = mapped_column(nullable=False)
    student_name: Mapped[str] = mapped_column(String(256), nullable=False)
    parent_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    parent_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    session: Mapped[AttendanceSession] = relationship(back_populates="records")


class TeacherInvitation(DeliveryStateMixin, Base):
    __tablename__ = "teacher_invitations"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    institute_name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="teacher", server_default=sql_text("'teacher'"))
    invited_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    invited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=sql_text("false"))


class FeeInvoice(Base):
    __tablename__ = "fee_invoices"
    __table_args__ = (Index("ix_fee_invoices_institute_due", "institute_id", "status", "due_date"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[UUID] = mapped_column(nullable=False)
    batch_id: Mapped[UUID] = mapped_column(nullable=False)
    final_amount: Mapped[float] = mapped_column(Float, nullable=False)
    paid_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=sql_text("0"))
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default=sql_text("'pending'"))

    @property
    def balance_due(self) -> float:
        return self.final_amount - self.paid_amount


class PaymentReminder(Base):
    """Append-only audit entry for every reminder that reached a provider."""

    __tablename__ = "payment_reminders"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    student_id: Mapped[UUID] = mapped_column(nullable=False)
    student_name: Mapped[str] = mapped_column(String(256), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=sql_text("false"))
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    institute_id: Mapped[UUID] = mapped_column(ForeignKey("institutes.id", ondelete="CASCADE"), nullable=False)
    batch_id: Mapped[UUID | None] = mapped_column(nullable=True)
    parent_id: Mapped[UUID] = mapped_column(ForeignKey("parents.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default=sql_text("'pending'"))
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class LeaveNotification(Base):
    __tablename__ = "leave_notifications"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    parent_id: Mapped[UUID] = mapped_column(nullable=False)
    student_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    provider_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=sql_text("false"))
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OtpChallenge(Base):
    """Live one-time-code challenge, keyed by the SHA-256 of the phone.

    Only the code's digest is stored.  At most one row per phone key.
    """

    __tablename__ = "otp_challenges"

    phone_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    otp_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    request_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    verify_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OtpLog(Base):
    __tablename__ = "otp_logs"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    phone_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False, default="parent_login")
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RateLimitEntry(Base):
    __tablename__ = "rate_limit_entries"
    __table_args__ = (Index("ix_rate_limit_entries_key_action_created", "subject_key", "action", "created_at"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    subject_key: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
