"""Notification request value objects.

A ``NotificationRequest`` is created by an event handler or entry point
and consumed once by ``DeliveryOrchestrator``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from uuid import uuid4


class NotificationKind(StrEnum):
    ATTENDANCE = "attendance"
    INVITATION = "invitation"
    LEAVE_DECISION = "leave-decision"
    PAYMENT_REMINDER = "payment-reminder"
    TEST = "test"
    OTP = "otp"


# Kinds that never go over the rich channel.
SMS_ONLY_KINDS: frozenset[NotificationKind] = frozenset({
    NotificationKind.INVITATION,
    NotificationKind.OTP,
})


@dataclass(frozen=True)
class MessageFacts:
    """Everything a renderer may substitute into a message."""

    student_name: str = ""
    batch_name: str = ""
    institute_name: str = ""
    occurred_at: datetime | None = None
    status: str | None = None
    amount: float | None = None
    days_overdue: int | None = None
    role: str | None = None
    period_end: datetime | None = None
    review_notes: str | None = None
    code: str | None = field(default=None, repr=False)
    body: str | None = None
    template: str | None = None
    is_reminder: bool = False


@dataclass(frozen=True)
class NotificationRequest:
    kind: NotificationKind
    recipient: str | None
    facts: MessageFacts
    correlation_id: str = field(default_factory=lambda: uuid4().hex)
