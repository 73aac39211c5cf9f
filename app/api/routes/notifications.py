"""Attendance notification retry and test notifications."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_caller, get_task_context, run_task
from app.core.security import SessionClaims
from app.tasks.attendance import retry_attendance_notification
from app.tasks.diagnostics import send_test_notification
from app.tasks.events import TaskContext

router = APIRouter(prefix="/notifications", tags=["notifications"])


class RetryBody(BaseModel):
    institute_id: str | None = None
    attendance_id: str | None = None
    student_id: str | None = None


class TestNotificationBody(BaseModel):
    phone_number: str | None = None
    channel: str | None = None


@router.post("/retry", summary="Retry one student's attendance notification")
def retry_notification(
    body: RetryBody,
    ctx: TaskContext = Depends(get_task_context),
    caller: SessionClaims = Depends(get_caller),
):
    return run_task(
        retry_attendance_notification(ctx, caller, body.institute_id, body.attendance_id, body.student_id)
    )


@router.post("/test", summary="Send a rate-limited test notification")
def test_notification(
    body: TestNotificationBody,
    ctx: TaskContext = Depends(get_task_context),
    caller: SessionClaims = Depends(get_caller),
):
    return run_task(send_test_notification(ctx, caller, body.phone_number, body.channel))
