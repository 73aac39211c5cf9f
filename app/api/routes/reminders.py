from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_caller, get_task_context, run_task
from app.core.security import SessionClaims
from app.tasks.events import TaskContext
from app.tasks.reminders import send_payment_reminder_for_invoice

router = APIRouter(prefix="/reminders", tags=["reminders"])


class InvoiceReminderBody(BaseModel):
    institute_id: str | None = None


@router.post("/invoices/{invoice_id}", summary="Send a payment reminder for one invoice")
def remind_invoice(
    invoice_id: str,
    body: InvoiceReminderBody,
    ctx: TaskContext = Depends(get_task_context),
    caller: SessionClaims = Depends(get_caller),
):
    return run_task(send_payment_reminder_for_invoice(ctx, caller, body.institute_id, invoice_id))
