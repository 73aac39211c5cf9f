"""Parent OTP login.  The only entry points that need no session token."""
from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_task_context, run_task
from app.auth.otp import OtpAuthenticator
from app.tasks.events import TaskContext

router = APIRouter(prefix="/auth/otp", tags=["auth"])


class OtpRequestBody(BaseModel):
    phone: str | None = None


class OtpVerifyBody(BaseModel):
    phone: str | None = None
    otp: str | None = None


def _authenticator(ctx: TaskContext) -> OtpAuthenticator:
    return OtpAuthenticator(ctx.db, ctx.orchestrator, ctx.settings)


@router.post("/request", summary="Send a login code to a parent's phone")
def request_otp(body: OtpRequestBody, ctx: TaskContext = Depends(get_task_context)):
    outcome = run_task(_authenticator(ctx).request_otp(body.phone))
    return asdict(outcome)


@router.post("/verify", summary="Verify a login code and issue a session token")
def verify_otp(body: OtpVerifyBody, ctx: TaskContext = Depends(get_task_context)):
    verification = _authenticator(ctx).verify_otp(body.phone, body.otp)
    return {"success": True, "token": verification.token, "parent": verification.parent}
