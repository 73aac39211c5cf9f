from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_caller, get_task_context, run_task
from app.core.security import SessionClaims
from app.tasks.events import TaskContext
from app.tasks.invitations import resend_invitation

router = APIRouter(prefix="/invitations", tags=["invitations"])


@router.post("/{invitation_id}/resend", summary="Resend a teacher invitation SMS")
def resend(
    invitation_id: str,
    ctx: TaskContext = Depends(get_task_context),
    caller: SessionClaims = Depends(get_caller),
):
    return run_task(resend_invitation(ctx, caller, invitation_id))
