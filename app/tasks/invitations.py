"""Teacher invitation SMS — on creation and on manual resend."""
from __future__ import annotations

import logging
from uuid import UUID

from app.auth.access import parse_uuid, require_institute_access
from app.core.errors import FailedPreconditionError, NotFoundError
from app.core.logging import bind_logger
from app.core.security import SessionClaims
from app.db.models import DeliveryStatus, TeacherInvitation
from app.db.repositories import TeacherInvitationRepository
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest
from app.tasks.events import InvitationCreated, TaskContext

logger = logging.getLogger(__name__)


def build_invitation_request(invitation: TeacherInvitation, *, is_reminder: bool = False) -> NotificationRequest:
    return NotificationRequest(
        kind=NotificationKind.INVITATION,
        recipient=invitation.phone,
        facts=MessageFacts(
            institute_name=invitation.institute_name,
            role=invitation.role,
            is_reminder=is_reminder,
        ),
        correlation_id=str(invitation.id),
    )


async def handle_invitation_created(ctx: TaskContext, event: InvitationCreated) -> TeacherInvitation | None:
    log = bind_logger(logger, function="handle_invitation_created", invitation_id=event.invitation_id)
    invitation = TeacherInvitationRepository(ctx.db).get(event.invitation_id)
    if invitation is None:
        log.error("Invitation not found")
        return None

    log.info("Processing teacher invitation", context={"institute_id": invitation.institute_id})
    await ctx.orchestrator.dispatch(build_invitation_request(invitation), invitation)
    if invitation.notification_status != DeliveryStatus.SENT:
        log.warning("Invitation SMS failed", context={"error": invitation.notification_error})
    return invitation


async def resend_invitation(
    ctx: TaskContext, caller: SessionClaims | None, invitation_id: str | UUID
) -> dict:
    """Resend with reminder wording; shares the attempt cap with the first send."""
    invitation_uuid = parse_uuid(invitation_id, "invitation_id")
    invitation = TeacherInvitationRepository(ctx.db).get(invitation_uuid)
    if invitation is None:
        raise NotFoundError("Invitation not found")
    require_institute_access(ctx.db, caller, invitation.institute_id)
    if invitation.is_accepted:
        raise FailedPreconditionError("Invitation already accepted")

    await ctx.orchestrator.retry(build_invitation_request(invitation, is_reminder=True), invitation)
    return {
        "success": invitation.notification_status == DeliveryStatus.SENT,
        "provider_message_id": invitation.provider_message_id,
        "channel": invitation.notification_channel,
        "error": invitation.notification_error,
    }
