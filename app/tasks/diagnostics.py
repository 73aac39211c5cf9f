"""Test notification for checking a channel end to end."""
from __future__ import annotations

import logging

from app.auth.rate_limiter import RateLimiter
from app.core.errors import InvalidInputError, RateLimitedError, UnauthenticatedError
from app.core.logging import bind_logger
from app.core.security import SessionClaims
from app.normalization.phone_normalizer import is_valid_phone
from app.notification.channels import ChannelKind
from app.notification.renderer import TEST_MESSAGE
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest
from app.tasks.events import TaskContext

logger = logging.getLogger(__name__)


async def send_test_notification(
    ctx: TaskContext,
    caller: SessionClaims | None,
    phone: str | None,
    channel: str | None = None,
) -> dict:
    if caller is None:
        raise UnauthenticatedError("Must be authenticated")
    if not phone:
        raise InvalidInputError("Phone number required")
    if not is_valid_phone(phone, country_code=ctx.settings.default_country_code):
        raise InvalidInputError("Invalid phone number format")

    limiter = RateLimiter.for_test_notifications(ctx.db, ctx.settings)
    if not limiter.allow(caller.subject, ctx.clock()):
        raise RateLimitedError(
            f"Rate limit exceeded: maximum {limiter.limit} test notifications per hour"
        )

    kind = ChannelKind.RICH if channel == ChannelKind.RICH.value else ChannelKind.SMS
    request = NotificationRequest(
        kind=NotificationKind.TEST,
        recipient=phone,
        facts=MessageFacts(body=TEST_MESSAGE),
    )
    result = await ctx.orchestrator.deliver_via(request, kind)
    bind_logger(logger, function="send_test_notification", caller=caller.subject).info(
        "Test notification finished", context={"channel": kind.value, "success": result.success}
    )
    return {
        "success": result.success,
        "channel": result.channel.value if result.channel else kind.value,
        "provider": result.provider,
        "provider_message_id": result.provider_message_id,
        "error": result.error,
    }
