"""Provider delivery-status callbacks.

Both receivers only authenticate and log the status keyed by provider
message id.  200 on success, 403 on a bad signature or key, 400 on a
malformed payload; any other method gets 405 from the router.
"""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from twilio.request_validator import RequestValidator

from app.core.logging import bind_logger
from app.core.security import digests_match
from app.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _mask_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    digits = "".join(c for c in str(phone) if c.isdigit())
    return f"***-***-{digits[-4:]}" if len(digits) >= 4 else "***-***-****"


def _public_url(request: Request, settings: Settings) -> str:
    """URL Twilio signed; behind a proxy the configured base URL wins."""
    if settings.public_base_url:
        base = settings.public_base_url.rstrip("/")
        query = f"?{request.url.query}" if request.url.query else ""
        return f"{base}{request.url.path}{query}"
    return str(request.url)


@router.post("/twilio", summary="Twilio message status callback")
async def twilio_status(request: Request, settings: Settings = Depends(get_settings)):
    log = bind_logger(logger, webhook_type="twilio")
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if settings.twilio_auth_token:
        validator = RequestValidator(settings.twilio_auth_token)
        signature = request.headers.get("X-Twilio-Signature", "")
        if not validator.validate(_public_url(request, settings), params, signature):
            log.warning("Invalid Twilio webhook signature")
            return PlainTextResponse("Forbidden", status_code=403)

    message_sid = params.get("MessageSid")
    status = params.get("MessageStatus")
    if not message_sid or not status:
        return PlainTextResponse("Bad request", status_code=400)

    log.info(
        "Twilio webhook received",
        context={"message_id": message_sid, "status": status, "error_code": params.get("ErrorCode")},
    )
    return PlainTextResponse("OK")


@router.post("/msg91", summary="MSG91 delivery report callback")
async def msg91_status(request: Request, settings: Settings = Depends(get_settings)):
    log = bind_logger(logger, webhook_type="msg91")

    if settings.msg91_auth_key:
        supplied = request.headers.get("authkey", "")
        if not digests_match(supplied, settings.msg91_auth_key):
            log.warning("Invalid MSG91 webhook auth key")
            return PlainTextResponse("Forbidden", status_code=403)

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return PlainTextResponse("Bad request", status_code=400)
    if not isinstance(payload, dict) or not payload.get("requestId"):
        return PlainTextResponse("Bad request", status_code=400)

    log.info(
        "MSG91 webhook received",
        context={
            "message_id": payload["requestId"],
            "status": payload.get("status"),
            "mobile": _mask_phone(payload.get("mobile")),
        },
    )
    return PlainTextResponse("OK")
