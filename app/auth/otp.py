"""Parent login by one-time code.

Per phone key the challenge moves ``none → challenged → verified |
expired | exhausted``.  Only the SHA-256 of the code is stored, salted
with the phone key; the plaintext code exists only in the outgoing SMS.

The attempt caps carry the security, not the hash cost: at most 3 codes
are issued per live challenge and each accepts at most 5 guesses.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.errors import (
    InvalidInputError,
    InvalidOtpError,
    NotFoundError,
    OtpExhaustedError,
    OtpExpiredError,
    ProviderError,
    RateLimitedError,
    UnauthorizedError,
)
from app.core.logging import bind_logger
from app.core.security import SessionClaims, create_session_token, digests_match, generate_otp, hash_with_salt
from app.core.settings import Settings
from app.db.models import OtpChallenge, Parent
from app.db.repositories import OtpChallengeRepository, OtpLogRepository, ParentRepository
from app.normalization.phone_normalizer import is_valid_phone, normalize_phone, phone_key
from app.notification.orchestrator import DeliveryOrchestrator
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest

logger = logging.getLogger(__name__)

LOGIN_PURPOSE = "parent_login"
_LOGIN_STATUSES = frozenset({"active", "pending"})


@dataclass(frozen=True)
class OtpRequestOutcome:
    success: bool
    message: str
    expires_in: int


@dataclass(frozen=True)
class OtpVerification:
    token: str
    parent: dict[str, Any] = field(default_factory=dict)


def _serialize_parent(parent: Parent) -> dict[str, Any]:
    return {
        "id": str(parent.id),
        "phone": parent.phone,
        "name": parent.name,
        "institute_id": str(parent.institute_id),
        "student_ids": list(parent.student_ids or []),
    }


class OtpAuthenticator:
    def __init__(
        self,
        db: Session,
        orchestrator: DeliveryOrchestrator,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.orchestrator = orchestrator
        self.settings = settings
        self.challenges = OtpChallengeRepository(db)
        self.logs = OtpLogRepository(db)
        self.parents = ParentRepository(db)
        self._clock = clock

    # -- helpers --------------------------------------------------------------

    def _normalize(self, phone: str | None) -> str:
        if not phone:
            raise InvalidInputError("Phone number is required")
        if not is_valid_phone(phone, country_code=self.settings.default_country_code):
            raise InvalidInputError("Invalid phone number")
        return normalize_phone(phone, country_code=self.settings.default_country_code)

    def _expired(self, challenge: OtpChallenge, now: datetime) -> bool:
        return now >= as_utc(challenge.expires_at)

    def _purge(self, challenge: OtpChallenge) -> None:
        self.challenges.delete(challenge)

    # -- none → challenged ----------------------------------------------------

    async def request_otp(self, phone: str | None) -> OtpRequestOutcome:
        normalized = self._normalize(phone)
        key = phone_key(normalized)
        log = bind_logger(logger, function="request_otp", phone_key=key[:12])
        now = self._clock()

        challenge = self.challenges.get(key)
        if challenge is not None and self._expired(challenge, now):
            # An expired challenge no longer counts against the request cap.
            self._purge(challenge)
            challenge = None
        if challenge is not None and challenge.request_attempts >= self.settings.otp_max_requests:
            log.warning("OTP request cap reached")
            raise RateLimitedError("Too many OTP requests. Please try again later.")

        parent = self.parents.find_by_phone(normalized)
        if parent is None:
            raise NotFoundError("No parent account found with this phone number")
        if parent.status not in _LOGIN_STATUSES:
            raise UnauthorizedError("Your account is inactive. Please contact your institute.")

        code = generate_otp()
        ttl = timedelta(minutes=self.settings.otp_ttl_minutes)
        attempts = (challenge.request_attempts if challenge is not None else 0) + 1
        if challenge is None:
            challenge = self.challenges.create(
                phone_key=key,
                otp_hash=hash_with_salt(code, key),
                expires_at=now + ttl,
                request_attempts=attempts,
                verify_attempts=0,
                created_at=now,
            )
        else:
            # A new code overwrites the live challenge.
            self.challenges.update(
                challenge,
                otp_hash=hash_with_salt(code, key),
                expires_at=now + ttl,
                request_attempts=attempts,
                verify_attempts=0,
                created_at=now,
            )

        request = NotificationRequest(
            kind=NotificationKind.OTP,
            recipient=normalized,
            facts=MessageFacts(code=code),
        )
        result = await self.orchestrator.deliver(request)
        if not result.success:
            log.error("OTP send failed", context={"correlation_id": request.correlation_id})
            raise ProviderError("Failed to send OTP. Please try again.")

        self.logs.create(
            phone_key=key,
            purpose=LOGIN_PURPOSE,
            channel=result.channel.value if result.channel else "sms",
            provider_message_id=result.provider_message_id,
            sent_at=now,
        )
        log.info("OTP sent", context={"request_attempts": attempts})
        return OtpRequestOutcome(
            success=True,
            message="OTP sent successfully",
            expires_in=int(ttl.total_seconds()),
        )

    # -- challenged → verified | expired | exhausted --------------------------

    def verify_otp(self, phone: str | None, code: str | None) -> OtpVerification:
        if not phone or not code:
            raise InvalidInputError("Phone number and OTP are required")
        normalized = self._normalize(phone)
        key = phone_key(normalized)
        log = bind_logger(logger, function="verify_otp", phone_key=key[:12])
        now = self._clock()

        challenge = self.challenges.get(key)
        if challenge is None:
            raise NotFoundError("No OTP found. Please request a new one.")

        if self._expired(challenge, now):
            self._purge(challenge)
            raise OtpExpiredError("OTP has expired. Please request a new one.")

        max_attempts = self.settings.otp_max_verify_attempts
        if challenge.verify_attempts >= max_attempts:
            self._purge(challenge)
            raise OtpExhaustedError("Too many incorrect attempts. Please request a new OTP.")

        if not digests_match(challenge.otp_hash, hash_with_salt(code.strip(), key)):
            attempts = challenge.verify_attempts + 1
            if attempts >= max_attempts:
                log.warning("OTP exhausted by incorrect attempts")
                self._purge(challenge)
                raise OtpExhaustedError("Too many incorrect attempts. Please request a new OTP.")
            self.challenges.update(challenge, verify_attempts=attempts)
            raise InvalidOtpError("Invalid OTP. Please try again.")

        # Single use.
        self._purge(challenge)

        parent = self.parents.find_by_phone(normalized)
        if parent is None:
            raise NotFoundError("Parent account not found")
        self.parents.update(parent, last_login_at=now, status="active")

        token = create_session_token(
            SessionClaims(subject=str(parent.id), institute_id=str(parent.institute_id), is_parent=True),
            self.settings,
            now=now,
        )
        log.info("Parent verified", context={"parent_id": parent.id})
        return OtpVerification(token=token, parent=_serialize_parent(parent))
