from __future__ import annotations

import asyncio
from datetime import timedelta

import jwt
import pytest

from app.auth.otp import OtpAuthenticator
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
from app.db.models import OtpChallenge, OtpLog, Parent
from app.normalization.phone_normalizer import phone_key
from tests.conftest import FIXED_NOW

PHONE = "+919876543210"


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock(FIXED_NOW)


@pytest.fixture()
def parent(db_session, world) -> Parent:
    parent = Parent(
        institute_id=world.institute.id,
        name="Rohit Mehta",
        phone=PHONE,
        status="pending",
        student_ids=[str(world.students[0].id)],
    )
    db_session.add(parent)
    db_session.flush()
    return parent


@pytest.fixture()
def codes(monkeypatch):
    issued = iter(["111111", "222222", "333333", "444444"])
    monkeypatch.setattr("app.auth.otp.generate_otp", lambda: next(issued))


@pytest.fixture()
def auth(db_session, orchestrator, settings, clock, codes) -> OtpAuthenticator:
    return OtpAuthenticator(db_session, orchestrator, settings, clock=clock)


def _challenge(db_session) -> OtpChallenge | None:
    return db_session.get(OtpChallenge, phone_key(PHONE))


# ===========================================================================
# Requesting a code
# ===========================================================================

class TestRequest:
    def test_code_sent_by_sms_and_only_digest_stored(self, auth, parent, db_session, channels):
        outcome = asyncio.run(auth.request_otp("98765 43210"))

        assert outcome.success is True
        assert outcome.expires_in == 600
        assert channels.rich.calls == []
        to, message = channels.sms.calls[0]
        assert to == PHONE
        assert "111111" in message.plain_body

        challenge = _challenge(db_session)
        assert challenge.request_attempts == 1
        assert challenge.verify_attempts == 0
        assert "111111" not in challenge.otp_hash
        log = db_session.query(OtpLog).one()
        assert log.channel == "sms"
        assert log.phone_key == phone_key(PHONE)

    def test_fourth_request_rejected_without_change(self, auth, parent, db_session, channels):
        for _ in range(3):
            asyncio.run(auth.request_otp(PHONE))
        before = _challenge(db_session).otp_hash

        with pytest.raises(RateLimitedError):
            asyncio.run(auth.request_otp(PHONE))

        challenge = _challenge(db_session)
        assert challenge.request_attempts == 3
        assert challenge.otp_hash == before
        assert len(channels.sms.calls) == 3

    def test_expired_challenge_does_not_count(self, auth, parent, db_session, clock):
        for _ in range(3):
            asyncio.run(auth.request_otp(PHONE))
        clock.advance(minutes=11)

        outcome = asyncio.run(auth.request_otp(PHONE))

        assert outcome.success is True
        assert _challenge(db_session).request_attempts == 1

    def test_new_code_replaces_previous(self, auth, parent):
        asyncio.run(auth.request_otp(PHONE))
        asyncio.run(auth.request_otp(PHONE))

        with pytest.raises(InvalidOtpError):
            auth.verify_otp(PHONE, "111111")
        assert auth.verify_otp(PHONE, "222222").token

    @pytest.mark.parametrize("phone, message", [(None, "Phone number is required"), ("12345", "Invalid phone number")])
    def test_invalid_phone(self, auth, phone, message):
        with pytest.raises(InvalidInputError, match=message):
            asyncio.run(auth.request_otp(phone))

    def test_unknown_parent(self, auth, world, db_session):
        with pytest.raises(NotFoundError):
            asyncio.run(auth.request_otp(PHONE))

    def test_inactive_parent(self, auth, parent, channels):
        parent.status = "inactive"

        with pytest.raises(UnauthorizedError):
            asyncio.run(auth.request_otp(PHONE))
        assert channels.sms.calls == []

    def test_provider_failure(self, auth, parent, channels, db_session):
        channels.sms.succeed = False

        with pytest.raises(ProviderError, match="Failed to send OTP"):
            asyncio.run(auth.request_otp(PHONE))
        assert db_session.query(OtpLog).count() == 0


# ===========================================================================
# Verifying a code
# ===========================================================================

class TestVerify:
    def test_success_issues_token_and_consumes_challenge(self, auth, parent, db_session, settings):
        asyncio.run(auth.request_otp(PHONE))

        verification = auth.verify_otp(PHONE, "111111")

        claims = jwt.decode(
            verification.token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options={"verify_exp": False},
        )
        assert claims["sub"] == str(parent.id)
        assert claims["institute_id"] == str(parent.institute_id)
        assert claims["is_parent"] is True
        assert verification.parent["phone"] == PHONE
        assert parent.status == "active"
        assert parent.last_login_at == FIXED_NOW
        assert _challenge(db_session) is None

        with pytest.raises(NotFoundError):
            auth.verify_otp(PHONE, "111111")

    def test_wrong_code_counts_attempts(self, auth, parent, db_session):
        asyncio.run(auth.request_otp(PHONE))

        for expected in range(1, 5):
            with pytest.raises(InvalidOtpError):
                auth.verify_otp(PHONE, "000000")
            assert _challenge(db_session).verify_attempts == expected

    def test_fifth_wrong_attempt_exhausts(self, auth, parent, db_session):
        asyncio.run(auth.request_otp(PHONE))
        for _ in range(4):
            with pytest.raises(InvalidOtpError):
                auth.verify_otp(PHONE, "000000")

        with pytest.raises(OtpExhaustedError):
            auth.verify_otp(PHONE, "000000")

        assert _challenge(db_session) is None
        # Even the right code is gone now.
        with pytest.raises(NotFoundError):
            auth.verify_otp(PHONE, "111111")

    def test_expired_code(self, auth, parent, db_session, clock):
        asyncio.run(auth.request_otp(PHONE))
        clock.advance(minutes=10)

        with pytest.raises(OtpExpiredError):
            auth.verify_otp(PHONE, "111111")
        assert _challenge(db_session) is None

    def test_missing_input(self, auth):
        with pytest.raises(InvalidInputError):
            auth.verify_otp(PHONE, "")

    def test_no_challenge(self, auth, parent):
        with pytest.raises(NotFoundError, match="No OTP found"):
            auth.verify_otp(PHONE, "111111")
