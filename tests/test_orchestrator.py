from __future__ import annotations

import asyncio

import pytest

from app.core.errors import RetryLimitExceededError
from app.db.models import AttendanceRecord, DeliveryStatus
from app.notification.channels import ChannelKind
from app.notification.orchestrator import INVALID_RECIPIENT, DeliveryOrchestrator
from app.notification.renderer import MessageRenderer
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest
from tests.conftest import FIXED_NOW, FakeChannel, RecordingSleep


def _request(phone="9876543210", kind=NotificationKind.ATTENDANCE, **facts) -> NotificationRequest:
    values = {
        "student_name": "Aarav Mehta",
        "batch_name": "Class 10 Maths",
        "institute_name": "Sunrise Tuitions",
        "occurred_at": FIXED_NOW,
        "status": "absent",
        "code": "123456" if kind == NotificationKind.OTP else None,
    }
    values.update(facts)
    return NotificationRequest(kind, phone, MessageFacts(**values), correlation_id="corr-1")


def _record(**overrides) -> AttendanceRecord:
    values = {
        "student_name": "Aarav Mehta",
        "parent_phone": "9876543210",
        "status": "absent",
        "notification_status": DeliveryStatus.PENDING,
        "retry_count": 0,
    }
    values.update(overrides)
    return AttendanceRecord(**values)


def _orchestrator(settings, *channels, **kwargs) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(
        list(channels), MessageRenderer.from_settings(settings), clock=lambda: FIXED_NOW, **kwargs
    )


# ===========================================================================
# Cascade
# ===========================================================================

class TestDispatch:
    def test_primary_success(self, orchestrator, channels):
        record = asyncio.run(orchestrator.dispatch(_request(), _record()))

        assert record.notification_status == DeliveryStatus.SENT
        assert record.notification_channel == "whatsapp"
        assert record.notification_provider == "twilio"
        assert record.provider_message_id == "twilio-1"
        assert record.notified_at == FIXED_NOW
        assert record.retry_count == 0
        assert channels.sms.calls == []
        assert channels.rich.calls[0][0] == "+919876543210"

    def test_rich_failure_falls_back_to_sms(self, orchestrator, channels):
        channels.rich.succeed = False

        record = asyncio.run(orchestrator.dispatch(_request(), _record()))

        assert record.notification_status == DeliveryStatus.SENT
        assert record.notification_channel == "sms"
        assert record.notification_provider == "msg91"
        assert record.notification_error is None
        assert record.retry_count == 0
        assert len(channels.rich.calls) == 1
        assert len(channels.sms.calls) == 1

    def test_both_channels_fail(self, orchestrator, channels):
        channels.rich.succeed = False
        channels.sms.succeed = False
        channels.sms.error = "DLT template rejected"

        record = asyncio.run(orchestrator.dispatch(_request(), _record()))

        assert record.notification_status == DeliveryStatus.FAILED
        assert record.retry_count == 1
        assert record.notified_at is None
        assert record.notification_error == (
            "whatsapp/twilio: provider down; sms/msg91: DLT template rejected"
        )

    def test_secondary_sms_tried_after_primary_sms(self, settings):
        rich = FakeChannel("twilio", ChannelKind.RICH, succeed=False)
        msg91 = FakeChannel("msg91", ChannelKind.SMS, succeed=False)
        twilio_sms = FakeChannel("twilio", ChannelKind.SMS)

        record = asyncio.run(_orchestrator(settings, rich, msg91, twilio_sms).dispatch(_request(), _record()))

        assert record.notification_status == DeliveryStatus.SENT
        assert record.notification_provider == "twilio"
        assert record.notification_channel == "sms"

    def test_sms_primary_has_no_fallback(self, settings):
        sms = FakeChannel("msg91", ChannelKind.SMS, succeed=False)
        other = FakeChannel("twilio", ChannelKind.SMS)

        record = asyncio.run(_orchestrator(settings, sms, other).dispatch(_request(), _record()))

        assert record.notification_status == DeliveryStatus.FAILED
        assert other.calls == []

    @pytest.mark.parametrize("phone", [None, "", "12345", "1234567890"])
    def test_invalid_recipient_never_contacts_provider(self, orchestrator, channels, phone):
        record = asyncio.run(orchestrator.dispatch(_request(phone=phone), _record(parent_phone=phone)))

        assert record.notification_status == DeliveryStatus.FAILED
        assert record.notification_error == INVALID_RECIPIENT
        assert record.retry_count == 0
        assert channels.rich.calls == []
        assert channels.sms.calls == []

    def test_persisted_record_is_flushed(self, orchestrator, db_session, world):
        from app.db.models import AttendanceSession

        session = AttendanceSession(institute_id=world.institute.id, batch_id=world.batch.id)
        db_session.add(session)
        db_session.flush()
        record = _record(attendance_id=session.id, student_id=world.students[0].id)
        db_session.add(record)
        db_session.flush()

        asyncio.run(orchestrator.dispatch(_request(), record))
        db_session.expire(record)

        assert record.notification_status == "sent"


class TestChannelSelection:
    def test_sms_only_kinds_skip_rich(self, orchestrator, channels):
        result = asyncio.run(orchestrator.deliver(_request(kind=NotificationKind.OTP)))

        assert result.success is True
        assert result.channel == ChannelKind.SMS
        assert channels.rich.calls == []
        assert "123456" in channels.sms.calls[0][1].plain_body

    def test_sms_only_kind_has_no_fallback(self, settings):
        msg91 = FakeChannel("msg91", ChannelKind.SMS, succeed=False)
        twilio_sms = FakeChannel("twilio", ChannelKind.SMS)
        orchestrator = _orchestrator(settings, FakeChannel("twilio", ChannelKind.RICH), msg91, twilio_sms)

        result = asyncio.run(orchestrator.deliver(_request(kind=NotificationKind.INVITATION)))

        assert result.success is False
        assert twilio_sms.calls == []

    def test_deliver_via_named_channel(self, orchestrator, channels):
        result = asyncio.run(orchestrator.deliver_via(_request(kind=NotificationKind.TEST), ChannelKind.SMS))

        assert result.success is True
        assert result.provider == "msg91"
        assert channels.rich.calls == []

    def test_deliver_via_unconfigured_kind(self, settings):
        orchestrator = _orchestrator(settings, FakeChannel("msg91", ChannelKind.SMS))

        result = asyncio.run(orchestrator.deliver_via(_request(kind=NotificationKind.TEST), ChannelKind.RICH))

        assert result.success is False
        assert result.error == "whatsapp channel not configured"

    def test_deliver_invalid_recipient(self, orchestrator):
        result = asyncio.run(orchestrator.deliver(_request(phone="555")))
        assert result.error == INVALID_RECIPIENT

    def test_requires_a_channel(self, settings):
        with pytest.raises(ValueError):
            _orchestrator(settings)


# ===========================================================================
# Retry
# ===========================================================================

class TestRetry:
    def test_retry_count_grows_until_limit(self, orchestrator, channels):
        channels.rich.succeed = False
        channels.sms.succeed = False
        record = _record()

        asyncio.run(orchestrator.dispatch(_request(), record))
        counts = [record.retry_count]
        for _ in range(2):
            asyncio.run(orchestrator.retry(_request(), record))
            counts.append(record.retry_count)

        assert counts == [1, 2, 3]
        calls_before = len(channels.rich.calls) + len(channels.sms.calls)

        with pytest.raises(RetryLimitExceededError, match=r"Maximum retry attempts \(3\) exceeded"):
            asyncio.run(orchestrator.retry(_request(), record))

        assert len(channels.rich.calls) + len(channels.sms.calls) == calls_before
        assert record.retry_count == 3
        assert record.notification_status == DeliveryStatus.FAILED

    def test_successful_retry_keeps_count(self, orchestrator, channels):
        record = _record(notification_status=DeliveryStatus.FAILED, retry_count=2)

        asyncio.run(orchestrator.retry(_request(), record))

        assert record.notification_status == DeliveryStatus.SENT
        assert record.retry_count == 2


# ===========================================================================
# Chunking
# ===========================================================================

def test_dispatch_chunked_spaces_chunks(settings, channels):
    sleep = RecordingSleep()
    orchestrator = _orchestrator(settings, channels.rich, channels.sms, sleep=sleep, chunk_size=10, chunk_delay_s=1.0)
    items = [(_request(), _record()) for _ in range(23)]

    records = asyncio.run(orchestrator.dispatch_chunked(items))

    assert len(records) == 23
    assert all(record.notification_status == DeliveryStatus.SENT for record in records)
    assert sleep.delays == [1.0, 1.0]
    assert len(channels.rich.calls) == 23


def test_dispatch_chunked_exact_multiple_has_no_trailing_delay(settings, channels):
    sleep = RecordingSleep()
    orchestrator = _orchestrator(settings, channels.rich, sleep=sleep, chunk_size=5)

    asyncio.run(orchestrator.dispatch_chunked([(_request(), _record()) for _ in range(10)]))

    assert sleep.delays == [1.0]


def test_dispatch_chunked_isolates_a_raising_send(settings, channels, caplog):
    channels.rich.raise_next = RuntimeError("unexpected sdk error")
    orchestrator = _orchestrator(settings, channels.rich, channels.sms, sleep=RecordingSleep())
    items = [(_request(), _record()) for _ in range(3)]

    records = asyncio.run(orchestrator.dispatch_chunked(items))

    assert [record.notification_status for record in records] == [
        DeliveryStatus.FAILED,
        DeliveryStatus.SENT,
        DeliveryStatus.SENT,
    ]
    failed = records[0]
    assert failed.notification_error == "unexpected sdk error"
    assert failed.retry_count == 1
    assert failed.last_attempt_at == FIXED_NOW
    assert "correlation_id=corr-1" in caplog.text


def test_dispatch_refuses_a_record_at_the_cap(orchestrator, channels):
    record = _record(retry_count=3)

    with pytest.raises(RetryLimitExceededError):
        asyncio.run(orchestrator.dispatch(_request(), record))

    assert channels.rich.calls == []
    assert record.notification_status == DeliveryStatus.PENDING


def test_dispatch_chunked_skips_capped_records(orchestrator, channels):
    capped = _record(retry_count=3)

    records = asyncio.run(orchestrator.dispatch_chunked([(_request(), capped), (_request(), _record())]))

    assert records[0] is capped
    assert capped.notification_status == DeliveryStatus.PENDING
    assert records[1].notification_status == DeliveryStatus.SENT
    assert len(channels.rich.calls) == 1
