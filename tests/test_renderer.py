from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.notification.renderer import (
    MAX_FIELD_LENGTH,
    SMS_CHAR_BUDGET,
    TEST_MESSAGE,
    MessageRenderer,
    substitute_placeholders,
)
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest

# 16:00 in Asia/Kolkata.
OCCURRED = datetime(2024, 6, 15, 10, 30, tzinfo=timezone.utc)


@pytest.fixture()
def renderer() -> MessageRenderer:
    return MessageRenderer(
        rich_templates={"absent": "HXabsent", "late": "HXlate", "present": None},
        sms_templates={"absent": "dlt-absent"},
        app_download_link="https://example.test/app",
    )


def _facts(**overrides) -> MessageFacts:
    values = {
        "student_name": "Aarav Mehta",
        "batch_name": "Class 10 Maths",
        "institute_name": "Sunrise Tuitions",
        "occurred_at": OCCURRED,
        "status": "absent",
    }
    values.update(overrides)
    return MessageFacts(**values)


# ===========================================================================
# Attendance
# ===========================================================================

class TestPlain:
    @pytest.mark.parametrize(
        "status, expected",
        [
            ("absent", "Sunrise Tuitions: Aarav Mehta was ABSENT from Class 10 Maths on 15 Jun."),
            ("late", "Sunrise Tuitions: Aarav Mehta was LATE to Class 10 Maths on 15 Jun."),
            ("present", "Sunrise Tuitions: Aarav Mehta was present at Class 10 Maths on 15 Jun."),
        ],
    )
    def test_canonical_sentence(self, renderer, status, expected):
        assert renderer.render_plain(_facts(status=status)) == expected

    def test_long_names_stay_within_sms_budget(self, renderer):
        facts = _facts(
            student_name="W" * 200,
            batch_name="Advanced Mathematics Olympiad Preparation Weekend Batch",
            institute_name="Sri Venkateswara International Academy of Competitive Examinations",
            occurred_at=datetime(2024, 9, 30, 6, 0, tzinfo=timezone.utc),
        )

        text = renderer.render_plain(facts)

        assert len(text) <= SMS_CHAR_BUDGET
        assert "W" * MAX_FIELD_LENGTH in text
        assert "W" * (MAX_FIELD_LENGTH + 1) not in text

    def test_date_uses_local_timezone(self, renderer):
        late_evening_utc = datetime(2024, 6, 15, 20, 0, tzinfo=timezone.utc)
        assert renderer.render_plain(_facts(occurred_at=late_evening_utc)).endswith("on 16 Jun.")


class TestRich:
    def test_template_selected_by_status(self, renderer):
        content = renderer.render_rich(_facts(status="late"))

        assert content.template_id == "HXlate"
        assert content.variables == {
            "1": "Aarav Mehta",
            "2": "Class 10 Maths",
            "3": "Sat, 15 Jun 2024, 04:00 PM",
        }

    def test_unconfigured_template(self, renderer):
        assert renderer.render_rich(_facts(status="present")).template_id is None


class TestDetail:
    def test_default_template(self, renderer):
        body = renderer.render_detail(_facts())

        assert "*Aarav Mehta*" in body
        assert "*ABSENT*" in body
        assert "Saturday, 15 June 2024" in body
        assert body.endswith("Sunrise Tuitions")

    def test_institute_template(self, renderer):
        template = "{student} missed {batch} on {date} ({unknown}) - {institute}"

        body = renderer.render_detail(_facts(), template)

        assert body == (
            "Aarav Mehta missed Class 10 Maths on Saturday, 15 June 2024 ({unknown}) - Sunrise Tuitions"
        )

    def test_substitution_never_evaluates(self):
        template = "{student.__class__} {0} {student}"
        assert substitute_placeholders(template, {"student": "Aarav"}) == "{student.__class__} {0} Aarav"


# ===========================================================================
# Other messages
# ===========================================================================

class TestPaymentReminder:
    def test_overdue_plural(self, renderer):
        text = renderer.render_payment_reminder(_facts(amount=2500.0, days_overdue=12))

        assert text == (
            "Payment Reminder: Aarav Mehta's fee of Rs.2500 for Class 10 Maths is overdue by 12 days. "
            "Please clear the dues at the earliest. - Sunrise Tuitions"
        )

    def test_overdue_singular(self, renderer):
        assert "overdue by 1 day. " in renderer.render_payment_reminder(_facts(amount=10, days_overdue=1))

    def test_due_soon(self, renderer):
        text = renderer.render_payment_reminder(_facts(amount=1500.4, days_overdue=0))

        assert "Rs.1500" in text
        assert "is due soon. Please make the payment before the due date." in text


class TestLeaveDecision:
    def test_approved_single_day_with_note(self, renderer):
        text = renderer.render_leave_decision(
            _facts(status="approved", period_end=OCCURRED, review_notes="Get well soon")
        )

        assert text.startswith("Leave Approved\n\n")
        assert "Aarav Mehta (15 Jun) has been approved" in text
        assert "Note from teacher: Get well soon" in text
        assert text.endswith("- ClassPulse")

    def test_rejected_range_without_student(self, renderer):
        text = renderer.render_leave_decision(
            _facts(status="rejected", student_name="", period_end=datetime(2024, 6, 17, 5, tzinfo=timezone.utc))
        )

        assert text.startswith("Leave Rejected")
        assert "your child (15 Jun - 17 Jun) was not approved" in text
        assert "Note from teacher" not in text


def test_invitation_and_reminder(renderer):
    invite = renderer.render_invitation(MessageFacts(institute_name="Sunrise Tuitions", role="admin"))
    reminder = renderer.render_invitation(MessageFacts(institute_name="Sunrise Tuitions", is_reminder=True))

    assert invite == (
        "You've been invited to join Sunrise Tuitions as a administrator on ClassPulse. "
        "Download: https://example.test/app"
    )
    assert reminder.startswith("Reminder: You've been invited to join Sunrise Tuitions as a teacher.")


# ===========================================================================
# render()
# ===========================================================================

class TestRender:
    def test_attendance_carries_all_channel_content(self, renderer):
        message = renderer.render(NotificationRequest(NotificationKind.ATTENDANCE, "9876543210", _facts()))

        assert message.template_id == "HXabsent"
        assert message.variables["1"] == "Aarav Mehta"
        assert message.sms_template_id == "dlt-absent"
        assert message.plain_body.startswith("Sunrise Tuitions: Aarav Mehta was ABSENT")
        assert "Dear Parent" in message.rich_body

    def test_otp_code_in_body(self, renderer):
        message = renderer.render(
            NotificationRequest(NotificationKind.OTP, "9876543210", MessageFacts(code="482913"))
        )

        assert message.plain_body == (
            "Your ClassPulse verification code is 482913. Valid for 10 minutes. Do not share this code."
        )
        assert message.template_id is None

    def test_otp_without_code(self, renderer):
        with pytest.raises(ValueError):
            renderer.render(NotificationRequest(NotificationKind.OTP, "9876543210", MessageFacts()))

    def test_test_message_default(self, renderer):
        message = renderer.render(NotificationRequest(NotificationKind.TEST, "9876543210", MessageFacts()))
        assert message.plain_body == TEST_MESSAGE

    def test_code_not_in_repr(self):
        assert "482913" not in repr(MessageFacts(code="482913"))
