"""Message renderer — attendance, invitation, leave, fee and OTP texts.

Rich rendering picks a provider content template by attendance status and
assembles its positional variables.  The template bodies themselves live
with the provider and are owned by the institute.

Plain rendering is a fixed short sentence for SMS.  Every substituted name
is clipped to ``MAX_FIELD_LENGTH`` so the sentence never exceeds
``SMS_CHAR_BUDGET`` characters.

Institute-owned long-form templates are plain text with a closed set of
``{placeholder}`` names; substitution is a single regex pass and never
evaluates the template.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from app.core.clock import as_utc
from app.core.settings import Settings
from app.notification.request import MessageFacts, NotificationKind, NotificationRequest

SMS_CHAR_BUDGET = 160
MAX_FIELD_LENGTH = 40
PRODUCT_NAME = "ClassPulse"

ATTENDANCE_STATUSES = ("absent", "late", "present")

_PLAIN_STATUS_TEXT: dict[str, str] = {
    "absent": "ABSENT from",
    "late": "LATE to",
    "present": "present at",
}

_DEFAULT_DETAIL_TEMPLATES: dict[str, str] = {
    "absent": (
        "Dear Parent,\n\n"
        "This is to inform you that *{student}* was *ABSENT* from *{batch}* on *{date}*.\n\n"
        "If this absence was unplanned, please contact the institute.\n\n"
        "Regards,\n{institute}"
    ),
    "late": (
        "Dear Parent,\n\n"
        "*{student}* arrived *LATE* to *{batch}* on *{date}*.\n\n"
        "Please ensure timely attendance for better learning.\n\n"
        "Regards,\n{institute}"
    ),
    "present": (
        "Dear Parent,\n\n"
        "*{student}* has arrived for *{batch}* on *{date}*.\n\n"
        "Regards,\n{institute}"
    ),
}

_PLACEHOLDER = re.compile(r"\{(student|batch|date|institute)\}")

TEST_MESSAGE = (
    f"{PRODUCT_NAME} Test: This is a test notification. "
    "If you received this, notifications are working correctly!"
)


@dataclass(frozen=True)
class RichContent:
    template_id: str | None
    variables: dict[str, str]


@dataclass(frozen=True)
class RenderedMessage:
    """Channel-ready content.  Rich channels prefer the template; SMS uses ``plain_body``."""

    plain_body: str
    rich_body: str | None = None
    template_id: str | None = None
    variables: dict[str, str] | None = None
    sms_template_id: str | None = None


def substitute_placeholders(template: str, values: Mapping[str, str]) -> str:
    """Replace ``{student}``, ``{batch}``, ``{date}`` and ``{institute}`` in *template*.

    Unknown placeholders are left untouched.
    """
    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def _clip(value: str, limit: int = MAX_FIELD_LENGTH) -> str:
    value = " ".join((value or "").split())
    return value if len(value) <= limit else value[:limit].rstrip()


def _plural_days(days: int) -> str:
    return f"{days} day{'' if days == 1 else 's'}"


class MessageRenderer:
    """Pure renderer; every method depends only on its arguments and configuration."""

    def __init__(
        self,
        *,
        rich_templates: Mapping[str, str | None] | None = None,
        sms_templates: Mapping[str, str | None] | None = None,
        timezone: str = "Asia/Kolkata",
        app_download_link: str = "",
        otp_ttl_minutes: int = 10,
    ) -> None:
        self.rich_templates = dict(rich_templates or {})
        self.sms_templates = dict(sms_templates or {})
        self.tz = ZoneInfo(timezone)
        self.app_download_link = app_download_link
        self.otp_ttl_minutes = otp_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> MessageRenderer:
        return cls(
            rich_templates={
                "absent": settings.whatsapp_absent_template_sid,
                "late": settings.whatsapp_late_template_sid,
                "present": settings.whatsapp_present_template_sid,
            },
            sms_templates={
                "absent": settings.msg91_absent_template_id,
                "late": settings.msg91_late_template_id,
            },
            timezone=settings.timezone,
            app_download_link=settings.app_download_link,
            otp_ttl_minutes=settings.otp_ttl_minutes,
        )

    # -- dates --------------------------------------------------------------

    def _local(self, moment: datetime | None) -> datetime:
        if moment is None:
            raise ValueError("occurred_at is required for dated messages")
        return as_utc(moment).astimezone(self.tz)

    def short_date(self, moment: datetime | None) -> str:
        """``15 Jun``"""
        local = self._local(moment)
        return f"{local.day} {local:%b}"

    def long_date(self, moment: datetime | None) -> str:
        """``Saturday, 15 June 2024``"""
        local = self._local(moment)
        return f"{local:%A}, {local.day} {local:%B} {local.year}"

    def stamp(self, moment: datetime | None) -> str:
        """``Sat, 15 Jun 2024, 04:00 PM``"""
        local = self._local(moment)
        return f"{local:%a}, {local.day} {local:%b} {local.year}, {local:%I:%M %p}"

    # -- attendance ---------------------------------------------------------

    def render_rich(self, facts: MessageFacts) -> RichContent:
        """Select the content template for the status and build ``{{1}}..{{3}}``."""
        status = facts.status if facts.status in ATTENDANCE_STATUSES else "present"
        variables = {
            "1": facts.student_name,
            "2": facts.batch_name,
            "3": self.stamp(facts.occurred_at),
        }
        return RichContent(template_id=self.rich_templates.get(status), variables=variables)

    def render_plain(self, facts: MessageFacts) -> str:
        status_text = _PLAIN_STATUS_TEXT.get(facts.status or "", _PLAIN_STATUS_TEXT["present"])
        return (
            f"{_clip(facts.institute_name)}: {_clip(facts.student_name)} was {status_text} "
            f"{_clip(facts.batch_name)} on {self.short_date(facts.occurred_at)}."
        )

    def render_detail(self, facts: MessageFacts, template: str | None = None) -> str:
        status = facts.status if facts.status in ATTENDANCE_STATUSES else "present"
        body = template or facts.template or _DEFAULT_DETAIL_TEMPLATES[status]
        return substitute_placeholders(
            body,
            {
                "student": facts.student_name,
                "batch": facts.batch_name,
                "date": self.long_date(facts.occurred_at),
                "institute": facts.institute_name,
            },
        )

    # -- other messages -----------------------------------------------------

    def render_payment_reminder(self, facts: MessageFacts) -> str:
        amount = f"Rs.{(facts.amount or 0):.0f}"
        lead = f"Payment Reminder: {facts.student_name}'s fee of {amount} for {facts.batch_name} "
        days = facts.days_overdue or 0
        if days > 0:
            return (
                f"{lead}is overdue by {_plural_days(days)}. "
                f"Please clear the dues at the earliest. - {facts.institute_name}"
            )
        return f"{lead}is due soon. Please make the payment before the due date. - {facts.institute_name}"

    def render_invitation(self, facts: MessageFacts) -> str:
        role_text = "administrator" if facts.role == "admin" else "teacher"
        if facts.is_reminder:
            return (
                f"Reminder: You've been invited to join {facts.institute_name} as a {role_text}. "
                f"Download {PRODUCT_NAME}: {self.app_download_link}"
            )
        return (
            f"You've been invited to join {facts.institute_name} as a {role_text} "
            f"on {PRODUCT_NAME}. Download: {self.app_download_link}"
        )

    def render_leave_decision(self, facts: MessageFacts) -> str:
        start = self.short_date(facts.occurred_at)
        end = self.short_date(facts.period_end or facts.occurred_at)
        date_range = start if start == end else f"{start} - {end}"
        student = facts.student_name or "your child"

        if facts.status == "approved":
            message = (
                "Leave Approved\n\n"
                f"Good news! The leave request for {student} ({date_range}) has been approved."
            )
        else:
            message = f"Leave Rejected\n\nThe leave request for {student} ({date_range}) was not approved."

        if facts.review_notes:
            message += f"\n\nNote from teacher: {facts.review_notes}"
        return message + f"\n\n- {PRODUCT_NAME}"

    def render_otp(self, code: str) -> str:
        return (
            f"Your {PRODUCT_NAME} verification code is {code}. "
            f"Valid for {self.otp_ttl_minutes} minutes. Do not share this code."
        )

    # -- dispatch -----------------------------------------------------------

    def render(self, request: NotificationRequest) -> RenderedMessage:
        facts = request.facts
        kind = request.kind

        if kind == NotificationKind.ATTENDANCE:
            rich = self.render_rich(facts)
            return RenderedMessage(
                plain_body=self.render_plain(facts),
                rich_body=self.render_detail(facts),
                template_id=rich.template_id,
                variables=rich.variables,
                sms_template_id=self.sms_templates.get(facts.status or ""),
            )

        if kind == NotificationKind.PAYMENT_REMINDER:
            text = self.render_payment_reminder(facts)
        elif kind == NotificationKind.INVITATION:
            text = self.render_invitation(facts)
        elif kind == NotificationKind.LEAVE_DECISION:
            text = self.render_leave_decision(facts)
        elif kind == NotificationKind.OTP:
            if not facts.code:
                raise ValueError("OTP request without a code")
            text = self.render_otp(facts.code)
        else:
            text = facts.body or TEST_MESSAGE
        return RenderedMessage(plain_body=text, rich_body=text)
