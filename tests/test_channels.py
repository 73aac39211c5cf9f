from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest
from twilio.base.exceptions import TwilioException

from app.core.settings import Settings
from app.notification.channels import (
    ChannelKind,
    Msg91SmsChannel,
    TwilioSmsChannel,
    TwilioWhatsAppChannel,
    build_channels,
)
from app.notification.renderer import RenderedMessage

MESSAGE = RenderedMessage(
    plain_body="Sunrise Tuitions: Aarav Mehta was ABSENT from Class 10 Maths on 15 Jun.",
    rich_body="Dear Parent, ...",
    template_id="HXabsent",
    variables={"1": "Aarav Mehta", "2": "Class 10 Maths", "3": "Sat, 15 Jun 2024, 04:00 PM"},
    sms_template_id="dlt-absent",
)


def _twilio_client(sid: str = "SM123") -> MagicMock:
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid=sid)
    return client


# ===========================================================================
# MSG91
# ===========================================================================

class TestMsg91:
    def _send(self, handler, auth_key="msg91-key", message=MESSAGE):
        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
                channel = Msg91SmsChannel(
                    auth_key,
                    sender_id="CLSPLS",
                    flow_url="https://api.msg91.test/api/v5/flow/",
                    http_client=http_client,
                )
                return await channel.send("+919876543210", message)

        return asyncio.run(run())

    def test_success_posts_flow_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"type": "success", "request_id": "req-1"})

        result = self._send(handler)

        assert result.success is True
        assert result.channel == ChannelKind.SMS
        assert result.provider == "msg91"
        assert result.provider_message_id == "req-1"
        assert seen["headers"]["authkey"] == "msg91-key"
        assert seen["body"] == {
            "template_id": "dlt-absent",
            "sender": "CLSPLS",
            "short_url": "0",
            "mobiles": "919876543210",
            "VAR1": MESSAGE.plain_body,
        }

    def test_provider_reported_error(self):
        result = self._send(lambda request: httpx.Response(200, json={"type": "error", "message": "Invalid template"}))

        assert result.success is False
        assert result.error == "Invalid template"

    @pytest.mark.parametrize("body", [["queued"], "queued", 42])
    def test_reply_that_is_not_an_object(self, body):
        result = self._send(lambda request: httpx.Response(200, json=body))

        assert result.success is False
        assert result.provider == "msg91"
        assert result.error == "MSG91 error"

    def test_http_error(self):
        result = self._send(lambda request: httpx.Response(500, text="oops"))

        assert result.success is False
        assert result.provider == "msg91"

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        result = self._send(handler)

        assert result.success is False
        assert "unreachable" in result.error

    def test_not_configured(self):
        calls = []

        result = self._send(lambda request: calls.append(request), auth_key=None)

        assert result.success is False
        assert result.error == "MSG91 not configured"
        assert calls == []


# ===========================================================================
# Twilio
# ===========================================================================

class TestTwilioWhatsApp:
    def test_content_template_send(self):
        client = _twilio_client("SMabc")
        channel = TwilioWhatsAppChannel(lambda: client, "+14155238886")

        result = asyncio.run(channel.send("+919876543210", MESSAGE))

        assert result.success is True
        assert result.channel == ChannelKind.RICH
        assert result.provider_message_id == "SMabc"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["from_"] == "whatsapp:+14155238886"
        assert kwargs["to"] == "whatsapp:+919876543210"
        assert kwargs["content_sid"] == "HXabsent"
        assert json.loads(kwargs["content_variables"])["3"] == "Sat, 15 Jun 2024, 04:00 PM"
        assert "body" not in kwargs

    def test_free_form_body_without_template(self):
        client = _twilio_client()
        channel = TwilioWhatsAppChannel(lambda: client, "+14155238886")

        asyncio.run(channel.send("+919876543210", RenderedMessage(plain_body="plain", rich_body="rich")))

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["body"] == "rich"
        assert "content_sid" not in kwargs

    def test_provider_exception_becomes_failure(self):
        client = MagicMock()
        client.messages.create.side_effect = TwilioException("63016 outside window")
        channel = TwilioWhatsAppChannel(lambda: client, "+14155238886")

        result = asyncio.run(channel.send("+919876543210", MESSAGE))

        assert result.success is False
        assert "63016" in result.error

    def test_not_configured(self):
        result = asyncio.run(TwilioWhatsAppChannel(lambda: None, "+14155238886").send("+919876543210", MESSAGE))

        assert result.success is False
        assert result.error == "Twilio not configured"


class TestTwilioSms:
    def test_plain_body(self):
        client = _twilio_client("SMsms")
        channel = TwilioSmsChannel(lambda: client, "+15005550006")

        result = asyncio.run(channel.send("+919876543210", MESSAGE))

        assert result.success is True
        assert result.channel == ChannelKind.SMS
        client.messages.create.assert_called_once_with(
            from_="+15005550006", to="+919876543210", body=MESSAGE.plain_body
        )

    def test_missing_sender_number(self):
        client = _twilio_client()

        result = asyncio.run(TwilioSmsChannel(lambda: client, None).send("+919876543210", MESSAGE))

        assert result.success is False
        client.messages.create.assert_not_called()


# ===========================================================================
# Channel list
# ===========================================================================

class TestBuildChannels:
    def test_whatsapp_primary_with_secondary_sms(self):
        settings = Settings(_env_file=None, primary_channel="whatsapp", sms_provider="msg91", secondary_sms_provider="twilio")

        channels = build_channels(settings)

        assert [(c.kind, c.name) for c in channels] == [
            (ChannelKind.RICH, "twilio"),
            (ChannelKind.SMS, "msg91"),
            (ChannelKind.SMS, "twilio"),
        ]

    def test_sms_primary_has_no_fallback(self):
        settings = Settings(_env_file=None, primary_channel="sms", sms_provider="twilio", secondary_sms_provider="msg91")

        channels = build_channels(settings)

        assert [(c.kind, c.name) for c in channels] == [(ChannelKind.SMS, "twilio")]

    def test_same_secondary_provider_is_not_duplicated(self):
        settings = Settings(_env_file=None, primary_channel="whatsapp", sms_provider="msg91", secondary_sms_provider="msg91")

        assert len(build_channels(settings)) == 2
