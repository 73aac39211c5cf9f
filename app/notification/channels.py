"""Provider channels — WhatsApp (rich) and SMS (plain).

Every channel exposes one capability::

    async def send(to: str, message: RenderedMessage) -> SendResult

Provider failures (network, auth, remote rejection, missing credentials)
are returned as ``SendResult(success=False, error=...)`` so the
orchestrator can fall back; they are never raised.

Safety: recipient numbers and message bodies are never logged.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import httpx
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from app.core.settings import Settings
from app.notification.renderer import RenderedMessage

logger = logging.getLogger(__name__)


class ChannelKind(StrEnum):
    RICH = "whatsapp"
    SMS = "sms"


@dataclass(frozen=True)
class SendResult:
    success: bool
    channel: ChannelKind | None = None
    provider: str | None = None
    provider_message_id: str | None = None
    error: str | None = None


class ProviderClient(Protocol):
    name: str
    kind: ChannelKind

    async def send(self, to: str, message: RenderedMessage) -> SendResult:
        ...


TwilioClientFactory = Callable[[], TwilioClient | None]


def twilio_client_factory(settings: Settings) -> TwilioClientFactory:
    """Lazily build one Twilio client; ``None`` when credentials are missing."""
    cache: dict[str, TwilioClient] = {}

    def factory() -> TwilioClient | None:
        if not (settings.twilio_account_sid and settings.twilio_auth_token):
            return None
        if "client" not in cache:
            cache["client"] = TwilioClient(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=settings.provider_timeout_s),
            )
        return cache["client"]

    return factory


# ---------------------------------------------------------------------------
# Twilio WhatsApp
# ---------------------------------------------------------------------------

class TwilioWhatsAppChannel:
    """WhatsApp Business API through Twilio Content Templates."""

    name = "twilio"
    kind = ChannelKind.RICH

    def __init__(self, client_factory: TwilioClientFactory, from_number: str) -> None:
        self._client_factory = client_factory
        self.from_number = from_number

    async def send(self, to: str, message: RenderedMessage) -> SendResult:
        client = self._client_factory()
        if client is None:
            return SendResult(success=False, channel=self.kind, provider=self.name, error="Twilio not configured")

        params: dict[str, str] = {
            "from_": f"whatsapp:{self.from_number}",
            "to": f"whatsapp:{to}",
        }
        if message.template_id and message.variables is not None:
            # Required outside the 24-hour customer service window.
            params["content_sid"] = message.template_id
            params["content_variables"] = json.dumps(message.variables)
        else:
            logger.debug("No content template configured; sending free-form WhatsApp body")
            params["body"] = message.rich_body or message.plain_body

        try:
            result = await asyncio.to_thread(client.messages.create, **params)
        except (TwilioException, OSError) as exc:
            logger.warning("WhatsApp send failed: %s", exc)
            return SendResult(success=False, channel=self.kind, provider=self.name, error=str(exc))

        return SendResult(success=True, channel=self.kind, provider=self.name, provider_message_id=result.sid)


# ---------------------------------------------------------------------------
# Twilio SMS
# ---------------------------------------------------------------------------

class TwilioSmsChannel:
    name = "twilio"
    kind = ChannelKind.SMS

    def __init__(self, client_factory: TwilioClientFactory, from_number: str | None) -> None:
        self._client_factory = client_factory
        self.from_number = from_number

    async def send(self, to: str, message: RenderedMessage) -> SendResult:
        client = self._client_factory()
        if client is None or not self.from_number:
            return SendResult(success=False, channel=self.kind, provider=self.name, error="Twilio SMS not configured")

        try:
            result = await asyncio.to_thread(
                client.messages.create, from_=self.from_number, to=to, body=message.plain_body
            )
        except (TwilioException, OSError) as exc:
            logger.warning("Twilio SMS send failed: %s", exc)
            return SendResult(success=False, channel=self.kind, provider=self.name, error=str(exc))

        return SendResult(success=True, channel=self.kind, provider=self.name, provider_message_id=result.sid)


# ---------------------------------------------------------------------------
# MSG91 SMS
# ---------------------------------------------------------------------------

class Msg91SmsChannel:
    """MSG91 flow API: DLT template id plus the text in ``VAR1``."""

    name = "msg91"
    kind = ChannelKind.SMS

    def __init__(
        self,
        auth_key: str | None,
        *,
        sender_id: str,
        flow_url: str,
        timeout_s: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.auth_key = auth_key
        self.sender_id = sender_id
        self.flow_url = flow_url
        self.timeout_s = timeout_s
        self._http_client = http_client

    async def send(self, to: str, message: RenderedMessage) -> SendResult:
        if not self.auth_key:
            return SendResult(success=False, channel=self.kind, provider=self.name, error="MSG91 not configured")

        payload = {
            "template_id": message.sms_template_id,
            "sender": self.sender_id,
            "short_url": "0",
            # Country code without the leading +.
            "mobiles": to.lstrip("+"),
            "VAR1": message.plain_body,
        }
        headers = {"authkey": self.auth_key, "Content-Type": "application/json"}

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.flow_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.post(self.flow_url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("MSG91 send failed: %s", exc)
            return SendResult(success=False, channel=self.kind, provider=self.name, error=str(exc))

        if not isinstance(data, dict):
            logger.warning("MSG91 reply was not a JSON object")
            return SendResult(success=False, channel=self.kind, provider=self.name, error="MSG91 error")
        if data.get("type") == "success":
            return SendResult(
                success=True,
                channel=self.kind,
                provider=self.name,
                provider_message_id=data.get("request_id"),
            )
        return SendResult(
            success=False,
            channel=self.kind,
            provider=self.name,
            error=data.get("message") or "MSG91 error",
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def _sms_channel(provider: str, settings: Settings, twilio_factory: TwilioClientFactory) -> ProviderClient:
    if provider == "twilio":
        return TwilioSmsChannel(twilio_factory, settings.twilio_sms_number)
    return Msg91SmsChannel(
        settings.msg91_auth_key,
        sender_id=settings.msg91_sender_id,
        flow_url=settings.msg91_flow_url,
        timeout_s=settings.provider_timeout_s,
    )


def build_channels(settings: Settings) -> list[ProviderClient]:
    """Ordered channels to try: primary first, then the fallbacks.

    WhatsApp primary: ``[whatsapp, sms, (secondary sms)]``.
    SMS primary: ``[sms]``; fallbacks only follow a rich primary.
    """
    twilio_factory = twilio_client_factory(settings)
    sms = _sms_channel(settings.sms_provider, settings, twilio_factory)
    if settings.primary_channel != "whatsapp":
        return [sms]

    channels: list[ProviderClient] = [
        TwilioWhatsAppChannel(twilio_factory, settings.twilio_whatsapp_number),
        sms,
    ]
    secondary = settings.secondary_sms_provider
    if secondary and secondary != settings.sms_provider:
        channels.append(_sms_channel(secondary, settings, twilio_factory))
    return channels
