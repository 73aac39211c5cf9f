"""Delivery orchestrator — primary/fallback cascade and delivery-state updates.

``dispatch`` drives one delivery record through a single attempt:

0. a record that has used every attempt is refused (``RetryLimitExceededError``)
1. invalid recipient → ``failed`` / ``invalid-recipient``; no provider call
2. render and try the primary channel
3. a failed *rich* primary falls back to the SMS channel(s), each once
4. success → ``sent``; terminal failure → ``failed`` and ``retry_count + 1``

Only the record passed in is mutated.  Records are flushed, never
committed; the caller owns the transaction.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime

from sqlalchemy import inspect as sa_inspect

from app.core.clock import utcnow
from app.core.errors import RetryLimitExceededError
from app.core.logging import bind_logger
from app.core.settings import Settings
from app.db.models import DeliveryStateMixin, DeliveryStatus
from app.normalization.phone_normalizer import DEFAULT_COUNTRY_CODE, is_valid_phone, normalize_phone
from app.notification.channels import ChannelKind, ProviderClient, SendResult, build_channels
from app.notification.renderer import MessageRenderer, RenderedMessage
from app.notification.request import SMS_ONLY_KINDS, NotificationKind, NotificationRequest

logger = logging.getLogger(__name__)

INVALID_RECIPIENT = "invalid-recipient"


class DeliveryOrchestrator:
    def __init__(
        self,
        channels: Sequence[ProviderClient],
        renderer: MessageRenderer,
        *,
        max_attempts: int = 3,
        chunk_size: int = 10,
        chunk_delay_s: float = 1.0,
        country_code: str = DEFAULT_COUNTRY_CODE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not channels:
            raise ValueError("at least one channel is required")
        self.channels = list(channels)
        self.renderer = renderer
        self.max_attempts = max_attempts
        self.chunk_size = chunk_size
        self.chunk_delay_s = chunk_delay_s
        self.country_code = country_code
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, channels: Sequence[ProviderClient] | None = None
    ) -> DeliveryOrchestrator:
        return cls(
            channels if channels is not None else build_channels(settings),
            MessageRenderer.from_settings(settings),
            max_attempts=settings.max_delivery_attempts,
            chunk_size=settings.dispatch_chunk_size,
            chunk_delay_s=settings.dispatch_chunk_delay_s,
            country_code=settings.default_country_code,
        )

    # -- channel selection ----------------------------------------------------

    def channels_for(self, kind: NotificationKind) -> list[ProviderClient]:
        """Channels to try for *kind*, in order.

        SMS-only kinds skip the rich channel and get no fallback.  Otherwise
        the fallbacks are only reachable after a rich primary.
        """
        if kind in SMS_ONLY_KINDS:
            sms = [channel for channel in self.channels if channel.kind == ChannelKind.SMS]
            return sms[:1]
        primary = self.channels[0]
        if primary.kind != ChannelKind.RICH:
            return [primary]
        return [primary] + [channel for channel in self.channels[1:] if channel.kind == ChannelKind.SMS]

    # -- delivery -------------------------------------------------------------

    def recipient_for(self, request: NotificationRequest) -> str | None:
        if not request.recipient or not is_valid_phone(request.recipient, country_code=self.country_code):
            return None
        return normalize_phone(request.recipient, country_code=self.country_code)

    async def _cascade(
        self, request: NotificationRequest, to: str, message: RenderedMessage
    ) -> SendResult:
        log = bind_logger(logger, correlation_id=request.correlation_id, kind=request.kind.value)
        channels = self.channels_for(request.kind)
        if not channels:
            return SendResult(success=False, error="No channel available")

        errors: list[str] = []
        last: SendResult | None = None
        for index, channel in enumerate(channels):
            result = await channel.send(to, message)
            if result.success:
                if index > 0:
                    log.info("Delivered on fallback", context={"channel": channel.kind.value, "provider": channel.name})
                return result
            last = result
            errors.append(f"{channel.kind.value}/{channel.name}: {result.error}")
            log.warning(
                "Channel attempt failed",
                context={"channel": channel.kind.value, "provider": channel.name, "error": result.error},
            )

        return SendResult(
            success=False,
            channel=last.channel if last else None,
            provider=last.provider if last else None,
            error="; ".join(errors),
        )

    async def deliver(self, request: NotificationRequest) -> SendResult:
        """Run the cascade without a delivery record."""
        to = self.recipient_for(request)
        if to is None:
            bind_logger(logger, correlation_id=request.correlation_id).warning("Invalid recipient; not sending")
            return SendResult(success=False, error=INVALID_RECIPIENT)
        return await self._cascade(request, to, self.renderer.render(request))

    async def deliver_via(self, request: NotificationRequest, kind: ChannelKind) -> SendResult:
        """Send on the first configured channel of *kind*, without fallback."""
        to = self.recipient_for(request)
        if to is None:
            return SendResult(success=False, error=INVALID_RECIPIENT)
        channel = next((channel for channel in self.channels if channel.kind == kind), None)
        if channel is None:
            return SendResult(success=False, channel=kind, error=f"{kind.value} channel not configured")
        return await channel.send(to, self.renderer.render(request))

    def _check_attempts(self, record: DeliveryStateMixin) -> None:
        if (record.retry_count or 0) >= self.max_attempts:
            raise RetryLimitExceededError(f"Maximum retry attempts ({self.max_attempts}) exceeded")

    async def dispatch(self, request: NotificationRequest, record: DeliveryStateMixin) -> DeliveryStateMixin:
        """One delivery attempt for *record*; the outcome is written to it and flushed.

        Raises ``RetryLimitExceededError`` without provider contact once the
        record has used all attempts.
        """
        self._check_attempts(record)
        now = self._clock()
        to = self.recipient_for(request)
        if to is None:
            record.notification_status = DeliveryStatus.FAILED
            record.notification_error = INVALID_RECIPIENT
            record.last_attempt_at = now
            self._flush(record)
            return record

        result = await self._cascade(request, to, self.renderer.render(request))
        record.last_attempt_at = self._clock()
        if result.success:
            record.notification_status = DeliveryStatus.SENT
            record.notification_channel = result.channel.value if result.channel else None
            record.notification_provider = result.provider
            record.provider_message_id = result.provider_message_id
            record.notification_error = None
            record.notified_at = record.last_attempt_at
        else:
            record.notification_status = DeliveryStatus.FAILED
            record.notification_error = result.error
            record.retry_count = (record.retry_count or 0) + 1
        self._flush(record)
        return record

    async def retry(self, request: NotificationRequest, record: DeliveryStateMixin) -> DeliveryStateMixin:
        """Explicit retry; refused without provider contact once the attempt cap is reached."""
        self._check_attempts(record)
        record.notification_status = DeliveryStatus.PENDING
        self._flush(record)
        return await self.dispatch(request, record)

    async def dispatch_chunked(
        self, items: Sequence[tuple[NotificationRequest, DeliveryStateMixin]]
    ) -> list[DeliveryStateMixin]:
        """Dispatch *items* in concurrent chunks, joined and spaced by ``chunk_delay_s``."""
        dispatched: list[DeliveryStateMixin] = []
        for start in range(0, len(items), self.chunk_size):
            chunk = items[start:start + self.chunk_size]
            dispatched.extend(
                await asyncio.gather(*(self._dispatch_guarded(request, record) for request, record in chunk))
            )
            if start + self.chunk_size < len(items):
                await self._sleep(self.chunk_delay_s)
        return dispatched

    async def _dispatch_guarded(
        self, request: NotificationRequest, record: DeliveryStateMixin
    ) -> DeliveryStateMixin:
        """``dispatch`` for one chunk member; an unexpected error fails only this record."""
        log = bind_logger(logger, correlation_id=request.correlation_id, kind=request.kind.value)
        try:
            return await self.dispatch(request, record)
        except RetryLimitExceededError:
            log.warning("Attempt cap reached; not sending")
            return record
        except Exception as exc:
            log.exception("Dispatch raised unexpectedly")
            record.notification_status = DeliveryStatus.FAILED
            record.notification_error = str(exc) or type(exc).__name__
            record.retry_count = (record.retry_count or 0) + 1
            record.last_attempt_at = self._clock()
            self._flush(record)
            return record

    @staticmethod
    def _flush(record: DeliveryStateMixin) -> None:
        state = sa_inspect(record, raiseerr=False)
        if state is not None and state.session is not None:
            state.session.flush()
