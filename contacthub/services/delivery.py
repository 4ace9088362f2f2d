"""Routing of invitation messages to SMS and email with centralized retries."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from contacthub.core.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from contacthub.models import utcnow
from contacthub.services.providers import EmailProvider, ProviderReceipt, SMSProvider, sms_segments
from contacthub.services.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)


@dataclass
class ChannelResult:
    """Outcome of delivering on one channel."""

    channel: str
    success: bool
    provider: str | None = None
    message_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    attempts: int = 0
    segments: int | None = None
    sent_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sent_at"] = self.sent_at.isoformat() if self.sent_at else None
        return data


@dataclass
class EmailMessage:
    subject: str
    text: str
    html: str | None = None


@dataclass
class DeliveryReport:
    results: dict[str, ChannelResult] = field(default_factory=dict)

    @property
    def any_success(self) -> bool:
        return any(result.success for result in self.results.values())

    @property
    def errors(self) -> list[str]:
        return [f"{name}: {result.error}" for name, result in self.results.items() if not result.success]

    def message_id(self, channel: str) -> str | None:
        result = self.results.get(channel)
        return result.message_id if result and result.success else None


class DeliveryChannelRouter:
    """Send on the channels of a delivery method and record each result.

    Every SMS attempt, retries included, takes a token from the shared
    bucket first. Transient provider failures are retried with exponential
    backoff up to ``max_attempts`` and then reported as permanent.
    """

    def __init__(
        self,
        sms_provider: SMSProvider,
        email_provider: EmailProvider,
        sms_limiter: TokenBucket,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.sms_provider = sms_provider
        self.email_provider = email_provider
        self.sms_limiter = sms_limiter
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    async def deliver(
        self,
        channels: Sequence[str],
        *,
        phone: str | None,
        email: str | None,
        sms_body: str,
        email_message: EmailMessage,
        sms_turn: AbstractAsyncContextManager[None] | None = None,
    ) -> DeliveryReport:
        tasks: dict[str, Awaitable[ChannelResult]] = {}
        for channel in channels:
            if channel == "sms":
                tasks["sms"] = self.send_sms(phone, sms_body, turn=sms_turn)
            elif channel == "email":
                tasks["email"] = self.send_email(email, email_message)
            else:
                raise ValueError(f"Unknown delivery channel: {channel}")
        outcomes = await asyncio.gather(*tasks.values())
        return DeliveryReport(results=dict(zip(tasks.keys(), outcomes)))

    async def send_sms(
        self, phone: str | None, body: str, *, turn: AbstractAsyncContextManager[None] | None = None
    ) -> ChannelResult:
        """Send one SMS; ``turn`` wraps the first token request only."""

        if not phone:
            return ChannelResult(channel="sms", success=False, error="No phone number", error_code="MISSING_RECIPIENT")

        pending_turn = turn

        async def _send() -> ProviderReceipt:
            nonlocal pending_turn
            if pending_turn is not None:
                gate, pending_turn = pending_turn, None
                async with gate:
                    await self.sms_limiter.acquire()
            else:
                await self.sms_limiter.acquire()
            return await self.sms_provider.send_sms(phone, body)

        result = await self._deliver("sms", self.sms_provider.name, _send)
        result.segments = sms_segments(body)
        return result

    async def send_email(self, email: str | None, message: EmailMessage) -> ChannelResult:
        if not email:
            return ChannelResult(
                channel="email", success=False, error="No email address", error_code="MISSING_RECIPIENT"
            )

        async def _send() -> ProviderReceipt:
            return await self.email_provider.send_email(email, message.subject, message.text, message.html)

        return await self._deliver("email", self.email_provider.name, _send)

    async def _deliver(
        self,
        channel: str,
        provider: str,
        send: Callable[[], Awaitable[ProviderReceipt]],
    ) -> ChannelResult:
        attempts = 0
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            before_sleep=self._log_retry(channel),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    receipt = await send()
        except TransientDeliveryError as exc:
            logger.warning(
                "Delivery retries exhausted",
                extra={"channel": channel, "attempts": attempts, "provider_code": exc.provider_code},
            )
            demoted = PermanentDeliveryError(
                f"{exc.message} (gave up after {attempts} attempts)",
                channel=channel,
                provider_code=exc.provider_code,
            )
            return self._failure(channel, provider, demoted, attempts)
        except DeliveryError as exc:
            logger.warning(
                "Permanent delivery failure",
                extra={"channel": channel, "attempts": attempts, "provider_code": exc.provider_code},
            )
            return self._failure(channel, provider, exc, attempts)

        return ChannelResult(
            channel=channel,
            success=True,
            provider=receipt.provider,
            message_id=receipt.message_id,
            attempts=attempts,
            sent_at=utcnow(),
        )

    @staticmethod
    def _failure(channel: str, provider: str, exc: DeliveryError, attempts: int) -> ChannelResult:
        return ChannelResult(
            channel=channel,
            success=False,
            provider=provider,
            error=exc.message,
            error_code=exc.provider_code or exc.code,
            attempts=attempts,
        )

    @staticmethod
    def _log_retry(channel: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.info(
                "Retrying delivery",
                extra={
                    "channel": channel,
                    "attempt": state.attempt_number,
                    "next_wait": state.next_action.sleep if state.next_action else None,
                    "error": str(exc) if exc else None,
                },
            )

        return _before_sleep
