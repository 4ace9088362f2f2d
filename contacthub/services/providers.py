"""Outbound SMS and email provider clients."""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from contacthub.core.config import Settings
from contacthub.core.errors import PermanentDeliveryError, TransientDeliveryError

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"

# Invalid "To" number, recipient opted out, "To" is not SMS capable.
TWILIO_PERMANENT_CODES = frozenset({21211, 21610, 21614})

GSM_SEGMENT_LENGTH = 160
UNICODE_SEGMENT_LENGTH = 70

logger = logging.getLogger(__name__)


@dataclass
class ProviderReceipt:
    provider: str
    message_id: str
    status: str | None = None


class SMSProvider(Protocol):
    name: str

    async def send_sms(self, to: str, body: str) -> ProviderReceipt:
        ...


class EmailProvider(Protocol):
    name: str

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> ProviderReceipt:
        ...


def sms_segments(body: str) -> int:
    """Number of SMS segments a body occupies (GSM 160 / unicode 70 chars)."""

    has_unicode = any(ord(char) > 0x7F for char in body)
    per_segment = UNICODE_SEGMENT_LENGTH if has_unicode else GSM_SEGMENT_LENGTH
    return max(1, math.ceil(len(body) / per_segment))


def _classify_http_failure(channel: str, response: httpx.Response, provider_code: Any = None) -> None:
    status_code = response.status_code
    message = f"{channel} provider returned HTTP {status_code}"
    code = str(provider_code) if provider_code is not None else str(status_code)
    if status_code == 429 or status_code >= 500:
        raise TransientDeliveryError(message, channel=channel, provider_code=code)
    raise PermanentDeliveryError(message, channel=channel, provider_code=code)


class TwilioSMSProvider:
    """Send SMS through the Twilio Messages REST API."""

    name = "twilio"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.account_sid = settings.twilio_account_sid
        self.auth_token = settings.twilio_auth_token
        self.from_number = settings.twilio_from_number
        self._transport = transport
        self._timeout = timeout

    async def send_sms(self, to: str, body: str) -> ProviderReceipt:
        url = TWILIO_MESSAGES_URL.format(account_sid=self.account_sid)
        payload = {"To": to, "From": self.from_number, "Body": body}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, data=payload, auth=(self.account_sid, self.auth_token))
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError("Twilio request timed out", channel="sms", provider_code="TIMEOUT") from exc
        except httpx.HTTPError as exc:
            logger.error("Failed to communicate with Twilio", exc_info=exc)
            raise TransientDeliveryError("Unable to reach Twilio", channel="sms", provider_code="NETWORK") from exc

        if response.status_code >= 400:
            error_code = _json_field(response, "code")
            logger.warning(
                "Twilio rejected message",
                extra={"status_code": response.status_code, "provider_code": error_code},
            )
            if _as_int(error_code) in TWILIO_PERMANENT_CODES:
                raise PermanentDeliveryError(
                    str(_json_field(response, "message") or "Twilio rejected the recipient"),
                    channel="sms",
                    provider_code=str(error_code),
                )
            _classify_http_failure("sms", response, error_code)

        data = response.json()
        return ProviderReceipt(provider=self.name, message_id=str(data.get("sid")), status=data.get("status"))


class SendGridEmailProvider:
    """Send email through the SendGrid v3 mail send endpoint."""

    name = "sendgrid"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = settings.sendgrid_api_key
        self.from_address = settings.email_from_address
        self._transport = transport
        self._timeout = timeout

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> ProviderReceipt:
        content = [{"type": "text/plain", "value": text}]
        if html:
            content.append({"type": "text/html", "value": html})
        body = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_address},
            "subject": subject,
            "content": content,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(SENDGRID_SEND_URL, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(
                "SendGrid request timed out", channel="email", provider_code="TIMEOUT"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Failed to communicate with SendGrid", exc_info=exc)
            raise TransientDeliveryError("Unable to reach SendGrid", channel="email", provider_code="NETWORK") from exc

        if response.status_code >= 400:
            logger.warning("SendGrid rejected message", extra={"status_code": response.status_code})
            _classify_http_failure("email", response)

        message_id = response.headers.get("X-Message-Id") or uuid.uuid4().hex
        return ProviderReceipt(provider=self.name, message_id=message_id, status="accepted")


class ConsoleSMSProvider:
    """Log SMS instead of sending; used when Twilio is not configured."""

    name = "console"

    async def send_sms(self, to: str, body: str) -> ProviderReceipt:
        message_id = f"console-sms-{uuid.uuid4().hex[:16]}"
        logger.info("SMS (console)", extra={"to": to, "body": body, "message_id": message_id})
        return ProviderReceipt(provider=self.name, message_id=message_id, status="queued")


class ConsoleEmailProvider:
    name = "console"

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> ProviderReceipt:
        message_id = f"console-email-{uuid.uuid4().hex[:16]}"
        logger.info("Email (console)", extra={"to": to, "subject": subject, "message_id": message_id})
        return ProviderReceipt(provider=self.name, message_id=message_id, status="accepted")


def build_sms_provider(settings: Settings) -> SMSProvider:
    if settings.sms_provider == "twilio" and settings.twilio_configured:
        return TwilioSMSProvider(settings)
    if settings.sms_provider == "twilio":
        logger.warning("Twilio selected but credentials are missing; using console SMS provider")
    return ConsoleSMSProvider()


def build_email_provider(settings: Settings) -> EmailProvider:
    if settings.email_provider == "sendgrid" and settings.sendgrid_api_key:
        return SendGridEmailProvider(settings)
    if settings.email_provider == "sendgrid":
        logger.warning("SendGrid selected but API key is missing; using console email provider")
    return ConsoleEmailProvider()


def _json_field(response: httpx.Response, key: str) -> Any:
    try:
        data = response.json()
    except ValueError:
        return None
    return data.get(key) if isinstance(data, dict) else None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
