"""Twilio Programmable Messaging client shared by the WhatsApp and SMS senders"""

import logging
from abc import abstractmethod
import time
from typing import Any, Dict, Optional

import httpx

from rsvp_dispatch.core.config import settings, TWILIO_MESSAGES_URL, TWILIO_ACCOUNT_URL
from rsvp_dispatch.core.metrics import send_latency_histogram
from rsvp_dispatch.core.otel import dispatch_span
from rsvp_dispatch.models.bulk_job import MessageFormat
from rsvp_dispatch.services.channels.base import BaseChannelSender, ErrorKind, SendResult
from rsvp_dispatch.services.channels.phone import format_to_e164
from rsvp_dispatch.services.composer import RenderedMessage

channels_logger = logging.getLogger("channels")

INVALID_ADDRESS_CODES = {21211, 21214, 21408, 21608, 21610, 21614, 63003, 63024}
RATE_LIMITED_CODES = {14107, 20429, 63016, 63017}
CONTENT_REJECTED_CODES = {21617, 63005, 63007, 63013, 63018}
AUTH_ERROR_CODES = {20003, 20404}


def map_twilio_error(http_status: int, code: Optional[int]) -> str:
    """Classify a Twilio error response into an ErrorKind"""
    if code in INVALID_ADDRESS_CODES:
        return ErrorKind.INVALID_ADDRESS
    if code in RATE_LIMITED_CODES or http_status == 429:
        return ErrorKind.RATE_LIMITED
    if code in CONTENT_REJECTED_CODES:
        return ErrorKind.CONTENT_REJECTED
    # Bad credentials make the provider unusable for every recipient
    if code in AUTH_ERROR_CODES or http_status in (401, 403) or http_status >= 500:
        return ErrorKind.PROVIDER_DOWN
    return ErrorKind.UNKNOWN


def text_body(message: RenderedMessage) -> str:
    """Body text with button labels spelled out for channels without native buttons"""
    if message.shape == MessageFormat.BUTTONS and message.buttons:
        options = "\n".join(f"{i}. {label}" for i, label in enumerate(message.buttons, start=1))
        return f"{message.body}\n\n{options}"
    return message.body


class TwilioChannelSender(BaseChannelSender):
    """Sends one message per call through the Twilio Messages resource.

    Args:
        account_sid / auth_token / from_number: Credentials, default from settings
        client: Shared httpx.AsyncClient; created on first use when omitted
        timeout: Per-request timeout in seconds
        country: Default country for numbers without an international prefix
    """

    def __init__(
        self,
        from_number: str,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        country: Optional[str] = None
    ):
        self.account_sid = account_sid if account_sid is not None else settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number
        self.timeout = timeout or settings.SEND_TIMEOUT_SECONDS
        self.country = country
        self._client = client
        self._owns_client = client is None

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def format_address(self, e164: str) -> str:
        return e164

    @abstractmethod
    def build_payload(self, to: str, message: RenderedMessage) -> Dict[str, Any]:
        """Form fields for the Messages resource, addressed to the formatted number"""
        pass

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        e164 = format_to_e164(address, self.country)
        if not e164:
            return SendResult.failure(ErrorKind.INVALID_ADDRESS, reason="unparseable phone number")

        if not self.is_configured:
            channels_logger.error(f"{self.channel} sender is not configured, cannot send")
            return SendResult.failure(ErrorKind.PROVIDER_DOWN, reason="sender not configured")

        url = TWILIO_MESSAGES_URL.format(account_sid=self.account_sid)
        payload = self.build_payload(self.format_address(e164), message)
        started = time.monotonic()

        with dispatch_span("provider.send", channel=self.channel, shape=message.shape) as span:
            try:
                response = await self._get_client().post(
                    url,
                    data=payload,
                    auth=(self.account_sid, self.auth_token),
                    timeout=self.timeout
                )
            except httpx.TimeoutException:
                channels_logger.warning(f"{self.channel} send timed out after {self.timeout}s")
                return SendResult.failure(ErrorKind.PROVIDER_DOWN, reason="timeout")
            except httpx.RequestError as e:
                channels_logger.warning(f"{self.channel} send transport error: {e}")
                return SendResult.failure(ErrorKind.PROVIDER_DOWN, reason=str(e))
            finally:
                send_latency_histogram.labels(channel=self.channel).observe(time.monotonic() - started)
            span.set_attribute("rsvp.http_status", response.status_code)

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text[:500]}

        if 200 <= response.status_code < 300:
            return SendResult(
                delivered=True,
                provider_message_id=data.get("sid"),
                provider_response={"status": data.get("status"), "http_status": response.status_code},
            )

        code = data.get("code") if isinstance(data, dict) else None
        error_kind = map_twilio_error(response.status_code, code)
        channels_logger.warning(
            f"{self.channel} send rejected - HTTP {response.status_code}, code {code}, kind {error_kind}"
        )
        return SendResult.failure(
            error_kind,
            http_status=response.status_code,
            code=code,
            message=data.get("message") if isinstance(data, dict) else None,
        )

    async def test_connection(self) -> bool:
        if not self.is_configured:
            return False
        try:
            response = await self._get_client().get(
                TWILIO_ACCOUNT_URL.format(account_sid=self.account_sid),
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout
            )
        except httpx.RequestError as e:
            channels_logger.warning(f"{self.channel} connection test failed: {e}")
            return False
        return response.status_code == 200

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
