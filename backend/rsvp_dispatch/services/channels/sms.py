"""SMS (short-text) sender"""

from typing import Any, Dict, Optional

from rsvp_dispatch.core.config import settings
from rsvp_dispatch.models.bulk_job import Channel
from rsvp_dispatch.services.channels.base import DispatchLimits
from rsvp_dispatch.services.channels.twilio import TwilioChannelSender, text_body
from rsvp_dispatch.services.composer import RenderedMessage


class SmsSender(TwilioChannelSender):
    channel = Channel.TEXT
    RATE_LIMITS = DispatchLimits(batch_size=10, concurrency=5, batch_delay=1.1, wave_delay=0.2)

    def __init__(self, from_number: Optional[str] = None, **kwargs):
        super().__init__(from_number=from_number or settings.TWILIO_SMS_FROM, **kwargs)

    def build_payload(self, to: str, message: RenderedMessage) -> Dict[str, Any]:
        # No MMS: the image shape degrades to its text, which carries the RSVP link
        return {
            "From": self.from_number,
            "To": to,
            "Body": text_body(message),
        }
