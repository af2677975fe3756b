"""WhatsApp (chat-push) sender"""

import json
from typing import Any, Dict, Optional

from rsvp_dispatch.core.config import settings
from rsvp_dispatch.models.bulk_job import Channel
from rsvp_dispatch.services.channels.base import DispatchLimits
from rsvp_dispatch.services.channels.twilio import TwilioChannelSender, text_body
from rsvp_dispatch.services.composer import RenderedMessage


class WhatsAppSender(TwilioChannelSender):
    channel = Channel.CHAT
    RATE_LIMITS = DispatchLimits(batch_size=10, concurrency=5, batch_delay=1.1, wave_delay=0.2)

    def __init__(self, from_number: Optional[str] = None, **kwargs):
        super().__init__(from_number=from_number or settings.TWILIO_WHATSAPP_FROM, **kwargs)

    def format_address(self, e164: str) -> str:
        return f"whatsapp:{e164}"

    def build_payload(self, to: str, message: RenderedMessage) -> Dict[str, Any]:
        payload = {
            "From": f"whatsapp:{self.from_number}",
            "To": to,
        }
        if message.content_sid:
            # Approved template with native quick-reply buttons
            payload["ContentSid"] = message.content_sid
            if message.content_variables:
                payload["ContentVariables"] = json.dumps(message.content_variables, ensure_ascii=False)
        else:
            payload["Body"] = text_body(message)
        if message.media_url:
            payload["MediaUrl"] = message.media_url
        return payload
