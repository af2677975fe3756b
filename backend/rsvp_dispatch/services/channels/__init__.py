"""Channel senders - public API exports"""

from rsvp_dispatch.services.channels.base import (
    BaseChannelSender,
    DispatchLimits,
    ErrorKind,
    SendResult,
)
from rsvp_dispatch.services.channels.registry import CHANNEL_SENDERS, get_channel_sender
from rsvp_dispatch.services.channels.sms import SmsSender
from rsvp_dispatch.services.channels.whatsapp import WhatsAppSender

__all__ = [
    "BaseChannelSender", "DispatchLimits", "ErrorKind", "SendResult",
    "CHANNEL_SENDERS", "get_channel_sender", "SmsSender", "WhatsAppSender",
]
