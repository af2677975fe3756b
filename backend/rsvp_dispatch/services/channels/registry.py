"""Channel sender registry"""

from rsvp_dispatch.models.bulk_job import Channel
from rsvp_dispatch.services.channels.base import BaseChannelSender
from rsvp_dispatch.services.channels.sms import SmsSender
from rsvp_dispatch.services.channels.whatsapp import WhatsAppSender

CHANNEL_SENDERS = {
    Channel.CHAT: WhatsAppSender,
    Channel.TEXT: SmsSender,
}


def get_channel_sender(channel: str, **kwargs) -> BaseChannelSender:
    """Build the sender for a resolved channel ('chat' or 'text')"""
    sender_cls = CHANNEL_SENDERS.get(channel)
    if sender_cls is None:
        raise ValueError(f"No sender registered for channel '{channel}'")
    return sender_cls(**kwargs)
