"""Abstract base class for channel senders"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from rsvp_dispatch.services.composer import RenderedMessage


class ErrorKind:
    """Provider-independent classification of a failed send"""
    INVALID_ADDRESS = "INVALID_ADDRESS"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_DOWN = "PROVIDER_DOWN"
    CONTENT_REJECTED = "CONTENT_REJECTED"
    UNKNOWN = "UNKNOWN"

    ALL = (INVALID_ADDRESS, RATE_LIMITED, PROVIDER_DOWN, CONTENT_REJECTED, UNKNOWN)


@dataclass(frozen=True)
class DispatchLimits:
    """Pacing for one dispatcher invocation.

    batch_size recipients per sub-batch, at most `concurrency` sends in flight,
    `wave_delay` seconds between concurrency waves of a sub-batch and
    `batch_delay` seconds between sub-batches.
    """
    batch_size: int = 10
    concurrency: int = 5
    batch_delay: float = 1.1
    wave_delay: float = 0.2

    def __post_init__(self):
        if self.batch_size < 1 or self.concurrency < 1:
            raise ValueError("batch_size and concurrency must be at least 1")
        if self.batch_delay < 0 or self.wave_delay < 0:
            raise ValueError("delays cannot be negative")


@dataclass
class SendResult:
    delivered: bool
    provider_message_id: Optional[str] = None
    error_kind: Optional[str] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error_kind: str, **provider_response) -> "SendResult":
        return cls(delivered=False, error_kind=error_kind, provider_response=provider_response)


class BaseChannelSender(ABC):
    """Interface every messaging channel implements.

    Senders deliver exactly one message per call. They never sleep or retry;
    pacing belongs to the dispatcher, which reads RATE_LIMITS.
    """

    channel: str = ""
    RATE_LIMITS = DispatchLimits()

    @abstractmethod
    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        """Deliver one message.

        Args:
            address: Recipient phone number as stored on the guest
            message: Rendered message

        Returns:
            SendResult; provider failures are reported in it, not raised
        """
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check the configured credentials against the provider.

        Returns:
            True if the provider accepted the credentials
        """
        pass

    async def aclose(self) -> None:
        """Release network resources held by the sender"""
        return None
