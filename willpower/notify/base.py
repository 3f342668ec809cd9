"""Abstract base for notification providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class NotificationKind(StrEnum):
    """What a notification is about, used for routing."""

    NUDGE = "nudge"
    INVITE = "invite"
    BUDDY_COMPLETED = "buddy_completed"


@dataclass
class Delivery:
    """Reference to a delivered notification."""

    channel: str  # provider name (e.g. "telegram")
    recipient_id: str
    message_id: int | None = None


class NotificationProvider(ABC):
    """Abstract notification channel.

    ``recipient`` is the user record of whoever receives the message; each
    provider decides from it whether and where it can deliver.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique provider name (e.g. 'telegram')."""

    @abstractmethod
    def can_reach(self, recipient: Mapping[str, Any]) -> bool:
        """True if this provider has an address for the recipient."""

    @abstractmethod
    async def notify(self, recipient: Mapping[str, Any], message: str) -> Delivery:
        """Deliver a message. Raises RateLimitedError if the channel is throttling."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the provider (called during app startup)."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Clean shutdown (called during app teardown)."""
