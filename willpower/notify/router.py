"""Notification router: dispatches messages to the first provider that can reach the user."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from willpower.notify.base import Delivery, NotificationKind, NotificationProvider

logger = logging.getLogger(__name__)


class NotificationRouter:
    """Routes notifications by kind.

    Providers are tried in registration order; the first one registered for
    the kind that can reach the recipient delivers.
    """

    def __init__(self) -> None:
        self._providers: dict[str, NotificationProvider] = {}
        self._kinds: dict[NotificationKind, list[str]] = {}

    def register(
        self,
        provider: NotificationProvider,
        kinds: list[NotificationKind] | None = None,
    ) -> None:
        """Register a provider for the given notification kinds (default: all)."""
        self._providers[provider.name] = provider
        for kind in kinds or list(NotificationKind):
            names = self._kinds.setdefault(kind, [])
            if provider.name not in names:
                names.append(provider.name)

    @property
    def providers(self) -> list[NotificationProvider]:
        return list(self._providers.values())

    def get_provider(
        self,
        recipient: Mapping[str, Any],
        kind: NotificationKind = NotificationKind.NUDGE,
    ) -> NotificationProvider | None:
        """Return the provider that will deliver this kind to the recipient, if any."""
        for name in self._kinds.get(kind, []):
            provider = self._providers[name]
            if provider.can_reach(recipient):
                return provider
        return None

    async def notify(
        self,
        recipient: Mapping[str, Any],
        message: str,
        kind: NotificationKind = NotificationKind.NUDGE,
    ) -> Delivery | None:
        """Route a notification. Returns None when no provider can reach the recipient."""
        provider = self.get_provider(recipient, kind)
        if provider is None:
            logger.warning("No provider can deliver %s to %s", kind, recipient.get("id", "?"))
            return None
        return await provider.notify(recipient, message)

    async def initialize(self) -> None:
        for provider in self._providers.values():
            await provider.initialize()

    async def shutdown(self) -> None:
        for provider in self._providers.values():
            await provider.shutdown()
