"""Tests for willpower.notify.router (NotificationRouter)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from unittest.mock import AsyncMock

import pytest

from willpower.notify.base import Delivery, NotificationKind, NotificationProvider
from willpower.notify.router import NotificationRouter


class FakeProvider(NotificationProvider):
    """Provider that reaches recipients carrying its address field."""

    def __init__(self, name: str = "fake", address_field: str = "fake_id") -> None:
        self._name = name
        self._address_field = address_field
        self.notify_mock = AsyncMock(return_value=Delivery(channel=name, recipient_id="u1", message_id=7))
        self.initialize_mock = AsyncMock()
        self.shutdown_mock = AsyncMock()

    @property
    def name(self) -> str:
        return self._name

    def can_reach(self, recipient: Mapping[str, Any]) -> bool:
        return bool(recipient.get(self._address_field))

    async def notify(self, recipient: Mapping[str, Any], message: str) -> Delivery:
        result: Delivery = await self.notify_mock(recipient, message)
        return result

    async def initialize(self) -> None:
        await self.initialize_mock()

    async def shutdown(self) -> None:
        await self.shutdown_mock()


@pytest.mark.asyncio
async def test_routes_to_first_reachable_provider() -> None:
    router = NotificationRouter()
    email = FakeProvider("email", "email")
    chat = FakeProvider("chat", "chat_id")
    router.register(email)
    router.register(chat)

    delivery = await router.notify({"id": "u1", "chat_id": 5}, "hi")

    assert delivery is not None
    assert delivery.channel == "chat"
    email.notify_mock.assert_not_awaited()
    chat.notify_mock.assert_awaited_once()


@pytest.mark.asyncio
async def test_kind_restricts_providers() -> None:
    router = NotificationRouter()
    chat = FakeProvider("chat", "chat_id")
    router.register(chat, kinds=[NotificationKind.INVITE])

    assert router.get_provider({"chat_id": 5}, NotificationKind.NUDGE) is None
    assert router.get_provider({"chat_id": 5}, NotificationKind.INVITE) is chat


@pytest.mark.asyncio
async def test_unreachable_recipient_returns_none() -> None:
    router = NotificationRouter()
    router.register(FakeProvider())
    assert await router.notify({"id": "u1"}, "hi") is None


@pytest.mark.asyncio
async def test_register_same_provider_twice() -> None:
    router = NotificationRouter()
    provider = FakeProvider()
    router.register(provider)
    router.register(provider)
    assert router.providers == [provider]


@pytest.mark.asyncio
async def test_initialize_and_shutdown_all() -> None:
    router = NotificationRouter()
    a, b = FakeProvider("a"), FakeProvider("b")
    router.register(a)
    router.register(b)
    await router.initialize()
    await router.shutdown()
    for provider in (a, b):
        provider.initialize_mock.assert_awaited_once()
        provider.shutdown_mock.assert_awaited_once()
