"""Tests for notification handlers and the dispatcher."""

from __future__ import annotations

import httpx
import pytest

from step_mood.config import Settings
from step_mood.models import Notification, NotificationKind
from step_mood.notifications.handlers import (
    InMemoryHandler,
    LogHandler,
    NotificationDispatcher,
    NotificationHandler,
    WebhookHandler,
    create_dispatcher,
)


async def no_sleep(_: float) -> None:
    return None


class ExplodingHandler(NotificationHandler):
    name = "exploding"

    async def send(self, notification: Notification) -> bool:
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_send_builds_notification():
    handler = InMemoryHandler()
    dispatcher = NotificationDispatcher(handlers=[handler], sleep=no_sleep)
    ok = await dispatcher.send(NotificationKind.INACTIVITY, {"title": "Move", "message": "Walk!"})
    assert ok is True
    assert handler.sent[0].kind is NotificationKind.INACTIVITY
    assert handler.sent[0].message == "Walk!"


@pytest.mark.asyncio
async def test_failed_delivery_is_retried():
    handler = InMemoryHandler(fail_times=2)
    dispatcher = NotificationDispatcher(handlers=[handler], max_attempts=3, sleep=no_sleep)
    assert await dispatcher.send(NotificationKind.MOOD_DROP, {"message": "x"}) is True
    assert len(handler.sent) == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    handler = InMemoryHandler(fail_times=5)
    dispatcher = NotificationDispatcher(handlers=[handler], max_attempts=3, sleep=no_sleep)
    assert await dispatcher.send(NotificationKind.MOOD_DROP, {"message": "x"}) is False
    assert handler.sent == []


@pytest.mark.asyncio
async def test_handler_errors_are_isolated():
    good = InMemoryHandler()
    dispatcher = NotificationDispatcher(handlers=[ExplodingHandler(), good], sleep=no_sleep)
    result = await dispatcher.dispatch(
        Notification(kind=NotificationKind.INACTIVITY, title="t", message="m"),
    )
    assert result.sent == ["memory"]
    assert result.failed == ["exploding"]
    assert not result.all_ok


def test_is_healthy_when_any_channel_is():
    dispatcher = NotificationDispatcher(handlers=[InMemoryHandler(healthy=False)])
    assert dispatcher.is_healthy() is False
    dispatcher.add_handler(LogHandler())
    assert dispatcher.is_healthy() is True
    assert dispatcher.remove_handler("log") is True
    assert dispatcher.handler_names == ["memory"]


@pytest.mark.asyncio
async def test_webhook_handler_posts_json(monkeypatch):
    requests: list[httpx.Request] = []

    def respond(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(500 if len(requests) == 1 else 200)

    transport = httpx.MockTransport(respond)
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        "step_mood.notifications.handlers.httpx.AsyncClient",
        lambda **kwargs: real_client(transport=transport, **kwargs),
    )

    handler = WebhookHandler("http://hooks.test/notify", unhealthy_after=1)
    note = Notification(kind=NotificationKind.INACTIVITY, title="t", message="m")
    assert await handler.send(note) is False
    assert handler.is_healthy() is False
    assert await handler.send(note) is True
    assert handler.is_healthy() is True
    assert requests[-1].url == "http://hooks.test/notify"


def test_create_dispatcher_from_settings():
    assert create_dispatcher(Settings(webhook_url="")).handler_names == ["log"]
    assert create_dispatcher(Settings(webhook_url="http://x.test")).handler_names == ["log", "webhook"]
