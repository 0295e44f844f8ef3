"""Notification handlers — log, webhook, and in-memory delivery.

Architecture
~~~~~~~~~~~~
* **NotificationHandler** — abstract base for delivery channels.
* **LogHandler / WebhookHandler / InMemoryHandler** — concrete channels.
* **NotificationDispatcher** — the notification collaborator used by jobs:
  ``send(kind, payload)`` fans out to every handler with bounded retries, and
  ``is_healthy()`` lets a job self-check before attempting delivery.
* **create_dispatcher()** — factory that wires handlers from settings.

Adding a new channel
~~~~~~~~~~~~~~~~~~~~
1. Subclass ``NotificationHandler``.
2. Implement ``async send(notification) -> bool``.
3. Optionally override ``is_healthy()`` and set ``name`` for debug output.
4. Register via ``dispatcher.add_handler(...)`` or add to the factory.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
import structlog

from step_mood.models import Notification, NotificationKind
from step_mood.scheduler.retry import FixedBackoff, RetryExhaustedError, with_retry

if TYPE_CHECKING:
    from step_mood.config import Settings

logger = structlog.get_logger(__name__)


class DeliveryError(Exception):
    """A handler reported that it could not deliver a notification."""


# ── Dispatch result ───────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Outcome summary for a single ``dispatch()`` call."""

    notification_id: str
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        return len(self.failed) == 0

    @property
    def delivered(self) -> bool:
        return len(self.sent) > 0


# ── Abstract handler ──────────────────────────────────────────


class NotificationHandler(ABC):
    """Contract for delivery channels.

    Subclasses must implement :meth:`send`.  They may override
    :meth:`is_healthy` and :meth:`should_handle`.
    """

    name: str = "base"

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Deliver a notification.  Return ``True`` on success."""

    def is_healthy(self) -> bool:
        return True

    def should_handle(self, notification: Notification) -> bool:  # noqa: ARG002
        """Return ``False`` to skip this notification (default: handle all)."""
        return True


# ── Concrete handlers ────────────────────────────────────────


class LogHandler(NotificationHandler):
    """Write notifications to the structured log (always enabled)."""

    name = "log"

    async def send(self, notification: Notification) -> bool:
        logger.info(
            "notification.log",
            kind=notification.kind.value,
            title=notification.title,
            message=notification.message,
        )
        return True


class WebhookHandler(NotificationHandler):
    """POST notification JSON to an external webhook URL.

    Reports unhealthy after ``unhealthy_after`` consecutive failures, until the
    next successful delivery.
    """

    name = "webhook"

    def __init__(self, url: str, *, timeout: float = 10.0, unhealthy_after: int = 3) -> None:
        self._url = url
        self._timeout = timeout
        self._unhealthy_after = unhealthy_after
        self._consecutive_failures = 0

    def is_healthy(self) -> bool:
        return self._consecutive_failures < self._unhealthy_after

    async def send(self, notification: Notification) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url, json=notification.model_dump(mode="json"))
                resp.raise_for_status()
            self._consecutive_failures = 0
            logger.info("notification.webhook_sent", url=self._url, notification_id=notification.id)
            return True
        except httpx.HTTPError as exc:
            self._consecutive_failures += 1
            logger.error("notification.webhook_failed", url=self._url, error=str(exc))
            return False


class InMemoryHandler(NotificationHandler):
    """Keep delivered notifications in a list (diagnostics and tests)."""

    name = "memory"

    def __init__(self, *, healthy: bool = True, fail_times: int = 0) -> None:
        self.sent: list[Notification] = []
        self.healthy = healthy
        self._fail_times = fail_times

    def is_healthy(self) -> bool:
        return self.healthy

    async def send(self, notification: Notification) -> bool:
        if self._fail_times > 0:
            self._fail_times -= 1
            return False
        self.sent.append(notification)
        return True


# ── Dispatcher ────────────────────────────────────────────────


class NotificationDispatcher:
    """Fan-out notifications to registered handlers with error isolation.

    Each handler is retried independently; a failure in one channel never
    blocks delivery to the others.
    """

    def __init__(
        self,
        *,
        handlers: list[NotificationHandler] | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._handlers: list[NotificationHandler] = handlers or [LogHandler()]
        self._max_attempts = max_attempts
        self._backoff = FixedBackoff(backoff_seconds)
        self._sleep = sleep

    # ── Handler management ────────────────────────────────────

    def add_handler(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, name: str) -> bool:
        """Remove the first handler matching *name*. Return ``True`` if found."""
        for i, h in enumerate(self._handlers):
            if h.name == name:
                self._handlers.pop(i)
                return True
        return False

    @property
    def handler_names(self) -> list[str]:
        return [h.name for h in self._handlers]

    def is_healthy(self) -> bool:
        """``True`` when at least one channel can currently deliver."""
        return any(h.is_healthy() for h in self._handlers)

    # ── Dispatch ──────────────────────────────────────────────

    async def send(self, kind: NotificationKind, payload: dict[str, Any]) -> bool:
        """Build and deliver a notification; ``True`` if any channel took it."""
        notification = Notification(
            kind=kind,
            title=str(payload.get("title", kind.value.replace("_", " ").title())),
            message=str(payload.get("message", "")),
            payload=payload,
        )
        result = await self.dispatch(notification)
        return result.delivered

    async def dispatch(self, notification: Notification) -> DispatchResult:
        sent: list[str] = []
        failed: list[str] = []

        for handler in self._handlers:
            if not handler.should_handle(notification):
                continue
            try:
                await self._deliver_with_retry(handler, notification)
                sent.append(handler.name)
            except RetryExhaustedError:
                failed.append(handler.name)
            except Exception:
                logger.exception(
                    "notification.handler_error",
                    handler=handler.name,
                    notification_id=notification.id,
                )
                failed.append(handler.name)

        result = DispatchResult(notification_id=notification.id, sent=sent, failed=failed)
        if result.failed:
            logger.warning(
                "notification.partial_failure",
                notification_id=notification.id,
                failed=result.failed,
            )
        return result

    async def _deliver_with_retry(self, handler: NotificationHandler, notification: Notification) -> None:
        @with_retry(self._max_attempts, self._backoff, retry_on=(DeliveryError,), sleep=self._sleep)
        async def deliver() -> None:
            if not await handler.send(notification):
                raise DeliveryError(handler.name)

        await deliver()


# ── Factory ───────────────────────────────────────────────────


def create_dispatcher(settings: Settings) -> NotificationDispatcher:
    """Build a :class:`NotificationDispatcher` wired from application settings.

    * **LogHandler** is always registered.
    * **WebhookHandler** is added when ``settings.webhook_url`` is non-empty.
    """
    dispatcher = NotificationDispatcher(
        max_attempts=settings.notification_max_attempts,
        backoff_seconds=settings.notification_backoff_seconds,
    )
    if settings.webhook_url:
        dispatcher.add_handler(WebhookHandler(settings.webhook_url))
    return dispatcher
