"""Notification sinks for human-readable outcome messages.

Sinks are display-only: a sink that fails is logged and ignored, it never
changes the result of the command that produced the message.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)

Level = Literal["success", "info", "error"]


class Notifier(Protocol):
    def notify(self, level: Level, title: str, description: str = "") -> None:
        ...


class LogNotifier:
    def notify(self, level: Level, title: str, description: str = "") -> None:
        log_level = logging.WARNING if level == "error" else logging.INFO
        logger.log(log_level, "%s: %s", title, description)


class WebhookNotifier:
    """POSTs each message as JSON to a webhook (chat room, dashboard feed...).

    Called from a running event loop, the POST is scheduled as a task so the
    caller never waits on the webhook; outside a loop it is sent inline.
    """

    def __init__(self, url: str, *, timeout_seconds: float = 10.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    def notify(self, level: Level, title: str, description: str = "") -> None:
        payload = {"level": level, "title": title, "description": description}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                r = client.post(self.url, json=payload)
                r.raise_for_status()
            return

        task = loop.create_task(self._deliver(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, payload: dict[str, str]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                r = await client.post(self.url, json=payload)
                r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Webhook delivery failed for %r (%s: %s)", payload["title"], type(e).__name__, e)

    async def drain(self) -> None:
        """Wait for deliveries still in flight."""
        if self._tasks:
            await asyncio.gather(*self._tasks)


def safe_notify(notifier: Notifier | None, level: Level, title: str, description: str = "") -> None:
    if notifier is None:
        return
    try:
        notifier.notify(level, title, description)
    except Exception as e:
        logger.warning("Notification sink failed (%s: %s)", type(e).__name__, e)
