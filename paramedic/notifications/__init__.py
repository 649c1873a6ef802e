"""Proactive notifications: Slack and Telegram webhooks.

Fires on lifecycle transitions:
- error   (test went down)
- warn    (test degraded)
- recover (test back to stable)

`pass` events are never forwarded. All webhook calls go through httpx async
and failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from ..config import settings
from ..health.engine import Test, error_message
from ..health.events import LifecycleEvent

if TYPE_CHECKING:
    from ..health.scheduler import Server

logger = logging.getLogger(__name__)


class NotifyLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    RECOVERY = "recovery"


# Emoji/icon mapping
_EMOJI = {
    NotifyLevel.WARNING: "⚠️",
    NotifyLevel.CRITICAL: "🔴",
    NotifyLevel.RECOVERY: "✅",
}


class NotificationManager:
    """Central dispatcher for Slack / Telegram notifications."""

    def __init__(
        self,
        slack_webhook: str = "",
        telegram_token: str = "",
        telegram_chat_id: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._transport = transport
        self.slack_webhook = slack_webhook or settings.slack_webhook_url
        self.telegram_token = telegram_token or settings.telegram_bot_token
        self.telegram_chat_id = telegram_chat_id or settings.telegram_chat_id
        self._enabled = bool(self.slack_webhook or (self.telegram_token and self.telegram_chat_id))

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "slack_configured": bool(self.slack_webhook),
            "telegram_configured": bool(self.telegram_token and self.telegram_chat_id),
        }

    def attach(self, server: Server) -> None:
        """Subscribe to the server's error / warn / recover events."""
        server.on(LifecycleEvent.ERROR, self.on_error)
        server.on(LifecycleEvent.WARN, self.on_warn)
        server.on(LifecycleEvent.RECOVER, self.on_recover)
        logger.info("Notifications attached (%s)", "enabled" if self._enabled else "disabled")

    # -- Event handlers -----------------------------------------------------

    async def on_error(self, error: BaseException, test: Test) -> None:
        await self.notify_transition(test, NotifyLevel.CRITICAL, error)

    async def on_warn(self, error: BaseException, test: Test) -> None:
        await self.notify_transition(test, NotifyLevel.WARNING, error)

    async def on_recover(self, test: Test) -> None:
        await self.notify_transition(test, NotifyLevel.RECOVERY)

    async def notify_transition(
        self,
        test: Test,
        level: NotifyLevel,
        error: BaseException | None = None,
    ) -> None:
        """Notify on a status transition of ``test``."""
        where = f"`{test.collection.name}` / `{test.name}`" if test.collection else f"`{test.name}`"
        text = (
            f"{_EMOJI[level]} *Health Alert*\n"
            f"Test: {where}\n"
            f"Status: *{test.status.label}*\n"
        )
        if error is not None:
            text += f"Detail: {error_message(error)}\n"

        await self._send(text, level)

    # -- Low-level dispatch -------------------------------------------------

    def _deliveries(self, text: str) -> list[tuple[str, str, dict[str, Any]]]:
        """(channel, url, payload) for every configured channel."""
        deliveries = []
        if self.slack_webhook:
            deliveries.append(("slack", self.slack_webhook, {"text": text, "mrkdwn": True}))
        if self.telegram_token and self.telegram_chat_id:
            deliveries.append((
                "telegram",
                f"https://api.telegram.org/bot{self.telegram_token}/sendMessage",
                {"chat_id": self.telegram_chat_id, "text": text, "parse_mode": "Markdown"},
            ))
        return deliveries

    async def _send(self, text: str, level: NotifyLevel) -> None:
        """Post ``text`` to all configured channels over one client."""
        if not self._enabled:
            return
        deliveries = self._deliveries(text)
        async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
            await asyncio.gather(*(self._post(client, *d) for d in deliveries))
        logger.debug("Sent %s notification to %d channel(s)", level.value, len(deliveries))

    async def _post(
        self,
        client: httpx.AsyncClient,
        channel: str,
        url: str,
        payload: dict[str, Any],
    ) -> bool:
        try:
            resp = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("%s notification failed: %s", channel, exc)
            return False
        if resp.status_code != 200:
            logger.warning("%s returned %d: %s", channel, resp.status_code, resp.text[:200])
            return False
        return True
