"""Guarded delivery of lifecycle events to the notification port."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from litestar_bpm.core.events import ProcessEvent
    from litestar_bpm.core.protocols import NotificationPort

__all__ = ["EventPublisher", "LoggingNotifier"]

logger = logging.getLogger(__name__)


class EventPublisher:
    """Delivers events to a notification port, never raising.

    A failing port is logged and otherwise ignored so that notification
    problems cannot fail the engine operation that produced the event.
    """

    def __init__(self, port: NotificationPort | None = None) -> None:
        self.port = port

    async def publish(self, *events: ProcessEvent) -> None:
        """Deliver events in order.

        Args:
            *events: Events to deliver.
        """
        if self.port is None:
            return
        for event in events:
            try:
                await self.port.notify(event)
            except Exception:
                logger.warning(
                    "Notification %s for instance %s failed",
                    event.event_type,
                    event.instance_id,
                    exc_info=True,
                )


class LoggingNotifier:
    """Notification port that writes every event to the log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def notify(self, event: ProcessEvent) -> None:
        logger.log(self.level, "%s: %s", event.event_type, event)
