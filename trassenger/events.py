"""
Notifications published to the presentation layer and the desktop.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Union

from .identity import PeerIdentity
from .store import Message

logger = logging.getLogger(__name__)

APP_NAME = "Trassenger"


@dataclass(frozen=True)
class PollingIntervalChanged:
    """Current poll interval. Published after every cycle, even if unchanged."""
    interval: int


@dataclass(frozen=True)
class NewMessageDecoded:
    message: Message
    peer: PeerIdentity


@dataclass(frozen=True)
class UnreadCountChanged:
    count: int


SyncEvent = Union[PollingIntervalChanged, NewMessageDecoded, UnreadCountChanged]
EventHandler = Callable[[SyncEvent], None]


class EventBus:
    """Fan-out of sync events to registered handlers.

    A failing handler is logged and skipped; it never reaches the poll loop.
    """

    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def publish(self, event: SyncEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler {handler!r} failed on {type(event).__name__}: {e}")


class Notifier:
    """Desktop notification collaborator. The default just logs."""

    def notify(self, title: str, body: str) -> None:
        logger.info(f"Notification: {title}: {body}")


class UnreadCounter:
    """Unread message count shown by the tray; publishes every change."""

    def __init__(self, events: EventBus):
        self.events = events
        self.count = 0

    def increment(self) -> int:
        self.count += 1
        self.events.publish(UnreadCountChanged(self.count))
        return self.count

    def reset(self) -> None:
        if self.count == 0:
            return
        self.count = 0
        self.events.publish(UnreadCountChanged(0))
