"""
Background service for Trassenger.

Runs when no interactive session is open: polls every conversation queue at a
fixed interval, raises a desktop notification per new message and keeps the
unread counter. While an interactive session is running it stays out of the
way and touches neither the relay nor the store.
"""

import asyncio
import logging
from typing import Optional, List, Tuple

from .audit import AuditLog
from .config import Config, Paths
from .coordination import ActiveSessionMarker, SingleInstanceMarker, install_signal_handlers
from .events import EventBus, Notifier, UnreadCounter, NewMessageDecoded, APP_NAME
from .identity import Identity, PeerIdentity
from .scheduler import MailboxSync, PollScheduler, PollState
from .store import LocalStore, Message
from .transport import MailboxClient

logger = logging.getLogger(__name__)

NOTIFICATION_PREVIEW_CHARS = 80


def _preview(content: str) -> str:
    if len(content) <= NOTIFICATION_PREVIEW_CHARS:
        return content
    return content[:NOTIFICATION_PREVIEW_CHARS - 3] + "..."


class BackgroundService:
    """
    Fixed-interval poller with notifications.

    Usage:
        service = BackgroundService.from_paths(Paths.default())
        await service.run()
    """

    def __init__(
        self,
        identity: Identity,
        store: LocalStore,
        transport: MailboxClient,
        config: Config,
        notifier: Optional[Notifier] = None,
        events: Optional[EventBus] = None,
        audit: Optional[AuditLog] = None,
        sleep=asyncio.sleep,
    ):
        self.identity = identity
        self.store = store
        self.config = config
        self.notifier = notifier or Notifier()
        self.events = events or EventBus()
        self.audit = audit

        paths = store.paths
        self.active_session = ActiveSessionMarker(paths.active_session_marker, audit)
        self.instance_marker = SingleInstanceMarker(paths.single_instance_marker, audit)

        self.unread = UnreadCounter(self.events)
        self.sync = MailboxSync(identity, store, transport, audit)
        self.scheduler = PollScheduler(
            self.sync,
            PollState.fixed(config.background_interval_secs),
            self.events,
            sleep=sleep,
        )
        self.events.subscribe(self._on_event)

    @classmethod
    def from_paths(cls, paths: Paths, notifier: Optional[Notifier] = None) -> "BackgroundService":
        """Wire the service from what is on disk. Raises IdentityNotFound."""
        store = LocalStore(paths)
        identity = store.load_identity()
        config = store.load_config()
        transport = MailboxClient(config.server_url, timeout=config.request_timeout_secs)
        return cls(
            identity,
            store,
            transport,
            config,
            notifier=notifier,
            audit=AuditLog(paths.logs_dir, role="daemon"),
        )

    def _on_event(self, event) -> None:
        if isinstance(event, NewMessageDecoded):
            self.notifier.notify(
                f"{APP_NAME} - {event.peer.name}",
                _preview(event.message.content),
            )
            self.unread.increment()

    async def run_cycle(self) -> List[Tuple[Message, PeerIdentity]]:
        """One poll, unless an interactive session owns the relay right now."""
        if self.active_session.is_present():
            logger.debug("Interactive session running, skipping poll")
            self.unread.reset()
            return []

        return await self.scheduler.run_once()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Poll until stopped. Raises InstanceAlreadyRunning if another daemon is live."""
        try:
            with self.instance_marker:
                logger.info(
                    f"Daemon started, polling every {self.config.background_interval_secs}s"
                )
                while stop is None or not stop.is_set():
                    await self.run_cycle()
                    if stop is not None and stop.is_set():
                        break
                    await self.scheduler.wait_interval()
        finally:
            self.store.close()
            if self.audit:
                self.audit.close()
            logger.info("Daemon stopped")


async def run_daemon(paths: Paths, notifier: Optional[Notifier] = None) -> None:
    """Entry point used by the command line: run until a termination signal."""
    service = BackgroundService.from_paths(paths, notifier)
    task = asyncio.ensure_future(service.run())
    install_signal_handlers(task)
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Daemon shutting down")
