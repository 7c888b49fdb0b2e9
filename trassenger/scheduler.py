"""
Adaptive poll scheduler.

Each cycle walks the peer list in store order, fetches the conversation queue
from the relay, opens every blob and persists what decodes. After the cycle the
interval resets to the floor if anything new arrived, otherwise it doubles up
to the ceiling. Sleeping between cycles is the only suspension point.

Blobs that fail to decode stay on the relay and are retried every cycle. They
are never deleted, so a permanently broken blob will sit in its queue until
someone removes it by hand.
"""

import asyncio
import sqlite3
import logging
from dataclasses import dataclass, replace
from typing import Optional, List, Tuple, Callable, Awaitable

from . import envelope
from .audit import AuditLog
from .envelope import DecodeError, OwnMessage
from .events import EventBus, PollingIntervalChanged, NewMessageDecoded
from .identity import Identity, PeerIdentity
from .store import LocalStore, Message, STATUS_DELIVERED
from .transport import MailboxClient, ServerMessage, TransportUnavailable

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class PollState:
    """Current poll interval bounded by [floor, ceiling]."""
    floor: int
    ceiling: int
    current_interval: int = 0

    def __post_init__(self):
        if self.floor <= 0 or self.floor > self.ceiling:
            raise ValueError(f"Invalid poll bounds: floor={self.floor}, ceiling={self.ceiling}")
        if self.current_interval == 0:
            self.current_interval = self.floor

    @classmethod
    def fixed(cls, interval: int) -> "PollState":
        """A state that never moves: floor == ceiling."""
        return cls(floor=interval, ceiling=interval)

    def reset(self) -> int:
        self.current_interval = self.floor
        return self.current_interval

    def back_off(self) -> int:
        self.current_interval = min(self.current_interval * 2, self.ceiling)
        return self.current_interval

    def record_cycle(self, new_messages: int) -> int:
        """Apply the transition for one finished cycle."""
        if new_messages > 0:
            return self.reset()
        return self.back_off()


class MailboxSync:
    """The fetch, decode, store, delete cycle body."""

    def __init__(
        self,
        identity: Identity,
        store: LocalStore,
        transport: MailboxClient,
        audit: Optional[AuditLog] = None,
    ):
        self.identity = identity
        self.store = store
        self.transport = transport
        self.audit = audit

    def _resolve_sender(self, sender_signing_key: bytes, peer: PeerIdentity, peers: List[PeerIdentity]) -> str:
        """Label for the verified sender; the peer whose queue this is, when keys match."""
        if sender_signing_key == peer.signing_key:
            return peer.name
        for candidate in peers:
            if candidate.signing_key == sender_signing_key:
                return candidate.name
        logger.warning(f"Message on queue of '{peer.name}' signed by an unknown key")
        return sender_signing_key.hex()[:16]

    async def poll_peer(
        self,
        peer: PeerIdentity,
        peers: Optional[List[PeerIdentity]] = None,
    ) -> List[Message]:
        """Sync one conversation queue. Returns the newly stored messages."""
        queue_id = peer.conversation_id(self.identity.exchange_key_bytes)
        peers = peers if peers is not None else [peer]

        try:
            server_messages = await self.transport.fetch(queue_id)
        except TransportUnavailable as e:
            logger.warning(f"Error polling queue {queue_id}: {e}")
            if self.audit:
                self.audit.log_transport_unavailable(queue_id, e.operation, e.reason)
            return []

        if server_messages:
            logger.debug(f"Fetched {len(server_messages)} messages from queue {queue_id}")

        new_messages = []
        for server_msg in server_messages:
            message = await self._process(server_msg, queue_id, peer, peers)
            if message is not None:
                new_messages.append(message)
        return new_messages

    async def _process(
        self,
        server_msg: ServerMessage,
        queue_id: str,
        peer: PeerIdentity,
        peers: List[PeerIdentity],
    ) -> Optional[Message]:
        try:
            decoded = envelope.decode_text(self.identity, server_msg.data)
        except OwnMessage:
            # Our own outgoing copy; the recipient deletes it
            return None
        except DecodeError as e:
            logger.warning(
                f"Failed to process message {server_msg.id} on {queue_id}: "
                f"{type(e).__name__}: {e}"
            )
            if self.audit:
                self.audit.log_decode_failed(queue_id, server_msg.id, type(e).__name__)
            return None

        sender = self._resolve_sender(decoded.sender_signing_key, peer, peers)
        plaintext = replace(decoded.message, sender=sender)

        message = Message(
            id=server_msg.id,
            queue_id=queue_id,
            sender=plaintext.sender,
            content=plaintext.body,
            timestamp=plaintext.timestamp,
            msg_type=plaintext.kind,
            status=STATUS_DELIVERED,
            is_outbound=False,
        )

        try:
            already_stored = self.store.has_message(server_msg.id)
            self.store.save_message(message)
        except sqlite3.Error as e:
            # Not persisted, so the blob must stay on the relay
            logger.error(f"Failed to save message {server_msg.id}: {e}")
            return None

        try:
            await self.transport.delete(queue_id, server_msg.id)
        except TransportUnavailable as e:
            logger.warning(f"Failed to delete message {server_msg.id}: {e}")

        if already_stored:
            # A previous delete failed; the message was counted back then
            return None

        if self.audit:
            self.audit.log_message_received(queue_id, server_msg.id, sender)
        return message

    async def run_cycle(self) -> List[Tuple[Message, PeerIdentity]]:
        """Sync every known peer, sequentially in store order."""
        try:
            peers = self.store.list_peers(self.identity.exchange_key_bytes)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load peers: {e}")
            return []

        received = []
        for peer in peers:
            for message in await self.poll_peer(peer, peers):
                received.append((message, peer))
        return received


class PollScheduler:
    """Runs sync cycles forever, sleeping the adaptive interval in between."""

    def __init__(
        self,
        sync: MailboxSync,
        state: PollState,
        events: Optional[EventBus] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.sync = sync
        self.state = state
        self.events = events or EventBus()
        self._sleep = sleep
        self._wake = asyncio.Event()

    @property
    def current_interval(self) -> int:
        return self.state.current_interval

    def reset_interval(self) -> None:
        """User activity: drop back to the floor and poll soon."""
        self.state.reset()
        logger.info(f"User activity - polling interval reset to {self.state.current_interval}s")
        self.events.publish(PollingIntervalChanged(self.state.current_interval))
        self._wake.set()

    async def run_once(self) -> List[Tuple[Message, PeerIdentity]]:
        """One cycle plus the interval transition."""
        received = await self.sync.run_cycle()

        for message, peer in received:
            self.events.publish(NewMessageDecoded(message, peer))

        previous = self.state.current_interval
        interval = self.state.record_cycle(len(received))
        if received:
            logger.info(f"{len(received)} new messages - polling interval reset to {interval}s")
        elif interval != previous:
            logger.info(f"No messages - polling interval increased to {interval}s")

        self.events.publish(PollingIntervalChanged(interval))
        return received

    async def _wait(self, seconds: float) -> None:
        """Sleep the interval, returning early if reset_interval() is called."""
        self._wake.clear()
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waker):
                if not task.done():
                    task.cancel()

    async def wait_interval(self) -> None:
        """Sleep the current interval, returning early if reset_interval() is called."""
        await self._wait(self.state.current_interval)

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Poll until stop is set or the task is cancelled."""
        logger.info(
            f"Polling started (floor {self.state.floor}s, ceiling {self.state.ceiling}s)"
        )
        while stop is None or not stop.is_set():
            await self.run_once()
            if stop is not None and stop.is_set():
                break
            await self.wait_interval()
        logger.info("Polling stopped")
