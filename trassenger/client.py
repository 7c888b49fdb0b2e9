"""
Interactive Trassenger client.

The session owns the relay while it runs: it announces itself with the active
session marker, polls adaptively between the configured floor and ceiling and
sends messages on behalf of the user.
"""

import time
import uuid
import asyncio
import logging
from pathlib import Path
from typing import Optional, List

from . import envelope
from .audit import AuditLog
from .config import Config, Paths
from .contacts import parse_contact_card, read_contact_source, export_contact_card, default_export_path
from .coordination import ActiveSessionMarker
from .envelope import PlaintextMessage
from .events import EventBus
from .identity import Identity, PeerIdentity
from .scheduler import MailboxSync, PollScheduler, PollState
from .store import (
    LocalStore, Message,
    STATUS_SENDING, STATUS_SENT, STATUS_FAILED, OUTBOUND_SENDER_LABEL,
)
from .transport import MailboxClient, TransportUnavailable

logger = logging.getLogger(__name__)


class UnknownContact(LookupError):
    """No contact with that name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown contact: {name}")


class TrassengerClient:
    """
    Main client for the interactive session.

    Usage:
        client = TrassengerClient.from_paths(Paths.default())
        await client.send("Bob", "hi")

        # Poll until cancelled
        await client.run()
    """

    def __init__(
        self,
        identity: Identity,
        store: LocalStore,
        transport: MailboxClient,
        config: Config,
        events: Optional[EventBus] = None,
        audit: Optional[AuditLog] = None,
        sleep=asyncio.sleep,
    ):
        self.identity = identity
        self.store = store
        self.transport = transport
        self.config = config
        self.events = events or EventBus()
        self.audit = audit

        self.active_session = ActiveSessionMarker(store.paths.active_session_marker, audit)
        self.sync = MailboxSync(identity, store, transport, audit)
        self.scheduler = PollScheduler(
            self.sync,
            PollState(floor=config.poll_floor_secs, ceiling=config.poll_ceiling_secs),
            self.events,
            sleep=sleep,
        )

    @classmethod
    def from_paths(cls, paths: Paths, events: Optional[EventBus] = None) -> "TrassengerClient":
        """Wire the client from what is on disk. Raises IdentityNotFound."""
        store = LocalStore(paths)
        identity = store.load_identity()
        config = store.load_config()
        transport = MailboxClient(config.server_url, timeout=config.request_timeout_secs)
        return cls(
            identity,
            store,
            transport,
            config,
            events=events,
            audit=AuditLog(paths.logs_dir, role="session"),
        )

    @property
    def local_key(self) -> bytes:
        return self.identity.exchange_key_bytes

    # Contacts

    def contacts(self) -> List[PeerIdentity]:
        return self.store.list_peers(self.local_key)

    def get_contact(self, name: str) -> PeerIdentity:
        for peer in self.contacts():
            if peer.name == name:
                return peer
        raise UnknownContact(name)

    def import_contact(self, source: str, name: Optional[str] = None) -> PeerIdentity:
        """Import a card from a file path or pasted JSON.

        Raises InvalidContactPayload or DuplicateContact.
        """
        peer = parse_contact_card(read_contact_source(source), self.identity, name)
        self.store.add_peer(peer, self.local_key)
        if self.audit:
            self.audit.log_contact_imported(peer.name, peer.conversation_id(self.local_key))
        return peer

    def export_contact(self, name: str, path: Optional[Path] = None) -> Path:
        """Write our card, labelled with name, and return where it went."""
        path = path or default_export_path(name)
        export_contact_card(self.identity, name, path)
        return path

    def remove_contact(self, name: str) -> bool:
        return self.store.remove_peer(name, self.local_key)

    def rename_contact(self, old_name: str, new_name: str) -> bool:
        return self.store.rename_peer(old_name, new_name, self.local_key)

    def history(self, name: str) -> List[Message]:
        return self.store.list_messages(self.get_contact(name), self.local_key)

    # Messages

    async def send(self, peer_name: str, text: str) -> Message:
        """
        Send a text message to a contact.

        The message is stored locally before it goes out and keeps a status
        of sent or failed afterwards. Relay errors never raise; they show up
        as STATUS_FAILED on the returned message.
        """
        peer = self.get_contact(peer_name)
        queue_id = peer.conversation_id(self.local_key)

        timestamp = int(time.time())
        message = Message(
            id=str(uuid.uuid4()),
            queue_id=queue_id,
            sender=OUTBOUND_SENDER_LABEL,
            content=text,
            timestamp=timestamp,
            msg_type="text",
            status=STATUS_SENDING,
            is_outbound=True,
        )
        self.store.save_message(message)

        plaintext = PlaintextMessage(
            kind="text",
            body=text,
            timestamp=timestamp,
            sender=self.identity.exchange_public_key_hex,
        )
        blob = envelope.seal(self.identity, peer.exchange_key, plaintext)

        try:
            server_id = await self.transport.post(queue_id, blob)
            message.status = STATUS_SENT
            logger.info(f"Message sent to {peer.name} ({server_id})")
        except TransportUnavailable as e:
            message.status = STATUS_FAILED
            logger.error(f"Failed to send message to {peer.name}: {e}")

        self.store.update_message_status(message.id, message.status)
        if self.audit:
            self.audit.log_message_sent(queue_id, message.id, message.status == STATUS_SENT)

        self.scheduler.reset_interval()
        return message

    # Polling

    async def poll_now(self):
        """Run one cycle immediately."""
        return await self.scheduler.run_once()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Poll until stopped, holding the active session marker throughout."""
        with self.active_session:
            try:
                await self.scheduler.run(stop)
            finally:
                self.close()

    def close(self) -> None:
        self.store.close()
        if self.audit:
            self.audit.close()
