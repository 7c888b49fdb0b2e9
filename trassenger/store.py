"""
Local store for Trassenger.
Keys, contacts, configuration and message history on local disk.

Both the interactive session and the background service open the same store.
Every message write is a single autocommitted statement on a WAL-mode SQLite
database, so a reader never sees a partial insert.
"""

import json
import sqlite3
import logging
from dataclasses import dataclass
from typing import Optional, List

from .config import Config, Paths
from .contacts import DuplicateContact
from .conversation import derive_conversation_id
from .identity import Identity, PeerIdentity

logger = logging.getLogger(__name__)

STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_DELIVERED = "delivered"

OUTBOUND_SENDER_LABEL = "You"

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    queue_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    is_outbound INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_queue ON messages (queue_id, timestamp);
"""


@dataclass
class Message:
    """A message as kept in the local history."""
    id: str
    queue_id: str
    sender: str
    content: str
    timestamp: int
    msg_type: str = "text"
    status: str = STATUS_DELIVERED
    is_outbound: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Message":
        return cls(
            id=row['id'],
            queue_id=row['queue_id'],
            sender=row['sender'],
            content=row['content'],
            timestamp=row['timestamp'],
            msg_type=row['type'],
            status=row['status'],
            is_outbound=bool(row['is_outbound']),
        )


class LocalStore:
    """Durable record of identity, contacts, config and history."""

    def __init__(self, paths: Paths):
        self.paths = paths
        self.paths.ensure()
        self._db: Optional[sqlite3.Connection] = None

    # Identity and config

    def load_identity(self) -> Identity:
        return Identity.load(self.paths.identity_file)

    def save_identity(self, identity: Identity) -> None:
        identity.save(self.paths.identity_file)

    def load_config(self) -> Config:
        return Config.load(self.paths.config_file)

    def save_config(self, config: Config) -> None:
        config.save(self.paths.config_file)

    # Contacts

    def list_peers(self, local_exchange_key: Optional[bytes] = None) -> List[PeerIdentity]:
        """All known peers, in the order they were added.

        With local_exchange_key, cached conversation ids are re-derived and
        corrected if they disagree with the keys.
        """
        if not self.paths.peers_file.exists():
            return []

        with open(self.paths.peers_file, 'r') as f:
            data = json.load(f)

        if not isinstance(data, list):
            logger.error(f"{self.paths.peers_file} does not hold a list of peers, ignoring it")
            return []

        peers = []
        for index, entry in enumerate(data):
            try:
                peers.append(PeerIdentity.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable peer entry #{index}: {type(e).__name__}: {e}")

        if local_exchange_key is not None:
            for peer in peers:
                derived = derive_conversation_id(local_exchange_key, peer.exchange_key)
                if peer._conversation_id != derived:
                    if peer._conversation_id is not None:
                        logger.warning(
                            f"Stored queue id for '{peer.name}' does not match its keys, using {derived}"
                        )
                    peer._conversation_id = derived

        return peers

    def _write_peers(self, peers: List[PeerIdentity], local_exchange_key: bytes) -> None:
        data = [peer.to_dict(local_exchange_key) for peer in peers]
        tmp_path = self.paths.peers_file.with_suffix('.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self.paths.peers_file)

    def get_peer(self, name: str) -> Optional[PeerIdentity]:
        for peer in self.list_peers():
            if peer.name == name:
                return peer
        return None

    def add_peer(self, peer: PeerIdentity, local_exchange_key: bytes) -> PeerIdentity:
        """Add a contact. Raises DuplicateContact if its exchange key is known."""
        peers = self.list_peers(local_exchange_key)
        for existing in peers:
            if existing.exchange_key == peer.exchange_key:
                raise DuplicateContact(existing.name)

        # Same name means the contact is being replaced
        peers = [p for p in peers if p.name != peer.name]
        peers.append(peer)
        self._write_peers(peers, local_exchange_key)
        logger.info(f"Contact imported: {peer.name} ({peer.conversation_id(local_exchange_key)})")
        return peer

    def remove_peer(self, name: str, local_exchange_key: bytes) -> bool:
        peers = self.list_peers(local_exchange_key)
        remaining = [p for p in peers if p.name != name]
        if len(remaining) == len(peers):
            return False
        self._write_peers(remaining, local_exchange_key)
        return True

    def rename_peer(self, old_name: str, new_name: str, local_exchange_key: bytes) -> bool:
        """Change a contact's display label. Keys are never changed."""
        new_name = new_name.strip()
        if not new_name:
            raise ValueError("Name cannot be empty")

        peers = self.list_peers(local_exchange_key)
        if any(p.name == new_name for p in peers):
            raise ValueError(f"A contact named '{new_name}' already exists")

        found = False
        for peer in peers:
            if peer.name == old_name:
                peer.name = new_name
                found = True
        if found:
            self._write_peers(peers, local_exchange_key)
        return found

    # Messages

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            self.paths.messages_db.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.paths.messages_db),
                timeout=10,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            self._db = conn
        return self._db

    def save_message(self, message: Message) -> None:
        """Insert or replace one message (idempotent on id)."""
        self.db.execute(
            "INSERT OR REPLACE INTO messages "
            "(id, queue_id, sender, content, timestamp, type, status, is_outbound) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.id,
                message.queue_id,
                message.sender,
                message.content,
                message.timestamp,
                message.msg_type,
                message.status,
                1 if message.is_outbound else 0,
            ),
        )

    def has_message(self, message_id: str) -> bool:
        row = self.db.execute(
            "SELECT 1 FROM messages WHERE id = ?", (message_id,)
        ).fetchone()
        return row is not None

    def update_message_status(self, message_id: str, status: str) -> None:
        self.db.execute(
            "UPDATE messages SET status = ? WHERE id = ?", (status, message_id)
        )

    def list_messages_for_queue(self, queue_id: str) -> List[Message]:
        rows = self.db.execute(
            "SELECT id, queue_id, sender, content, timestamp, type, status, is_outbound "
            "FROM messages WHERE queue_id = ? ORDER BY timestamp ASC, rowid ASC",
            (queue_id,),
        ).fetchall()
        return [Message.from_row(row) for row in rows]

    def list_messages(self, peer: PeerIdentity, local_exchange_key: bytes) -> List[Message]:
        """History of the conversation with one peer, oldest first."""
        return self.list_messages_for_queue(peer.conversation_id(local_exchange_key))

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None
