"""
Trassenger - P2P Encrypted Messenger over a Mailbox Relay

Peers exchange contact cards once, then talk through a stateless relay that
only ever sees sealed, signed blobs in per-conversation queues. This package
holds the sync engine: envelopes, conversation ids, the adaptive poll
scheduler, the background service and the local store.

Usage:
    from trassenger import TrassengerClient, Paths

    client = TrassengerClient.from_paths(Paths.default())
    client.import_contact("~/Downloads/contact-Bob.json")
    await client.send("Bob", "hi")
"""

__version__ = "0.3.0"
__protocol_version__ = "trassenger/1"

from .client import TrassengerClient, UnknownContact
from .config import Config, Paths
from .conversation import derive_conversation_id
from .coordination import (
    ActiveSessionMarker,
    SingleInstanceMarker,
    InstanceAlreadyRunning,
    StaleCoordinationMarker,
)
from .daemon import BackgroundService
from .envelope import (
    PlaintextMessage,
    DecodeError,
    MalformedEnvelope,
    OwnMessage,
    SignatureInvalid,
    DecryptionFailed,
    PayloadMalformed,
)
from .identity import Identity, PeerIdentity, IdentityNotFound
from .scheduler import MailboxSync, PollScheduler, PollState
from .store import LocalStore, Message
from .transport import MailboxClient, TransportUnavailable

__all__ = [
    # Core
    "TrassengerClient",
    "BackgroundService",
    "Identity",
    "PeerIdentity",
    "derive_conversation_id",
    # Envelope
    "PlaintextMessage",
    "DecodeError",
    "MalformedEnvelope",
    "OwnMessage",
    "SignatureInvalid",
    "DecryptionFailed",
    "PayloadMalformed",
    # Sync
    "MailboxSync",
    "PollScheduler",
    "PollState",
    # Transport
    "MailboxClient",
    "TransportUnavailable",
    # Storage and config
    "LocalStore",
    "Message",
    "Config",
    "Paths",
    # Coordination
    "ActiveSessionMarker",
    "SingleInstanceMarker",
    "InstanceAlreadyRunning",
    "StaleCoordinationMarker",
    # Errors
    "IdentityNotFound",
    "UnknownContact",
]
