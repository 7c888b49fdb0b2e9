"""
Identity management for Trassenger.
Handles key generation, persistence and the public identities of peers.

The local identity is stored unencrypted on disk (owner-only permissions).
There is exactly one per installation; it is created on first run and never
rotated.
"""

import json
import base64
import logging
from pathlib import Path
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Optional

from nacl.signing import SigningKey, VerifyKey
from nacl.public import PrivateKey, PublicKey

from .conversation import derive_conversation_id

logger = logging.getLogger(__name__)

KEY_SIZE = 32

SIGNING_PREFIX = 'ed25519:'
EXCHANGE_PREFIX = 'x25519:'


class IdentityNotFound(Exception):
    """No identity has been created for this installation yet."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"No identity found at {path}")


def _strip_key_prefix(key_str: str, expected_prefix: str) -> str:
    """Strip key type prefix if present."""
    if key_str.startswith(expected_prefix):
        return key_str[len(expected_prefix):]
    if ':' in key_str:
        prefix, rest = key_str.split(':', 1)
        logger.warning(f"Key has unexpected prefix '{prefix}:', expected '{expected_prefix}'")
        return rest
    return key_str


@dataclass
class Identity:
    """Cryptographic identity of the local installation."""

    # Ed25519 signing keys (authenticity)
    signing_private_key: SigningKey
    signing_public_key: VerifyKey

    # X25519 key agreement keys (confidentiality)
    exchange_private_key: PrivateKey
    exchange_public_key: PublicKey

    created_at: datetime

    @classmethod
    def generate(cls) -> "Identity":
        """Generate a new cryptographic identity."""
        signing_private = SigningKey.generate()
        exchange_private = PrivateKey.generate()

        return cls(
            signing_private_key=signing_private,
            signing_public_key=signing_private.verify_key,
            exchange_private_key=exchange_private,
            exchange_public_key=exchange_private.public_key,
            created_at=datetime.now(timezone.utc),
        )

    @classmethod
    def load(cls, path: Path) -> "Identity":
        """Load identity from file.

        Raises IdentityNotFound if the file does not exist. A file that exists
        but cannot be parsed raises the underlying error: a corrupt identity is
        fatal at startup.
        """
        if not path.exists():
            raise IdentityNotFound(path)

        with open(path, 'r') as f:
            data = json.load(f)

        signing_private = SigningKey(
            base64.b64decode(_strip_key_prefix(data['signing_private_key'], SIGNING_PREFIX))
        )
        exchange_private = PrivateKey(
            base64.b64decode(_strip_key_prefix(data['exchange_private_key'], EXCHANGE_PREFIX))
        )

        return cls(
            signing_private_key=signing_private,
            signing_public_key=signing_private.verify_key,
            exchange_private_key=exchange_private,
            exchange_public_key=exchange_private.public_key,
            created_at=datetime.fromisoformat(data['created_at']),
        )

    @classmethod
    def load_or_create(cls, path: Path) -> "Identity":
        """Load the identity, generating and saving one on first run."""
        try:
            return cls.load(path)
        except IdentityNotFound:
            logger.info(f"Generating new identity at {path}")
            identity = cls.generate()
            identity.save(path)
            return identity

    def save(self, path: Path) -> None:
        """Save identity to file (with restricted permissions)."""
        data = {
            'signing_private_key': SIGNING_PREFIX + base64.b64encode(
                bytes(self.signing_private_key)
            ).decode(),
            'signing_public_key': SIGNING_PREFIX + base64.b64encode(
                bytes(self.signing_public_key)
            ).decode(),
            'exchange_private_key': EXCHANGE_PREFIX + base64.b64encode(
                bytes(self.exchange_private_key)
            ).decode(),
            'exchange_public_key': EXCHANGE_PREFIX + base64.b64encode(
                bytes(self.exchange_public_key)
            ).decode(),
            'created_at': self.created_at.isoformat(),
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
        path.chmod(0o600)

    @property
    def signing_key_bytes(self) -> bytes:
        return bytes(self.signing_public_key)

    @property
    def exchange_key_bytes(self) -> bytes:
        return bytes(self.exchange_public_key)

    @property
    def signing_public_key_hex(self) -> str:
        return self.signing_key_bytes.hex()

    @property
    def exchange_public_key_hex(self) -> str:
        return self.exchange_key_bytes.hex()

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the signing key, returning the detached signature."""
        return self.signing_private_key.sign(message).signature

    def to_contact(self, name: str) -> dict:
        """Public contact card to hand to a peer."""
        return {
            'name': name,
            'encrypt_pk': self.exchange_public_key_hex,
            'sign_pk': self.signing_public_key_hex,
        }

    def conversation_id_with(self, peer: "PeerIdentity") -> str:
        return derive_conversation_id(self.exchange_key_bytes, peer.exchange_key)


@dataclass
class PeerIdentity:
    """A remote party, known only by its two public keys and a display label."""
    name: str
    exchange_key: bytes
    signing_key: bytes
    _conversation_id: Optional[str] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if len(self.exchange_key) != KEY_SIZE or len(self.signing_key) != KEY_SIZE:
            raise ValueError("Peer public keys must be 32 bytes")

    @property
    def encrypt_pk_hex(self) -> str:
        return self.exchange_key.hex()

    @property
    def sign_pk_hex(self) -> str:
        return self.signing_key.hex()

    def conversation_id(self, local_exchange_key: bytes) -> str:
        """Conversation id shared with this peer; cached after the first derivation."""
        if self._conversation_id is None:
            self._conversation_id = derive_conversation_id(local_exchange_key, self.exchange_key)
        return self._conversation_id

    @classmethod
    def from_dict(cls, data: dict) -> "PeerIdentity":
        return cls(
            name=data['name'],
            exchange_key=bytes.fromhex(data['encrypt_pk']),
            signing_key=bytes.fromhex(data['sign_pk']),
            _conversation_id=data.get('queue_id'),
        )

    def to_dict(self, local_exchange_key: bytes) -> dict:
        return {
            'name': self.name,
            'encrypt_pk': self.encrypt_pk_hex,
            'sign_pk': self.sign_pk_hex,
            'queue_id': self.conversation_id(local_exchange_key),
        }
