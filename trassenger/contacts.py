"""
Contact cards: how two parties exchange their public keys.

A card is a small JSON object {"name", "encrypt_pk", "sign_pk"} with both keys
hex encoded. Cards are exported to a file and imported from a file or pasted
text.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .identity import Identity, PeerIdentity
from .schemas import get_validator, CONTACT_CARD_SCHEMA_ID

logger = logging.getLogger(__name__)


class ContactError(Exception):
    """Base class for contact import problems surfaced to the user."""


class InvalidContactPayload(ContactError):
    """The card is unreadable, incomplete or is our own."""


class DuplicateContact(ContactError):
    """A contact with the same exchange key already exists."""

    def __init__(self, existing_name: str):
        self.existing_name = existing_name
        super().__init__(f"Contact already exists as '{existing_name}'")


def read_contact_source(source: str) -> str:
    """Return the card text, reading it from disk if source is a file path."""
    candidate = source.strip().strip("'\"")
    if not candidate.startswith('{'):
        path = Path(candidate).expanduser()
        try:
            return path.read_text()
        except OSError as e:
            raise InvalidContactPayload(f"Cannot read contact file {path}: {e}") from e
    return candidate


def parse_contact_card(
    text: str,
    local: Identity,
    name: Optional[str] = None,
) -> PeerIdentity:
    """Validate a card and turn it into a peer identity.

    The name argument overrides the card's own name.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidContactPayload(f"Contact is not valid JSON: {e}") from e

    result = get_validator().validate(data, CONTACT_CARD_SCHEMA_ID)
    if not result.valid:
        raise InvalidContactPayload("; ".join(result.error_messages))

    label = (name or data.get('name') or '').strip()
    if not label:
        raise InvalidContactPayload("Contact has no name")

    exchange_key = bytes.fromhex(data['encrypt_pk'])
    if exchange_key == local.exchange_key_bytes:
        raise InvalidContactPayload("Cannot import your own contact")

    return PeerIdentity(
        name=label,
        exchange_key=exchange_key,
        signing_key=bytes.fromhex(data['sign_pk']),
    )


def export_contact_card(local: Identity, name: str, path: Path) -> str:
    """Write our own card to path and return its text."""
    name = name.strip()
    if not name:
        raise ValueError("Name cannot be empty")

    text = json.dumps(local.to_contact(name), indent=2)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    logger.info(f"Contact exported to: {path}")
    return text


def default_export_path(name: str) -> Path:
    return Path.home() / "Downloads" / f"contact-{name.strip().replace(' ', '-')}.json"
