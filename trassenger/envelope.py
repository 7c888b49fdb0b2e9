r"""
Envelope codec for Trassenger messages.

Wire layout (raw bytes, base64 encoded for transport):

    [sign_pk: 32][signature: 64][enc_pk: 32][nonce: 24][ciphertext || tag]
    \__________ outer __________/\______________ inner ________________/

The inner part is encrypted with XChaCha20-Poly1305 under the raw X25519
shared secret of sender and recipient. The signature is Ed25519 over the whole
inner part, so the sender's exchange key is bound to their signing identity.
"""

import json
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from nacl.bindings import (
    crypto_scalarmult,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_NPUBBYTES,
    crypto_aead_xchacha20poly1305_ietf_ABYTES,
)
from nacl.exceptions import CryptoError
from nacl.signing import VerifyKey
from nacl.utils import random

from .identity import Identity
from .schemas import get_validator, MESSAGE_PAYLOAD_SCHEMA_ID

logger = logging.getLogger(__name__)


class EnvelopeLayout:
    """Field widths of the wire format. The single source of truth for offsets."""
    SIGN_PK = 32
    SIGNATURE = 64
    ENC_PK = 32
    NONCE = crypto_aead_xchacha20poly1305_ietf_NPUBBYTES
    TAG = crypto_aead_xchacha20poly1305_ietf_ABYTES

    OUTER_HEADER = SIGN_PK + SIGNATURE
    INNER_HEADER = ENC_PK + NONCE
    MIN_SIZE = OUTER_HEADER + INNER_HEADER + TAG


# Timestamps past this are milliseconds
MAX_SECONDS_TIMESTAMP = 9_999_999_999

DEFAULT_MESSAGE_TYPE = "text"


class DecodeError(Exception):
    """Base class for every way an envelope can fail to open."""


class MalformedEnvelope(DecodeError):
    """Envelope bytes do not match the wire layout."""


class OwnMessage(DecodeError):
    """Envelope was sent by us. Expected on a shared queue, not an error."""


class SignatureInvalid(DecodeError):
    """Signature does not verify against the sender's signing key."""


class DecryptionFailed(DecodeError):
    """Authentication tag mismatch: tampered data or wrong keys."""


class PayloadMalformed(DecodeError):
    """Plaintext decrypted fine but is not a valid message record."""


@dataclass
class PlaintextMessage:
    """A message as exchanged between peers."""
    kind: str
    body: str
    timestamp: int
    sender: str

    def to_bytes(self) -> bytes:
        """Serialize to the wire payload record."""
        return json.dumps({
            'type': self.kind,
            'content': self.body,
            'timestamp': self.timestamp,
            'sender_id': self.sender,
        }).encode('utf-8')

    @classmethod
    def from_bytes(cls, data: bytes) -> "PlaintextMessage":
        """Parse a wire payload record. Raises PayloadMalformed."""
        try:
            payload = json.loads(data.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PayloadMalformed(f"Payload is not JSON: {e}") from e

        result = get_validator().validate(payload, MESSAGE_PAYLOAD_SCHEMA_ID)
        if not result.valid:
            raise PayloadMalformed("; ".join(result.error_messages))

        timestamp = int(payload['timestamp'])
        if timestamp > MAX_SECONDS_TIMESTAMP:
            timestamp //= 1000

        return cls(
            kind=payload.get('type', DEFAULT_MESSAGE_TYPE),
            body=payload['content'],
            timestamp=timestamp,
            sender=payload['sender_id'],
        )


@dataclass(frozen=True)
class Envelope:
    """Structured view of one envelope, every field at its exact width."""
    sender_signing_key: bytes
    signature: bytes
    sender_exchange_key: bytes
    nonce: bytes
    ciphertext: bytes

    def __post_init__(self):
        widths = [
            ('sender_signing_key', self.sender_signing_key, EnvelopeLayout.SIGN_PK),
            ('signature', self.signature, EnvelopeLayout.SIGNATURE),
            ('sender_exchange_key', self.sender_exchange_key, EnvelopeLayout.ENC_PK),
            ('nonce', self.nonce, EnvelopeLayout.NONCE),
        ]
        for name, value, width in widths:
            if len(value) != width:
                raise MalformedEnvelope(f"{name} is {len(value)} bytes, expected {width}")
        if len(self.ciphertext) < EnvelopeLayout.TAG:
            raise MalformedEnvelope("Ciphertext shorter than the authentication tag")

    @property
    def inner(self) -> bytes:
        """The signed portion."""
        return self.sender_exchange_key + self.nonce + self.ciphertext

    def to_bytes(self) -> bytes:
        return self.sender_signing_key + self.signature + self.inner

    def to_text(self) -> str:
        return base64.b64encode(self.to_bytes()).decode('ascii')

    @classmethod
    def from_bytes(cls, data: bytes) -> "Envelope":
        if len(data) < EnvelopeLayout.MIN_SIZE:
            raise MalformedEnvelope(
                f"Envelope is {len(data)} bytes, minimum is {EnvelopeLayout.MIN_SIZE}"
            )

        sign_end = EnvelopeLayout.SIGN_PK
        sig_end = sign_end + EnvelopeLayout.SIGNATURE
        enc_end = sig_end + EnvelopeLayout.ENC_PK
        nonce_end = enc_end + EnvelopeLayout.NONCE

        return cls(
            sender_signing_key=data[:sign_end],
            signature=data[sign_end:sig_end],
            sender_exchange_key=data[sig_end:enc_end],
            nonce=data[enc_end:nonce_end],
            ciphertext=data[nonce_end:],
        )

    @classmethod
    def from_text(cls, text: str) -> "Envelope":
        try:
            data = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise MalformedEnvelope(f"Envelope is not valid base64: {e}") from e
        return cls.from_bytes(data)


@dataclass
class DecodedEnvelope:
    """An opened envelope together with the verified sender keys."""
    sender_signing_key: bytes
    sender_exchange_key: bytes
    message: PlaintextMessage


def _shared_key(private_key: bytes, public_key: bytes) -> bytes:
    """Raw X25519 shared secret, used directly as the AEAD key."""
    return crypto_scalarmult(private_key, public_key)


def encode(
    sender: Identity,
    recipient_exchange_key: bytes,
    plaintext: bytes,
    nonce: Optional[bytes] = None,
) -> bytes:
    """Encrypt and sign plaintext for a recipient, returning the envelope bytes.

    A fresh random nonce is drawn per call; passing one is meant for test
    vectors only.
    """
    if len(recipient_exchange_key) != EnvelopeLayout.ENC_PK:
        raise ValueError(f"Recipient exchange key must be {EnvelopeLayout.ENC_PK} bytes")

    nonce = nonce if nonce is not None else random(EnvelopeLayout.NONCE)
    key = _shared_key(bytes(sender.exchange_private_key), recipient_exchange_key)
    ciphertext = crypto_aead_xchacha20poly1305_ietf_encrypt(plaintext, None, nonce, key)

    inner = sender.exchange_key_bytes + nonce + ciphertext
    envelope = Envelope(
        sender_signing_key=sender.signing_key_bytes,
        signature=sender.sign(inner),
        sender_exchange_key=sender.exchange_key_bytes,
        nonce=nonce,
        ciphertext=ciphertext,
    )
    return envelope.to_bytes()


def open_envelope(local: Identity, envelope: Envelope) -> bytes:
    """Verify and decrypt a parsed envelope, returning the raw plaintext."""
    if envelope.sender_signing_key == local.signing_key_bytes:
        raise OwnMessage("Envelope was sent by this identity")

    # Verification must happen before any decryption attempt
    try:
        VerifyKey(envelope.sender_signing_key).verify(envelope.inner, envelope.signature)
    except (CryptoError, ValueError) as e:
        raise SignatureInvalid("Signature verification failed") from e

    try:
        key = _shared_key(bytes(local.exchange_private_key), envelope.sender_exchange_key)
        return crypto_aead_xchacha20poly1305_ietf_decrypt(
            envelope.ciphertext, None, envelope.nonce, key
        )
    except CryptoError as e:
        raise DecryptionFailed("Decryption failed") from e


def decode(local: Identity, data: bytes) -> DecodedEnvelope:
    """Open envelope bytes addressed to the local identity.

    Pure: no persistence and no relay cleanup happen here. Raises a DecodeError
    subclass on any failure.
    """
    return _decode_parsed(local, Envelope.from_bytes(data))


def decode_text(local: Identity, text: str) -> DecodedEnvelope:
    """Like decode(), for the base64 form stored on the relay."""
    return _decode_parsed(local, Envelope.from_text(text))


def _decode_parsed(local: Identity, envelope: Envelope) -> DecodedEnvelope:
    plaintext = open_envelope(local, envelope)
    return DecodedEnvelope(
        sender_signing_key=envelope.sender_signing_key,
        sender_exchange_key=envelope.sender_exchange_key,
        message=PlaintextMessage.from_bytes(plaintext),
    )


def seal(sender: Identity, recipient_exchange_key: bytes, message: PlaintextMessage) -> str:
    """Encode a message record and return the text form ready for the relay."""
    data = encode(sender, recipient_exchange_key, message.to_bytes())
    return base64.b64encode(data).decode('ascii')
