"""
Conversation identity: the relay queue shared by two parties.

queue_id = hex(sha256(min(hex_a, hex_b) + max(hex_a, hex_b))[:16])

Both sides derive the same id from the two X25519 public keys without any
coordination. Keys are ordered by their lowercase hex form, which orders the
same way as the raw bytes, and the digest is taken over the concatenated hex
text so ids stay compatible with existing relays and clients.
"""

import hashlib

KEY_SIZE = 32
CONVERSATION_ID_BYTES = 16


def derive_conversation_id(key_a: bytes, key_b: bytes) -> str:
    """Derive the symmetric conversation id for two public exchange keys.

    Raises ValueError for keys of the wrong length and for a self-conversation
    (identical keys).
    """
    if len(key_a) != KEY_SIZE or len(key_b) != KEY_SIZE:
        raise ValueError(
            f"Exchange keys must be {KEY_SIZE} bytes, got {len(key_a)} and {len(key_b)}"
        )
    if key_a == key_b:
        raise ValueError("Cannot derive a conversation id with yourself")

    low, high = sorted((key_a.hex(), key_b.hex()))
    digest = hashlib.sha256((low + high).encode('ascii')).digest()
    return digest[:CONVERSATION_ID_BYTES].hex()
