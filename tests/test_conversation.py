"""
Tests for conversation id derivation and peer identities.
"""

import hashlib

import pytest

from trassenger.conversation import derive_conversation_id
from trassenger.identity import Identity, PeerIdentity


class TestConversationId:
    """Both parties must land on the same queue without coordination."""

    def test_symmetric(self, alice, bob):
        """Test the id is the same from either side."""
        assert derive_conversation_id(
            alice.exchange_key_bytes, bob.exchange_key_bytes
        ) == derive_conversation_id(
            bob.exchange_key_bytes, alice.exchange_key_bytes
        )

    def test_shape(self, alice, bob):
        """Test the id is 16 bytes of lowercase hex."""
        queue_id = derive_conversation_id(alice.exchange_key_bytes, bob.exchange_key_bytes)
        assert len(queue_id) == 32
        assert queue_id == queue_id.lower()
        int(queue_id, 16)

    def test_known_vector(self):
        """Test against a hand-computed digest of the sorted hex keys."""
        key_a = bytes([0x11] * 32)
        key_b = bytes([0x02] * 32)
        expected = hashlib.sha256(
            (key_b.hex() + key_a.hex()).encode('ascii')
        ).hexdigest()[:32]
        assert derive_conversation_id(key_a, key_b) == expected

    def test_distinct_pairs_distinct_ids(self, alice, bob):
        """Test a third party gets a different queue with each peer."""
        carol = Identity.generate()
        ids = {
            derive_conversation_id(alice.exchange_key_bytes, bob.exchange_key_bytes),
            derive_conversation_id(alice.exchange_key_bytes, carol.exchange_key_bytes),
            derive_conversation_id(bob.exchange_key_bytes, carol.exchange_key_bytes),
        }
        assert len(ids) == 3

    def test_self_conversation_rejected(self, alice):
        """Test deriving an id with our own key fails."""
        with pytest.raises(ValueError):
            derive_conversation_id(alice.exchange_key_bytes, alice.exchange_key_bytes)

    def test_wrong_key_length_rejected(self, alice):
        """Test short keys are refused."""
        with pytest.raises(ValueError):
            derive_conversation_id(alice.exchange_key_bytes, b"\x01" * 31)

    def test_identity_helper_matches(self, alice, bob, make_peer):
        """Test Identity.conversation_id_with agrees with the peer's view."""
        peer_bob = make_peer(bob, "Bob")
        assert alice.conversation_id_with(peer_bob) == peer_bob.conversation_id(
            alice.exchange_key_bytes
        )


class TestPeerIdentity:
    """Contacts as stored in peers.json."""

    def test_round_trip_through_dict(self, alice, bob, make_peer):
        """Test to_dict/from_dict keep keys, name and cached queue id."""
        peer = make_peer(bob, "Bob")
        data = peer.to_dict(alice.exchange_key_bytes)

        restored = PeerIdentity.from_dict(data)

        assert restored == peer
        assert data['queue_id'] == alice.conversation_id_with(peer)
        assert data['encrypt_pk'] == bob.exchange_public_key_hex

    def test_bad_key_length(self):
        """Test a peer with a truncated key cannot be constructed."""
        with pytest.raises(ValueError):
            PeerIdentity(name="x", exchange_key=b"\x01" * 16, signing_key=b"\x02" * 32)


class TestIdentityPersistence:
    """Saving and loading the local identity."""

    def test_save_and_load(self, tmp_path):
        """Test keys survive a save/load cycle with owner-only permissions."""
        identity = Identity.generate()
        path = tmp_path / "keys" / "identity.json"

        identity.save(path)
        loaded = Identity.load(path)

        assert loaded.signing_key_bytes == identity.signing_key_bytes
        assert loaded.exchange_key_bytes == identity.exchange_key_bytes
        assert (path.stat().st_mode & 0o777) == 0o600

    def test_missing_identity(self, tmp_path):
        """Test loading a missing identity raises IdentityNotFound."""
        from trassenger.identity import IdentityNotFound

        with pytest.raises(IdentityNotFound):
            Identity.load(tmp_path / "nope.json")

    def test_load_or_create_is_stable(self, tmp_path):
        """Test the first call creates, the second loads the same keys."""
        path = tmp_path / "identity.json"
        first = Identity.load_or_create(path)
        second = Identity.load_or_create(path)
        assert first.signing_key_bytes == second.signing_key_bytes
