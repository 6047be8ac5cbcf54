"""
WhisperMail - Key exchange tests.

Created by orpheus497

Tests for the per-peer trust state machine and the verified import flow.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import ALICE, BOB, make_party, private_key_blob
from whispermail.constants import MAX_PENDING_KEYS, PENDING_KEY_MAX_AGE, SETTING_PENDING_KEYS
from whispermail.envelope import Envelope, EnvelopeCodec
from whispermail.errors import (
    ExchangeIncompleteError,
    FingerprintMismatchError,
    IdentityError,
    KeyFormatError,
)
from whispermail.exchange import (
    ExchangeEvent,
    ExchangeProtocol,
    ExchangeState,
    ExchangeStateMachine,
)
from whispermail.identity import KeyManager
from whispermail.relay import MemoryRelay
from whispermail.storage import Keyring


class TestExchangeStateMachine:
    """Test the per-peer trust state machine."""

    def test_initial_state(self):
        machine = ExchangeStateMachine(BOB)
        assert machine.current_state == ExchangeState.NO_IDENTITY
        assert not machine.is_trusted()

    def test_happy_path(self):
        machine = ExchangeStateMachine(BOB)

        assert machine.transition(ExchangeEvent.IDENTITY_CREATED)
        assert machine.transition(ExchangeEvent.KEY_ANNOUNCED)
        assert machine.current_state == ExchangeState.KEY_SENT
        assert machine.transition(ExchangeEvent.PEER_KEY_OFFERED)
        assert machine.current_state == ExchangeState.AWAITING_PEER_KEY
        assert machine.transition(ExchangeEvent.PEER_KEY_VERIFIED)
        assert machine.is_trusted()

    def test_invalid_transition(self):
        """Test trust cannot be reached without a local identity."""
        machine = ExchangeStateMachine(BOB)

        assert not machine.transition(ExchangeEvent.PEER_KEY_VERIFIED)
        assert machine.current_state == ExchangeState.NO_IDENTITY
        assert not machine.is_valid_transition(
            ExchangeState.KEY_SENT, ExchangeEvent.PEER_KEY_CHANGED
        )

    def test_changed_key_leaves_trusted(self):
        machine = ExchangeStateMachine(BOB, ExchangeState.TRUSTED)

        machine.transition(ExchangeEvent.PEER_KEY_CHANGED)
        assert machine.current_state == ExchangeState.AWAITING_PEER_KEY
        assert machine.previous_state == ExchangeState.TRUSTED

    def test_offer_does_not_change_trusted(self):
        machine = ExchangeStateMachine(BOB, ExchangeState.TRUSTED)

        machine.transition(ExchangeEvent.PEER_KEY_OFFERED)
        machine.transition(ExchangeEvent.IDENTITY_CREATED)
        assert machine.is_trusted()

    def test_identity_cleared(self):
        machine = ExchangeStateMachine(BOB, ExchangeState.TRUSTED)
        machine.transition(ExchangeEvent.IDENTITY_CLEARED)
        assert machine.current_state == ExchangeState.NO_IDENTITY

    def test_history_and_callback(self):
        machine = ExchangeStateMachine(BOB)
        changes = []
        machine.on_state_change = lambda address, old, new: changes.append((address, old, new))

        machine.transition(ExchangeEvent.IDENTITY_CREATED)
        machine.transition(ExchangeEvent.IDENTITY_CREATED)

        assert changes == [(BOB, ExchangeState.NO_IDENTITY, ExchangeState.IDENTITY_GENERATED)]
        history = machine.get_history()
        assert len(history) == 2
        assert history[0].event == ExchangeEvent.IDENTITY_CREATED

    def test_callback_errors_are_contained(self):
        machine = ExchangeStateMachine(BOB)

        def boom(*args):
            raise RuntimeError("callback failed")

        machine.on_state_change = boom
        assert machine.transition(ExchangeEvent.IDENTITY_CREATED)
        assert machine.current_state == ExchangeState.IDENTITY_GENERATED

    def test_history_is_bounded(self):
        machine = ExchangeStateMachine(BOB, ExchangeState.IDENTITY_GENERATED)
        machine.max_history = 5
        for _ in range(20):
            machine.transition(ExchangeEvent.IDENTITY_CREATED)
        assert len(machine.transition_history) == 5


@pytest.mark.asyncio
class TestExchangeProtocol:
    """Test announcement, offers and verified imports."""

    async def test_state_follows_identity(self, temp_dir, relay, alice_key):
        party = make_party(temp_dir / "a", ALICE, relay)
        assert party.exchange.state(BOB) == ExchangeState.NO_IDENTITY

        party.exchange.import_identity(private_key_blob(alice_key))
        assert party.exchange.state(BOB) == ExchangeState.IDENTITY_GENERATED
        assert party.exchange.state("new@example.com") == ExchangeState.IDENTITY_GENERATED

        party.exchange.clear_identity(confirm=True)
        assert party.exchange.state(BOB) == ExchangeState.NO_IDENTITY
        party.message_log.close()

    async def test_announce_delivers_public_key(self, alice, bob):
        """Test the announcement reaches the peer's inbox with its subject."""
        assert await alice.exchange.announce(BOB) is True
        assert alice.exchange.state(BOB) == ExchangeState.KEY_SENT

        payloads = await bob.relay.poll()
        assert len(payloads) == 1
        envelope = EnvelopeCodec.decode(payloads[0])
        assert envelope.is_announcement
        assert envelope.sender == ALICE
        assert envelope.public_key_bytes() == alice.public_key()

    async def test_announce_uses_key_exchange_subject(self, alice):
        sent = []

        class RecordingRelay(MemoryRelay):
            async def announce(self, peer_address, payload, subject=None):
                sent.append((peer_address, subject))
                return await super().announce(peer_address, payload, subject)

        alice.exchange.transport = RecordingRelay(ALICE)
        await alice.exchange.announce(BOB)

        assert sent == [(BOB, "[WHISPER] Public Key Exchange")]

    async def test_rejected_announcement_keeps_state(self, alice):
        class RejectingRelay(MemoryRelay):
            async def announce(self, peer_address, payload, subject=None):
                return False

        alice.exchange.transport = RejectingRelay(ALICE)

        assert await alice.exchange.announce(BOB) is False
        assert alice.exchange.state(BOB) == ExchangeState.IDENTITY_GENERATED

    async def test_announce_is_repeatable(self, alice, bob):
        await alice.exchange.announce(BOB)
        await alice.exchange.announce(BOB)

        assert alice.exchange.state(BOB) == ExchangeState.KEY_SENT
        assert len(await bob.relay.poll()) == 2

    async def test_announce_without_identity(self, temp_dir, relay):
        party = make_party(temp_dir / "a", ALICE, relay)
        with pytest.raises(IdentityError):
            await party.exchange.announce(BOB)
        party.message_log.close()

    async def test_offer_is_never_trusted(self, alice, bob):
        """Test a received announcement waits for fingerprint verification."""
        pending = bob.exchange.offer_peer_key(alice.exchange.build_announcement())

        assert pending.address == ALICE
        assert pending.fingerprint == alice.fingerprint
        assert bob.exchange.state(ALICE) == ExchangeState.AWAITING_PEER_KEY
        assert not bob.exchange.is_trusted(ALICE)
        assert bob.key_manager.get_peer_key(ALICE) is None
        with pytest.raises(ExchangeIncompleteError):
            bob.exchange.require_trusted(ALICE)

    async def test_offer_survives_restart(self, alice, bob):
        bob.exchange.offer_peer_key(alice.exchange.build_announcement())

        reopened = ExchangeProtocol(KeyManager(Keyring(bob.keyring.keyring_file)), BOB)
        assert reopened.pending_key(ALICE).fingerprint == alice.fingerprint

    async def test_trust_pending_with_verified_fingerprint(self, alice, bob):
        bob.exchange.offer_peer_key(alice.exchange.build_announcement())

        peer = await bob.exchange.trust_pending(ALICE, alice.fingerprint)

        assert peer.fingerprint == alice.fingerprint
        assert bob.exchange.is_trusted(ALICE)
        assert bob.exchange.pending_key(ALICE) is None
        assert bob.exchange.require_trusted(ALICE) is peer

    async def test_trust_pending_without_offer(self, bob):
        with pytest.raises(ExchangeIncompleteError):
            await bob.exchange.trust_pending(ALICE, "00")

    async def test_fingerprint_mismatch_is_rejected(self, alice, bob, mallory_key):
        """Test a key is not trusted when the verified fingerprint differs."""
        mallory = KeyManager()
        mallory.import_private_key(private_key_blob(mallory_key))

        with pytest.raises(FingerprintMismatchError):
            await bob.exchange.import_peer_public_key(
                ALICE, mallory.export_public_key(), confirmed_fingerprint=alice.fingerprint
            )

        assert not bob.exchange.is_trusted(ALICE)
        assert bob.key_manager.get_peer_key(ALICE) is None

    async def test_fingerprint_comparison_ignores_formatting(self, alice, bob):
        typed = alice.fingerprint.upper().replace(":", " ")
        await bob.exchange.import_peer_public_key(
            ALICE, alice.public_key(), confirmed_fingerprint=typed
        )
        assert bob.exchange.is_trusted(ALICE)

    async def test_invalid_key_data(self, bob):
        with pytest.raises(KeyFormatError):
            await bob.exchange.import_peer_public_key(
                ALICE, "garbage", confirmed_fingerprint="00"
            )
        assert bob.exchange.state(ALICE) == ExchangeState.IDENTITY_GENERATED

    async def test_key_change_revokes_trust(self, trusted_pair, mallory_key):
        """Test trust is bound to the key, not to the address."""
        alice, bob = trusted_pair
        mallory = KeyManager()
        mallory.import_private_key(private_key_blob(mallory_key))
        new_fingerprint = mallory.identity.fingerprint

        with pytest.raises(FingerprintMismatchError):
            await bob.exchange.import_peer_public_key(
                ALICE, mallory.export_public_key(), confirmed_fingerprint=alice.fingerprint
            )
        assert bob.exchange.state(ALICE) == ExchangeState.AWAITING_PEER_KEY
        assert not bob.exchange.is_trusted(ALICE)

        await bob.exchange.import_peer_public_key(
            ALICE, mallory.export_public_key(), confirmed_fingerprint=new_fingerprint
        )
        assert bob.exchange.is_trusted(ALICE)
        assert bob.key_manager.get_peer_key(ALICE).fingerprint == new_fingerprint

    async def test_reimporting_same_key_keeps_trust(self, trusted_pair):
        alice, bob = trusted_pair
        await bob.exchange.import_peer_public_key(
            ALICE, alice.public_key(), confirmed_fingerprint=alice.fingerprint
        )
        assert bob.exchange.is_trusted(ALICE)

    async def test_announcement_of_different_key_is_only_offered(self, trusted_pair, mallory_key):
        alice, bob = trusted_pair
        mallory = KeyManager()
        mallory.import_private_key(private_key_blob(mallory_key))
        envelope = Envelope.announcement(ALICE, mallory.export_public_key())

        pending = bob.exchange.offer_peer_key(envelope)

        assert bob.exchange.is_trusted(ALICE)
        assert bob.key_manager.get_peer_key(ALICE).fingerprint == alice.fingerprint
        assert bob.exchange.pending_key(ALICE) is pending

    async def test_concurrent_imports_are_serialized(self, alice, bob, mallory_key):
        """Test racing imports leave the stored key and trust state consistent."""
        mallory = KeyManager()
        mallory.import_private_key(private_key_blob(mallory_key))

        results = await asyncio.gather(
            bob.exchange.import_peer_public_key(
                ALICE, alice.public_key(), confirmed_fingerprint=alice.fingerprint
            ),
            bob.exchange.import_peer_public_key(
                ALICE,
                mallory.export_public_key(),
                confirmed_fingerprint=mallory.identity.fingerprint,
            ),
            return_exceptions=True,
        )

        assert not any(isinstance(r, Exception) for r in results)
        assert bob.exchange.is_trusted(ALICE)
        stored = bob.keyring.get_peer_key(ALICE)
        assert stored["fingerprint"] == bob.key_manager.get_peer_key(ALICE).fingerprint

    async def test_verified_import_before_identity(self, temp_dir, relay, alice, bob_key):
        """Test a key verified before any identity exists is trusted once one is created."""
        party = make_party(temp_dir / "late", BOB, relay)
        assert party.exchange.state(ALICE) == ExchangeState.NO_IDENTITY

        await party.exchange.import_peer_public_key(
            ALICE, alice.public_key(), confirmed_fingerprint=alice.fingerprint
        )
        assert party.exchange.state(ALICE) == ExchangeState.NO_IDENTITY
        assert not party.exchange.is_trusted(ALICE)

        party.exchange.import_identity(private_key_blob(bob_key))

        assert party.exchange.state(ALICE) == ExchangeState.TRUSTED
        assert party.exchange.require_trusted(ALICE).fingerprint == alice.fingerprint
        party.message_log.close()

    async def test_trust_returns_after_identity_is_replaced(self, trusted_pair, bob_key):
        alice, bob = trusted_pair

        bob.exchange.clear_identity(confirm=True)
        assert bob.exchange.state(ALICE) == ExchangeState.NO_IDENTITY

        bob.exchange.import_identity(private_key_blob(bob_key))
        assert bob.exchange.is_trusted(ALICE)

    async def test_restore_verified_peer(self, trusted_pair):
        """Test a verified peer is trusted again after a restart."""
        alice, bob = trusted_pair

        key_manager = KeyManager(Keyring(bob.keyring.keyring_file))
        exchange = ExchangeProtocol(key_manager, BOB)
        exchange.load_identity()

        assert exchange.restore(ALICE) == ExchangeState.TRUSTED
        assert exchange.require_trusted(ALICE).fingerprint == alice.fingerprint

    async def test_restore_pending_offer(self, alice, bob):
        bob.exchange.offer_peer_key(alice.exchange.build_announcement())

        exchange = ExchangeProtocol(KeyManager(Keyring(bob.keyring.keyring_file)), BOB)
        exchange.load_identity()

        assert exchange.restore(ALICE) == ExchangeState.AWAITING_PEER_KEY

    async def test_restore_without_identity(self, temp_dir):
        exchange = ExchangeProtocol(KeyManager(Keyring(str(temp_dir / "k.json"))), BOB)
        assert exchange.restore(ALICE) == ExchangeState.NO_IDENTITY

    async def test_state_change_callback(self, alice, bob):
        changes = []
        bob.exchange.on_state_change = lambda address, old, new: changes.append(new)

        await bob.exchange.import_peer_public_key(
            ALICE, alice.public_key(), confirmed_fingerprint=alice.fingerprint
        )
        assert changes == [ExchangeState.TRUSTED]

    async def test_pending_keys_are_stored_as_json(self, alice, bob):
        bob.exchange.offer_peer_key(alice.exchange.build_announcement())

        with open(bob.keyring.keyring_file, encoding="utf-8") as f:
            stored = json.load(f)["settings"]["pending_keys"]
        assert stored[ALICE]["fingerprint"] == alice.fingerprint


class TestPendingOffers:
    """Test unverified offers stay bounded."""

    @staticmethod
    def _announce_from(sender: str, party) -> Envelope:
        return Envelope.announcement(sender, party.public_key())

    def test_offers_from_many_senders_are_capped(self, alice, bob):
        for i in range(MAX_PENDING_KEYS * 3):
            bob.exchange.offer_peer_key(self._announce_from(f"stranger{i}@example.com", alice))

        pending = bob.exchange.pending_keys()
        assert len(pending) == MAX_PENDING_KEYS
        # Oldest offers are evicted first
        addresses = {p.address for p in pending}
        assert f"stranger{MAX_PENDING_KEYS * 3 - 1}@example.com" in addresses
        assert "stranger0@example.com" not in addresses
        assert "stranger0@example.com" not in bob.exchange._machines

        with open(bob.keyring.keyring_file, encoding="utf-8") as f:
            stored = json.load(f)["settings"]["pending_keys"]
        assert len(stored) == MAX_PENDING_KEYS

    def test_active_peer_offer_is_kept(self, alice, bob):
        bob.exchange.peer_address = ALICE
        bob.exchange.offer_peer_key(alice.exchange.build_announcement())

        for i in range(MAX_PENDING_KEYS * 2):
            bob.exchange.offer_peer_key(self._announce_from(f"stranger{i}@example.com", alice))

        assert bob.exchange.pending_key(ALICE) is not None
        assert len(bob.exchange.pending_keys()) == MAX_PENDING_KEYS

    def test_stale_offers_are_dropped_on_load(self, alice, bob):
        pending = bob.exchange.offer_peer_key(alice.exchange.build_announcement())
        expired = datetime.now(timezone.utc) - timedelta(seconds=PENDING_KEY_MAX_AGE + 60)
        record = {
            "address": pending.address,
            "public_key": pending.public_key,
            "fingerprint": pending.fingerprint,
        }
        bob.keyring.set_value(
            SETTING_PENDING_KEYS,
            {
                ALICE: dict(record, received_at=expired.isoformat()),
                "carol@example.com": dict(
                    record, address="carol@example.com", received_at="not a date"
                ),
            },
        )

        reopened = ExchangeProtocol(KeyManager(Keyring(bob.keyring.keyring_file)), BOB)

        assert reopened.pending_keys() == []
        assert Keyring(bob.keyring.keyring_file).get_value(SETTING_PENDING_KEYS) == {}
