"""
WhisperMail - Key exchange and trust establishment.

Created by orpheus497

Each correspondent has its own state machine:

    NO_IDENTITY -> IDENTITY_GENERATED -> KEY_SENT -> AWAITING_PEER_KEY -> TRUSTED

A received public key announcement only makes the key available; it is
never trusted automatically. The single route to TRUSTED is an explicit
import carrying the fingerprint the user compared over a trusted channel.
Trust is bound to a key, not to an address: importing a different key for
a trusted peer drops back to AWAITING_PEER_KEY until it is verified.

Content may only be sent in TRUSTED; require_trusted() enforces this before
any cryptographic or network work happens.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Set, Union

from .constants import (
    MAX_PENDING_KEYS,
    PENDING_KEY_MAX_AGE,
    SETTING_PENDING_KEYS,
    STATE_HISTORY_LIMIT,
)
from .crypto import b64encode, fingerprints_match, generate_fingerprint
from .envelope import Envelope, EnvelopeCodec
from .errors import (
    ErrorCode,
    ExchangeIncompleteError,
    FingerprintMismatchError,
    IdentityError,
)
from .identity import Identity, KeyManager, PeerKey

logger = logging.getLogger(__name__)


class ExchangeState(Enum):
    """Trust states for one correspondent."""

    NO_IDENTITY = auto()  # No local key pair yet
    IDENTITY_GENERATED = auto()  # Local key pair exists
    KEY_SENT = auto()  # Our public key was announced to the peer
    AWAITING_PEER_KEY = auto()  # Peer key offered or replaced, not yet verified
    TRUSTED = auto()  # Peer key imported after fingerprint verification


class ExchangeEvent(Enum):
    """Events that trigger trust state transitions."""

    IDENTITY_CREATED = auto()  # Identity generated or loaded
    IDENTITY_CLEARED = auto()  # Private key destroyed
    KEY_ANNOUNCED = auto()  # Public key handed to the transport
    PEER_KEY_OFFERED = auto()  # Announcement received from the peer
    PEER_KEY_CHANGED = auto()  # A different key is being imported for a trusted peer
    PEER_KEY_VERIFIED = auto()  # Import with a matching fingerprint


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: ExchangeState
    event: ExchangeEvent
    to_state: ExchangeState
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PendingKey:
    """A peer key received over the relay, waiting for verification."""

    address: str
    public_key: str
    fingerprint: str
    received_at: str


class ExchangeStateMachine:
    """
    Finite state machine for one peer's trust lifecycle.

    Enforces valid state transitions and keeps a bounded transition history.
    """

    TRANSITIONS: Dict[ExchangeState, Dict[ExchangeEvent, ExchangeState]] = {
        ExchangeState.NO_IDENTITY: {
            ExchangeEvent.IDENTITY_CREATED: ExchangeState.IDENTITY_GENERATED,
        },
        ExchangeState.IDENTITY_GENERATED: {
            ExchangeEvent.IDENTITY_CREATED: ExchangeState.IDENTITY_GENERATED,
            ExchangeEvent.IDENTITY_CLEARED: ExchangeState.NO_IDENTITY,
            ExchangeEvent.KEY_ANNOUNCED: ExchangeState.KEY_SENT,
            ExchangeEvent.PEER_KEY_OFFERED: ExchangeState.AWAITING_PEER_KEY,
            ExchangeEvent.PEER_KEY_VERIFIED: ExchangeState.TRUSTED,
        },
        ExchangeState.KEY_SENT: {
            ExchangeEvent.IDENTITY_CREATED: ExchangeState.IDENTITY_GENERATED,
            ExchangeEvent.IDENTITY_CLEARED: ExchangeState.NO_IDENTITY,
            ExchangeEvent.KEY_ANNOUNCED: ExchangeState.KEY_SENT,
            ExchangeEvent.PEER_KEY_OFFERED: ExchangeState.AWAITING_PEER_KEY,
            ExchangeEvent.PEER_KEY_VERIFIED: ExchangeState.TRUSTED,
        },
        ExchangeState.AWAITING_PEER_KEY: {
            ExchangeEvent.IDENTITY_CREATED: ExchangeState.AWAITING_PEER_KEY,
            ExchangeEvent.IDENTITY_CLEARED: ExchangeState.NO_IDENTITY,
            ExchangeEvent.KEY_ANNOUNCED: ExchangeState.AWAITING_PEER_KEY,
            ExchangeEvent.PEER_KEY_OFFERED: ExchangeState.AWAITING_PEER_KEY,
            ExchangeEvent.PEER_KEY_VERIFIED: ExchangeState.TRUSTED,
        },
        ExchangeState.TRUSTED: {
            # Peer trust does not depend on which local key pair is active
            ExchangeEvent.IDENTITY_CREATED: ExchangeState.TRUSTED,
            ExchangeEvent.IDENTITY_CLEARED: ExchangeState.NO_IDENTITY,
            ExchangeEvent.KEY_ANNOUNCED: ExchangeState.TRUSTED,
            ExchangeEvent.PEER_KEY_OFFERED: ExchangeState.TRUSTED,
            ExchangeEvent.PEER_KEY_CHANGED: ExchangeState.AWAITING_PEER_KEY,
            ExchangeEvent.PEER_KEY_VERIFIED: ExchangeState.TRUSTED,
        },
    }

    def __init__(self, address: str, initial_state: ExchangeState = ExchangeState.NO_IDENTITY):
        self.address = address
        self.current_state = initial_state
        self.previous_state: Optional[ExchangeState] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = STATE_HISTORY_LIMIT

        self.on_state_change: Optional[Callable[[str, ExchangeState, ExchangeState], None]] = None

    def transition(self, event: ExchangeEvent) -> bool:
        """
        Attempt state transition based on event.

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(
                f"Invalid exchange transition for {self.address}: "
                f"{self.current_state.name} + {event.name}"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]
        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        if old_state != new_state:
            logger.info(
                f"Exchange {self.address}: {old_state.name} -> {new_state.name} "
                f"(event: {event.name})"
            )

        if self.on_state_change and old_state != new_state:
            try:
                self.on_state_change(self.address, old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        return True

    def is_valid_transition(self, from_state: ExchangeState, event: ExchangeEvent) -> bool:
        return from_state in self.TRANSITIONS and event in self.TRANSITIONS[from_state]

    def is_trusted(self) -> bool:
        return self.current_state == ExchangeState.TRUSTED

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """Get recent transition history."""
        return self.transition_history[-count:]

    def __repr__(self) -> str:
        return f"ExchangeStateMachine(address={self.address!r}, state={self.current_state.name})"


class ExchangeProtocol:
    """
    Drives key announcement, key offers and verified imports for every peer.

    Imports for the same peer are serialized with a per-peer asyncio.Lock so
    the stored PeerKey and the TRUSTED state always change together.
    """

    def __init__(self, key_manager: KeyManager, my_address: str = "", transport=None):
        self.key_manager = key_manager
        self.my_address = my_address
        self.transport = transport
        self._machines: Dict[str, ExchangeStateMachine] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, PendingKey] = {}
        self._deferred_trust: Set[str] = set()
        # Offers from the active peer are never evicted
        self.peer_address: Optional[str] = None

        self.on_state_change: Optional[Callable[[str, ExchangeState, ExchangeState], None]] = None
        self._load_pending()

    # State access

    def machine(self, address: str) -> ExchangeStateMachine:
        """State machine for a peer, created on first use."""
        machine = self._machines.get(address)
        if machine is None:
            initial = (
                ExchangeState.IDENTITY_GENERATED
                if self.key_manager.has_identity()
                else ExchangeState.NO_IDENTITY
            )
            machine = ExchangeStateMachine(address, initial)
            machine.on_state_change = self._state_changed
            self._machines[address] = machine
        return machine

    def state(self, address: str) -> ExchangeState:
        return self.machine(address).current_state

    def is_trusted(self, address: str) -> bool:
        return (
            address in self._machines
            and self._machines[address].is_trusted()
            and self.key_manager.get_peer_key(address) is not None
        )

    def require_trusted(self, address: Optional[str]) -> PeerKey:
        """
        Return the trusted key for a peer.

        Raises:
            ExchangeIncompleteError: If no peer is selected or it is not TRUSTED
        """
        if not address:
            raise ExchangeIncompleteError("No peer address selected")
        peer = self.key_manager.get_peer_key(address)
        if not self.is_trusted(address) or peer is None:
            raise ExchangeIncompleteError(
                f"Key exchange with {address} is not complete",
                {"address": address, "state": self.state(address).name},
            )
        return peer

    def _state_changed(self, address: str, old: ExchangeState, new: ExchangeState) -> None:
        if self.on_state_change:
            self.on_state_change(address, old, new)

    def _broadcast(self, event: ExchangeEvent) -> None:
        for machine in self._machines.values():
            machine.transition(event)

    def _identity_created(self) -> None:
        self._broadcast(ExchangeEvent.IDENTITY_CREATED)
        # Peers verified earlier (possibly while no identity existed) are trusted again
        for address, machine in self._machines.items():
            if machine.is_trusted() or self.key_manager.get_peer_key(address) is None:
                continue
            if address in self._deferred_trust or self.key_manager.peer_verified(address):
                machine.transition(ExchangeEvent.PEER_KEY_VERIFIED)
        self._deferred_trust.clear()

    # Identity lifecycle

    def generate_identity(self) -> Identity:
        """Create a new local identity and move every peer out of NO_IDENTITY."""
        identity = self.key_manager.generate_identity()
        self._identity_created()
        return identity

    def load_identity(self) -> bool:
        """Load the stored identity. Returns False on first run."""
        if not self.key_manager.load_identity():
            return False
        self._identity_created()
        return True

    def import_identity(self, blob: str, password: Optional[str] = None) -> Identity:
        """Restore a backed-up private key as the active identity."""
        identity = self.key_manager.import_private_key(blob, password)
        self._identity_created()
        return identity

    def clear_identity(self, confirm: bool = False) -> None:
        """Destroy the local private key. Requires confirm=True."""
        self.key_manager.clear_identity(confirm=confirm)
        self._broadcast(ExchangeEvent.IDENTITY_CLEARED)

    # Announcement

    def build_announcement(self) -> Envelope:
        """Public key announcement envelope for the active identity."""
        if not self.key_manager.has_identity():
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No identity to announce")
        return Envelope.announcement(self.my_address, self.key_manager.export_public_key())

    async def announce(self, peer_address: str) -> bool:
        """
        Send our public key to a peer. Safe to repeat.

        Returns:
            True if the transport accepted the announcement
        """
        if self.transport is None:
            raise IdentityError(ErrorCode.E300_IDENTITY_ERROR, "No transport configured")
        envelope = self.build_announcement()
        sent = await self.transport.announce(
            peer_address, EnvelopeCodec.encode(envelope), subject=envelope.subject
        )
        if sent:
            self.machine(peer_address).transition(ExchangeEvent.KEY_ANNOUNCED)
            logger.info(f"Announced public key to {peer_address}")
        else:
            logger.warning(f"Public key announcement to {peer_address} was not accepted")
        return sent

    # Peer keys

    def offer_peer_key(self, envelope: Envelope) -> PendingKey:
        """
        Record a received public key announcement for later verification.

        The key is decoded to compute its fingerprint but is not trusted
        or stored as the peer's key.
        """
        public_key = self.key_manager.decode_public_key(envelope.public_key_bytes())
        der = self.key_manager.export_public_key(public_key)
        pending = PendingKey(
            address=envelope.sender,
            public_key=b64encode(der),
            fingerprint=generate_fingerprint(der),
            received_at=datetime.now(timezone.utc).isoformat(),
        )

        current = self.key_manager.get_peer_key(envelope.sender)
        if current is not None and current.fingerprint == pending.fingerprint:
            logger.debug(f"Announcement from {envelope.sender} repeats the trusted key")
        else:
            if current is not None:
                logger.warning(
                    f"{envelope.sender} announced a different key "
                    f"({pending.fingerprint}); verify before importing"
                )
            self._pending[envelope.sender] = pending
            self._prune_pending()
            self._save_pending()

        self.machine(envelope.sender).transition(ExchangeEvent.PEER_KEY_OFFERED)
        logger.info(f"Received public key from {envelope.sender} ({pending.fingerprint})")
        return pending

    def pending_key(self, address: str) -> Optional[PendingKey]:
        return self._pending.get(address)

    def pending_keys(self) -> List[PendingKey]:
        return list(self._pending.values())

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    async def import_peer_public_key(
        self, address: str, data: Union[bytes, str], *, confirmed_fingerprint: str
    ) -> PeerKey:
        """
        Trust a peer key after the user verified its fingerprint.

        Raises:
            KeyFormatError: If the key data is invalid
            FingerprintMismatchError: If the verified fingerprint belongs to
                another key; trust is not granted
        """
        async with self._lock_for(address):
            public_key = self.key_manager.decode_public_key(data)
            fingerprint = generate_fingerprint(self.key_manager.export_public_key(public_key))
            machine = self.machine(address)

            current = self.key_manager.get_peer_key(address)
            if machine.is_trusted() and current is not None and current.fingerprint != fingerprint:
                machine.transition(ExchangeEvent.PEER_KEY_CHANGED)
                self.key_manager.remove_peer_key(address)
            self._deferred_trust.discard(address)

            if not fingerprints_match(fingerprint, confirmed_fingerprint):
                logger.warning(f"Fingerprint mismatch for {address}; key not trusted")
                raise FingerprintMismatchError(details={"address": address})

            peer = self.key_manager.import_peer_public_key(address, data, verified=True)
            if machine.current_state == ExchangeState.NO_IDENTITY:
                logger.warning(f"Trusted key for {address}; it applies once an identity exists")
                self._deferred_trust.add(address)
            else:
                machine.transition(ExchangeEvent.PEER_KEY_VERIFIED)

            pending = self._pending.get(address)
            if pending is not None and pending.fingerprint == fingerprint:
                del self._pending[address]
                self._save_pending()
            return peer

    async def trust_pending(self, address: str, confirmed_fingerprint: str) -> PeerKey:
        """Import the key a peer announced, once its fingerprint is verified."""
        pending = self._pending.get(address)
        if pending is None:
            raise ExchangeIncompleteError(
                f"No announced key from {address} is waiting for verification",
                {"address": address},
            )
        return await self.import_peer_public_key(
            address, pending.public_key, confirmed_fingerprint=confirmed_fingerprint
        )

    def restore(self, address: str) -> ExchangeState:
        """
        Rebuild a peer's state from stored keys at startup.

        A stored key that was imported after verification goes straight to
        TRUSTED; an unverified announcement puts the peer in AWAITING_PEER_KEY.
        """
        machine = self.machine(address)
        if machine.current_state == ExchangeState.NO_IDENTITY:
            return machine.current_state

        peer = self.key_manager.load_peer_key(address)
        if peer is not None and self.key_manager.peer_verified(address):
            machine.transition(ExchangeEvent.PEER_KEY_VERIFIED)
        elif address in self._pending:
            machine.transition(ExchangeEvent.PEER_KEY_OFFERED)
        return machine.current_state

    # Pending offers survive restarts through the keyring settings

    def _load_pending(self) -> None:
        keyring = self.key_manager.keyring
        if keyring is None:
            return
        for address, record in (keyring.get_value(SETTING_PENDING_KEYS) or {}).items():
            try:
                self._pending[address] = PendingKey(**record)
            except TypeError:
                logger.warning(f"Ignoring unreadable pending key for {address}")
        if self._prune_pending():
            self._save_pending()

    def _prune_pending(self) -> bool:
        """
        Bound the unverified offers kept around.

        Offers older than PENDING_KEY_MAX_AGE go first, then the oldest ones
        beyond MAX_PENDING_KEYS. The active peer's offer is kept.

        Returns:
            True if any offer was dropped
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=PENDING_KEY_MAX_AGE)
        received = {address: _received_at(p) for address, p in self._pending.items()}
        dropped = [address for address, when in received.items() if when < cutoff]

        evictable = sorted(
            (a for a in received if a not in dropped and a != self.peer_address),
            key=received.get,
        )
        excess = len(received) - len(dropped) - MAX_PENDING_KEYS
        if excess > 0:
            dropped.extend(evictable[:excess])

        for address in dropped:
            del self._pending[address]
            machine = self._machines.get(address)
            if machine is not None and self.key_manager.get_peer_key(address) is None:
                del self._machines[address]
        if dropped:
            logger.warning(f"Dropped {len(dropped)} unverified key offer(s)")
        return bool(dropped)

    def _save_pending(self) -> None:
        keyring = self.key_manager.keyring
        if keyring is None:
            return
        keyring.set_value(
            SETTING_PENDING_KEYS,
            {
                address: {
                    "address": p.address,
                    "public_key": p.public_key,
                    "fingerprint": p.fingerprint,
                    "received_at": p.received_at,
                }
                for address, p in self._pending.items()
            },
        )


def _received_at(pending: PendingKey) -> datetime:
    """Receive time of an offer; unreadable values count as expired."""
    try:
        value = datetime.fromisoformat(pending.received_at)
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
