"""
WhisperMail - Key management.

Created by orpheus497

Owns the local RSA identity, the imported peer public keys and fingerprint
computation. The active Identity and every PeerKey are immutable values;
replacing one swaps a reference, so an operation that took a snapshot at
its start keeps working with the key that was in effect at that time.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .constants import RSA_KEY_SIZE, RSA_MIN_KEY_SIZE, RSA_PUBLIC_EXPONENT
from .crypto import (
    b64decode,
    b64encode,
    decrypt_backup,
    encrypt_backup,
    generate_fingerprint,
)
from .errors import ConfigError, ErrorCode, IdentityError, KeyFormatError
from .storage import Keyring

logger = logging.getLogger(__name__)

PEM_MARKER = "-----BEGIN"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _public_der(public_key: rsa.RSAPublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _private_der(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@dataclass(frozen=True)
class Identity:
    """The local key pair. Key objects are kept out of ``repr``."""

    private_key: rsa.RSAPrivateKey = field(repr=False)
    public_key: rsa.RSAPublicKey = field(repr=False)
    created_at: str
    fingerprint: str

    @classmethod
    def from_private_key(
        cls, private_key: rsa.RSAPrivateKey, created_at: Optional[str] = None
    ) -> "Identity":
        public_key = private_key.public_key()
        return cls(
            private_key=private_key,
            public_key=public_key,
            created_at=created_at or _now(),
            fingerprint=generate_fingerprint(_public_der(public_key)),
        )

    def public_key_bytes(self) -> bytes:
        """Canonical DER SubjectPublicKeyInfo export."""
        return _public_der(self.public_key)


@dataclass(frozen=True)
class PeerKey:
    """A correspondent's public key and when it was imported."""

    address: str
    public_key: rsa.RSAPublicKey = field(repr=False)
    imported_at: str
    fingerprint: str

    def public_key_bytes(self) -> bytes:
        """Canonical DER SubjectPublicKeyInfo export."""
        return _public_der(self.public_key)


@dataclass(frozen=True)
class KeySnapshot:
    """Key material in effect when an operation started."""

    identity: Optional[Identity]
    peers: Mapping[str, PeerKey]

    def require_identity(self) -> Identity:
        if self.identity is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No local identity")
        return self.identity

    def peer(self, address: str) -> Optional[PeerKey]:
        return self.peers.get(address)


class KeyManager:
    """
    Manages the local identity and peer public keys.

    Keys are persisted through a Keyring when one is given; without one the
    manager is purely in-memory (useful for tests).
    """

    def __init__(self, keyring: Optional[Keyring] = None, key_size: int = RSA_KEY_SIZE):
        if key_size < RSA_MIN_KEY_SIZE:
            raise ConfigError(
                ErrorCode.E700_CONFIG_ERROR,
                f"RSA key size must be at least {RSA_MIN_KEY_SIZE} bits",
                {"key_size": key_size},
            )
        self.keyring = keyring
        self.key_size = key_size
        self._identity: Optional[Identity] = None
        self._peers: Dict[str, PeerKey] = {}

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    def has_identity(self) -> bool:
        return self._identity is not None

    def snapshot(self) -> KeySnapshot:
        """Consistent read-only view of the current keys."""
        return KeySnapshot(identity=self._identity, peers=MappingProxyType(dict(self._peers)))

    def generate_identity(self) -> Identity:
        """
        Create a new key pair and make it the active identity.

        The previous identity is replaced, not kept: anything encrypted to it
        can no longer be read once the new one is persisted.
        """
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT, key_size=self.key_size
        )
        identity = Identity.from_private_key(private_key)
        if self._identity is not None:
            logger.warning(
                f"Replacing identity {self._identity.fingerprint} with {identity.fingerprint}"
            )
        self._identity = identity
        logger.info(f"Generated {self.key_size}-bit identity {identity.fingerprint}")
        return identity

    def export_public_key(
        self, key: Union[Identity, PeerKey, rsa.RSAPublicKey, None] = None
    ) -> bytes:
        """Canonical DER export of a public key, the active identity by default."""
        if key is None:
            key = self._identity
            if key is None:
                raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No local identity")
        if isinstance(key, (Identity, PeerKey)):
            return key.public_key_bytes()
        return _public_der(key)

    @staticmethod
    def fingerprint(data: bytes) -> str:
        """Fingerprint of canonical public key bytes."""
        return generate_fingerprint(data)

    @staticmethod
    def decode_public_key(data: Union[bytes, str]) -> rsa.RSAPublicKey:
        """
        Decode DER bytes, a base64 DER string or PEM into an RSA public key.

        Raises:
            KeyFormatError: If the data is not an RSA public key of the
                minimum modulus
        """
        try:
            if isinstance(data, str):
                text = data.strip()
                if text.startswith(PEM_MARKER):
                    public_key = serialization.load_pem_public_key(text.encode("ascii"))
                else:
                    public_key = serialization.load_der_public_key(b64decode(text))
            elif isinstance(data, (bytes, bytearray)):
                raw = bytes(data)
                if raw.lstrip().startswith(PEM_MARKER.encode("ascii")):
                    public_key = serialization.load_pem_public_key(raw)
                else:
                    public_key = serialization.load_der_public_key(raw)
            else:
                raise KeyFormatError(
                    "Key data must be bytes or text", {"type": type(data).__name__}
                )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyFormatError(
                "Key data could not be decoded", {"error": type(e).__name__}
            ) from e

        if not isinstance(public_key, rsa.RSAPublicKey):
            raise KeyFormatError(
                "Key is not an RSA public key", {"key_type": type(public_key).__name__}
            )
        if public_key.key_size < RSA_MIN_KEY_SIZE:
            raise KeyFormatError(
                f"RSA key is smaller than {RSA_MIN_KEY_SIZE} bits",
                {"key_size": public_key.key_size},
            )
        return public_key

    def import_peer_public_key(
        self, address: str, data: Union[bytes, str], verified: bool = False
    ) -> PeerKey:
        """
        Import and store a peer's public key, replacing any previous key for
        that address.

        Raises:
            KeyFormatError: If the key data is invalid
        """
        public_key = self.decode_public_key(data)
        peer = PeerKey(
            address=address,
            public_key=public_key,
            imported_at=_now(),
            fingerprint=generate_fingerprint(_public_der(public_key)),
        )
        self._peers[address] = peer

        if self.keyring is not None:
            self.keyring.set_peer_key(
                address, peer.public_key_bytes(), peer.imported_at, peer.fingerprint, verified
            )

        logger.info(f"Imported public key for {address} ({peer.fingerprint})")
        return peer

    def get_peer_key(self, address: str) -> Optional[PeerKey]:
        return self._peers.get(address)

    def peer_addresses(self) -> List[str]:
        return sorted(self._peers)

    def peer_verified(self, address: str) -> bool:
        """Whether the stored key for this peer was imported after verification."""
        if self.keyring is None:
            return False
        record = self.keyring.get_peer_key(address)
        return bool(record and record.get("verified"))

    def remove_peer_key(self, address: str) -> bool:
        removed = self._peers.pop(address, None) is not None
        if self.keyring is not None:
            removed = self.keyring.remove_peer_key(address) or removed
        if removed:
            logger.info(f"Removed public key for {address}")
        return removed

    def load_peer_key(self, address: str) -> Optional[PeerKey]:
        """Reload a stored peer key into memory. Returns None if none is stored."""
        if self.keyring is None:
            return None
        record = self.keyring.get_peer_key(address)
        if record is None:
            return None

        public_key = self.decode_public_key(record["public_key"])
        peer = PeerKey(
            address=address,
            public_key=public_key,
            imported_at=record.get("imported_at") or _now(),
            fingerprint=generate_fingerprint(_public_der(public_key)),
        )
        if record.get("fingerprint") and record["fingerprint"] != peer.fingerprint:
            logger.warning(f"Stored fingerprint for {address} does not match its key")
        self._peers[address] = peer
        logger.debug(f"Loaded stored public key for {address}")
        return peer

    def _require_keyring(self) -> Keyring:
        if self.keyring is None:
            raise IdentityError(ErrorCode.E300_IDENTITY_ERROR, "No keyring configured")
        return self.keyring

    def persist_identity(self) -> bool:
        """Hand the private key, as PKCS#8 DER, to the keyring. Returns True once stored."""
        keyring = self._require_keyring()
        if self._identity is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No identity to persist")
        keyring.set_private_key(_private_der(self._identity.private_key), self._identity.created_at)
        logger.info(f"Persisted identity {self._identity.fingerprint}")
        return True

    def load_identity(self) -> bool:
        """
        Load the stored private key.

        Returns:
            False when no identity has been stored yet (first run)

        Raises:
            IdentityError: If a stored key exists but cannot be loaded
        """
        keyring = self._require_keyring()
        blob = keyring.get_private_key()
        if blob is None:
            logger.debug("No stored identity")
            return False

        self._identity = Identity.from_private_key(
            self._load_private_key(blob), keyring.get_private_key_created_at()
        )
        logger.info(f"Loaded identity {self._identity.fingerprint}")
        return True

    @staticmethod
    def _load_private_key(blob: bytes) -> rsa.RSAPrivateKey:
        try:
            private_key = serialization.load_der_private_key(blob, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise IdentityError(
                ErrorCode.E300_IDENTITY_ERROR, "Stored private key cannot be loaded"
            ) from e
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise IdentityError(ErrorCode.E300_IDENTITY_ERROR, "Stored private key is not RSA")
        return private_key

    def clear_identity(self, confirm: bool = False) -> None:
        """
        Irreversibly destroy the local private key.

        Every message encrypted to it becomes permanently unreadable, so the
        caller must pass ``confirm=True``.
        """
        if not confirm:
            raise IdentityError(
                ErrorCode.E302_CLEAR_NOT_CONFIRMED,
                "Clearing the identity must be explicitly confirmed",
            )
        old = self._identity
        self._identity = None
        if self.keyring is not None:
            self.keyring.delete_private_key()
        logger.warning(f"Identity cleared: {old.fingerprint if old else 'none active'}")

    def export_private_key(self, password: Optional[str] = None) -> str:
        """
        Export the private key for backup.

        With a password the PKCS#8 bytes are sealed with Argon2id + AES-GCM
        and returned as JSON; without one they are returned as base64.
        """
        if self._identity is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No identity to export")
        der = _private_der(self._identity.private_key)
        if password:
            return json.dumps(encrypt_backup(der, password))
        return b64encode(der)

    def import_private_key(self, blob: str, password: Optional[str] = None) -> Identity:
        """
        Restore a private key exported with export_private_key.

        Raises:
            IdentityError: If the backup is malformed or the password is wrong
        """
        try:
            if password:
                der = decrypt_backup(json.loads(blob), password)
            else:
                der = b64decode(blob.strip())
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            raise IdentityError(ErrorCode.E303_BACKUP_INVALID, "Backup data is malformed") from e

        try:
            private_key = self._load_private_key(der)
        except IdentityError as e:
            raise IdentityError(ErrorCode.E303_BACKUP_INVALID, "Backup does not hold a key") from e

        identity = Identity.from_private_key(private_key)
        self._identity = identity
        if self.keyring is not None:
            self.persist_identity()
        logger.info(f"Imported identity {identity.fingerprint}")
        return identity
