"""
WhisperMail - Hybrid envelope encryption.

Created by orpheus497

Every message and attachment is sealed with the standard hybrid pattern:
- A fresh AES-256-GCM content key is generated for exactly one payload
- The payload is encrypted under that key with a fresh random 96-bit nonce
- The raw content key is wrapped with the recipient's RSA-OAEP public key
  (MGF1-SHA-256, SHA-256, no label)
- The content key is dropped once the envelope has been built

RSA is only ever used to wrap 32-byte keys; bulk data always goes through
the authenticated symmetric cipher.

Fingerprints are SHA-256 over the DER SubjectPublicKeyInfo export of a
public key, rendered as colon-separated 4-hex-digit groups. They are the
sole trust anchor, so the format must never change.

Private key backups are sealed with Argon2id + AES-256-GCM.

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import base64
import binascii
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    BACKUP_FORMAT_VERSION,
    CONTENT_KEY_SIZE,
    FINGERPRINT_GROUP,
    FINGERPRINT_SEPARATOR,
    IMAGE_MIME_PREFIX,
    MAX_FILE_SIZE,
    NONCE_SIZE,
    OAEP_HASH_SIZE,
    SALT_SIZE,
)
from .errors import (
    DecryptionError,
    ErrorCode,
    FileTooLargeError,
    IdentityError,
    KeyWrapError,
)

logger = logging.getLogger(__name__)


class ContentKey:
    """A one-time AES-256-GCM key.

    Never persisted, never reused. The raw bytes are only exposed for
    wrapping; ``repr`` does not show them.
    """

    __slots__ = ("_raw",)

    def __init__(self, raw: bytes):
        if not isinstance(raw, (bytes, bytearray)) or len(raw) != CONTENT_KEY_SIZE:
            raise ValueError(f"Content key must be {CONTENT_KEY_SIZE} bytes")
        self._raw = bytes(raw)

    @classmethod
    def generate(cls) -> "ContentKey":
        """Create a fresh random 256-bit key."""
        return cls(AESGCM.generate_key(bit_length=CONTENT_KEY_SIZE * 8))

    def raw_bytes(self) -> bytes:
        """Raw key bytes, for wrapping only."""
        return self._raw

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContentKey):
            return NotImplemented
        return secrets.compare_digest(self._raw, other._raw)

    def __repr__(self) -> str:
        return "ContentKey(<redacted>)"


@dataclass(frozen=True)
class SealedPayload:
    """Ciphertext parts of one hybrid-encrypted payload."""

    encrypted_key: bytes
    ciphertext: bytes
    nonce: bytes


@dataclass(frozen=True)
class EncryptedFile:
    """An encrypted attachment.

    ``file_name``, ``file_type`` and ``file_size`` are NOT encrypted; they
    travel in clear next to the ciphertext.
    """

    ciphertext: bytes
    nonce: bytes
    file_name: str
    file_type: str
    file_size: int

    @property
    def is_image(self) -> bool:
        return self.file_type.startswith(IMAGE_MIME_PREFIX)


def b64encode(data: bytes) -> str:
    """Standard base64, as used for every binary field on the wire."""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict standard base64 decode.

    Raises:
        ValueError: If the text is not valid base64
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 data: {e}") from e


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def max_wrap_size(public_key: rsa.RSAPublicKey) -> int:
    """Largest plaintext RSA-OAEP(SHA-256) can wrap under this key."""
    modulus_bytes = (public_key.key_size + 7) // 8
    return modulus_bytes - 2 * OAEP_HASH_SIZE - 2


def generate_content_key() -> ContentKey:
    """Generate a fresh one-time content key."""
    return ContentKey.generate()


def wrap_content_key(key: ContentKey, recipient_public_key: rsa.RSAPublicKey) -> bytes:
    """
    Wrap a content key under the recipient's RSA public key.

    Raises:
        KeyWrapError: If the key cannot encrypt, or the raw content key is
            larger than the OAEP maximum plaintext for this modulus
    """
    if not isinstance(recipient_public_key, rsa.RSAPublicKey):
        raise KeyWrapError(
            "Recipient key cannot wrap content keys",
            {"key_type": type(recipient_public_key).__name__},
        )

    raw = key.raw_bytes()
    limit = max_wrap_size(recipient_public_key)
    if len(raw) > limit:
        raise KeyWrapError(
            "Content key exceeds the wrap limit of the recipient key",
            {"key_size": len(raw), "max_size": limit},
        )

    try:
        return recipient_public_key.encrypt(raw, _oaep())
    except (ValueError, TypeError) as e:
        raise KeyWrapError("RSA-OAEP wrap failed", {"error": type(e).__name__}) from e


def unwrap_content_key(ciphertext: bytes, private_key: rsa.RSAPrivateKey) -> ContentKey:
    """
    Recover a content key with the local private key.

    Every failure raises the same DecryptionError, whether the ciphertext is
    corrupted, was wrapped for another key, or has the wrong length.
    """
    try:
        raw = private_key.decrypt(ciphertext, _oaep())
        return ContentKey(raw)
    except (ValueError, TypeError, AttributeError):
        pass
    raise DecryptionError()


def encrypt_content(plaintext: bytes, key: ContentKey) -> Tuple[bytes, bytes]:
    """
    Encrypt bytes with AES-256-GCM under a one-time key.

    A new random 96-bit nonce is drawn for every call; it is never derived
    or counter based. The 16-byte tag is appended to the ciphertext.

    Returns:
        (ciphertext_with_tag, nonce)
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key.raw_bytes()).encrypt(nonce, bytes(plaintext), None)
    return ciphertext, nonce


def decrypt_content(ciphertext: bytes, nonce: bytes, key: ContentKey) -> bytes:
    """
    Verify and decrypt AES-256-GCM ciphertext.

    The tag is checked before any plaintext is returned; on mismatch nothing
    is returned and DecryptionError is raised.
    """
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError()
    try:
        return AESGCM(key.raw_bytes()).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError):
        pass
    raise DecryptionError()


def encrypt_file(
    data: bytes,
    key: ContentKey,
    file_name: str,
    file_type: str,
    max_size: int = MAX_FILE_SIZE,
) -> EncryptedFile:
    """
    Encrypt attachment bytes.

    Raises:
        FileTooLargeError: If the attachment exceeds max_size
    """
    if len(data) > max_size:
        raise FileTooLargeError(len(data), max_size)

    ciphertext, nonce = encrypt_content(data, key)
    return EncryptedFile(
        ciphertext=ciphertext,
        nonce=nonce,
        file_name=file_name,
        file_type=file_type or "application/octet-stream",
        file_size=len(data),
    )


def decrypt_file(encrypted: EncryptedFile, key: ContentKey) -> bytes:
    """Decrypt attachment bytes; same failure contract as decrypt_content."""
    data = decrypt_content(encrypted.ciphertext, encrypted.nonce, key)
    if len(data) != encrypted.file_size:
        # fileSize is unauthenticated metadata
        logger.warning(
            f"Attachment size differs from declared size "
            f"({len(data)} != {encrypted.file_size})"
        )
    return data


class HybridCipher:
    """
    Stateless hybrid encryption engine.

    Combines content-key wrapping with authenticated content encryption.
    Key material is always passed in by the caller (from a KeyManager
    snapshot); nothing is cached here.
    """

    def __init__(self, max_file_size: int = MAX_FILE_SIZE):
        self.max_file_size = max_file_size

    def seal(self, plaintext: bytes, recipient_public_key: rsa.RSAPublicKey) -> SealedPayload:
        """Encrypt bytes for one recipient with a fresh content key and nonce."""
        key = generate_content_key()
        ciphertext, nonce = encrypt_content(plaintext, key)
        encrypted_key = wrap_content_key(key, recipient_public_key)
        del key
        return SealedPayload(encrypted_key=encrypted_key, ciphertext=ciphertext, nonce=nonce)

    def open(self, sealed: SealedPayload, private_key: rsa.RSAPrivateKey) -> bytes:
        """Unwrap the content key and decrypt. Raises DecryptionError."""
        key = unwrap_content_key(sealed.encrypted_key, private_key)
        return decrypt_content(sealed.ciphertext, sealed.nonce, key)

    def seal_file(
        self,
        data: bytes,
        file_name: str,
        file_type: str,
        recipient_public_key: rsa.RSAPublicKey,
    ) -> Tuple[bytes, EncryptedFile]:
        """
        Encrypt an attachment for one recipient.

        Returns:
            (wrapped content key, encrypted file)
        """
        key = generate_content_key()
        encrypted = encrypt_file(data, key, file_name, file_type, self.max_file_size)
        encrypted_key = wrap_content_key(key, recipient_public_key)
        del key
        return encrypted_key, encrypted

    def open_file(
        self,
        encrypted_key: bytes,
        encrypted: EncryptedFile,
        private_key: rsa.RSAPrivateKey,
    ) -> bytes:
        """Decrypt an attachment. Raises DecryptionError."""
        key = unwrap_content_key(encrypted_key, private_key)
        return decrypt_file(encrypted, key)


def generate_fingerprint(public_key_bytes: bytes) -> str:
    """
    Generate a human-readable fingerprint from canonical public key bytes.

    SHA-256 digest, lowercase hex, grouped as XXXX:XXXX:...:XXXX
    (16 groups). Users compare fingerprints over a trusted channel
    (phone call, in person) before trusting a key.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(public_key_bytes)
    hex_digest = digest.finalize().hex()
    return FINGERPRINT_SEPARATOR.join(
        hex_digest[i : i + FINGERPRINT_GROUP] for i in range(0, len(hex_digest), FINGERPRINT_GROUP)
    )


def normalize_fingerprint(fingerprint: str) -> str:
    """Strip separators, spaces and case so user-typed fingerprints compare."""
    return "".join(c for c in fingerprint.lower() if c in "0123456789abcdef")


def fingerprints_match(a: str, b: str) -> bool:
    """Constant-time comparison of two fingerprints in any grouping."""
    na, nb = normalize_fingerprint(a), normalize_fingerprint(b)
    if not na or not nb:
        return False
    return secrets.compare_digest(na, nb)


def _derive_backup_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=CONTENT_KEY_SIZE,
        type=Type.ID,
    )


def encrypt_backup(secret_bytes: bytes, password: str) -> Dict[str, str]:
    """
    Seal private key bytes with a password using AES-256-GCM.

    Parameters:
        - Argon2id, 3 iterations, 64 MB memory, 1 lane
        - Unique 16-byte salt per backup
        - Unique 12-byte nonce per encryption
    """
    salt = os.urandom(SALT_SIZE)
    key = _derive_backup_key(password, salt)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, secret_bytes, None)

    return {
        "salt": b64encode(salt),
        "nonce": b64encode(nonce),
        "ciphertext": b64encode(ciphertext),
        "version": BACKUP_FORMAT_VERSION,
    }


def decrypt_backup(encrypted_data: Dict[str, str], password: str) -> bytes:
    """
    Open a password-sealed backup.

    Raises:
        IdentityError: If the password is incorrect or the backup is corrupted
    """
    try:
        salt = b64decode(encrypted_data["salt"])
        nonce = b64decode(encrypted_data["nonce"])
        ciphertext = b64decode(encrypted_data["ciphertext"])
    except (KeyError, TypeError, ValueError) as e:
        raise IdentityError(ErrorCode.E303_BACKUP_INVALID, "Backup data is malformed") from e

    key = _derive_backup_key(password, salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError):
        pass
    raise IdentityError(
        ErrorCode.E303_BACKUP_INVALID,
        "Failed to decrypt backup. Incorrect password or corrupted data.",
    )


def describe_sealed(sealed: Optional[SealedPayload]) -> str:
    """Size-only description of a sealed payload, safe for logs."""
    if sealed is None:
        return "<none>"
    return (
        f"key={len(sealed.encrypted_key)}B "
        f"content={len(sealed.ciphertext)}B nonce={len(sealed.nonce)}B"
    )
