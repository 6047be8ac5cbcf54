"""
WhisperMail - Envelope wire format.

Created by orpheus497

An Envelope is the unit carried by the relay: a JSON object, keyed by
field name, holding either a public key announcement or one encrypted
message. It never carries plaintext or unwrapped key material.

Wire shape:
    version            "1.0" (checked before anything else)
    kind               "public_key" | "message"
    sender             address string
    timestamp          ISO-8601 string
    public_key         base64 DER SubjectPublicKeyInfo      (public_key)
    encrypted_key      base64 RSA-OAEP wrapped content key  (message)
    encrypted_content  base64 AES-GCM ciphertext + tag      (message)
    iv                 base64, exactly 12 bytes             (message)
    type               "text" | "image" | "file"            (message, default "text")
    fileName, fileType, fileSize                            (iff type != "text")
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from .constants import (
    KIND_MESSAGE,
    KIND_PUBLIC_KEY,
    NONCE_SIZE,
    PROTOCOL_VERSION,
    SUBJECT_KEY_EXCHANGE,
    SUBJECT_PREFIX,
    SUPPORTED_VERSIONS,
)
from .crypto import EncryptedFile, SealedPayload, b64decode, b64encode
from .errors import EnvelopeFormatError, ErrorCode, UnsupportedVersionError
from .message import ContentType

logger = logging.getLogger(__name__)


class EnvelopeKind(str, Enum):
    """What an envelope carries."""

    PUBLIC_KEY = KIND_PUBLIC_KEY
    MESSAGE = KIND_MESSAGE


@dataclass(frozen=True)
class Envelope:
    """One relay payload. Binary fields are held in their base64 wire form."""

    kind: EnvelopeKind
    sender: str
    timestamp: str
    version: str = PROTOCOL_VERSION
    public_key: Optional[str] = None
    encrypted_key: Optional[str] = None
    encrypted_content: Optional[str] = None
    iv: Optional[str] = None
    content_type: ContentType = ContentType.TEXT
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None

    @classmethod
    def announcement(
        cls, sender: str, public_key_bytes: bytes, timestamp: Optional[str] = None
    ) -> "Envelope":
        """Public key announcement envelope."""
        return cls(
            kind=EnvelopeKind.PUBLIC_KEY,
            sender=sender,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            public_key=b64encode(public_key_bytes),
        )

    @classmethod
    def text_message(
        cls, sender: str, sealed: SealedPayload, timestamp: Optional[str] = None
    ) -> "Envelope":
        """Message envelope for sealed text."""
        return cls(
            kind=EnvelopeKind.MESSAGE,
            sender=sender,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            encrypted_key=b64encode(sealed.encrypted_key),
            encrypted_content=b64encode(sealed.ciphertext),
            iv=b64encode(sealed.nonce),
        )

    @classmethod
    def file_message(
        cls,
        sender: str,
        encrypted_key: bytes,
        encrypted: EncryptedFile,
        timestamp: Optional[str] = None,
    ) -> "Envelope":
        """Message envelope for an encrypted attachment."""
        return cls(
            kind=EnvelopeKind.MESSAGE,
            sender=sender,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            encrypted_key=b64encode(encrypted_key),
            encrypted_content=b64encode(encrypted.ciphertext),
            iv=b64encode(encrypted.nonce),
            content_type=ContentType.for_mime(encrypted.file_type),
            file_name=encrypted.file_name,
            file_type=encrypted.file_type,
            file_size=encrypted.file_size,
        )

    @property
    def is_announcement(self) -> bool:
        return self.kind is EnvelopeKind.PUBLIC_KEY

    @property
    def subject(self) -> str:
        """Mail subject line for this envelope."""
        if self.is_announcement:
            return SUBJECT_KEY_EXCHANGE
        return f"{SUBJECT_PREFIX} {self.timestamp}"

    def public_key_bytes(self) -> bytes:
        if self.public_key is None:
            raise EnvelopeFormatError("Envelope carries no public key")
        return b64decode(self.public_key)

    def sealed(self) -> SealedPayload:
        """Ciphertext parts of a message envelope as bytes."""
        if self.kind is not EnvelopeKind.MESSAGE:
            raise EnvelopeFormatError("Envelope carries no message")
        return SealedPayload(
            encrypted_key=b64decode(self.encrypted_key),
            ciphertext=b64decode(self.encrypted_content),
            nonce=b64decode(self.iv),
        )

    def encrypted_file(self) -> EncryptedFile:
        """Attachment view of a file or image message envelope."""
        sealed = self.sealed()
        return EncryptedFile(
            ciphertext=sealed.ciphertext,
            nonce=sealed.nonce,
            file_name=self.file_name or "",
            file_type=self.file_type or "",
            file_size=self.file_size or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire dictionary. Only the fields of the envelope's kind are present."""
        data: Dict[str, Any] = {
            "version": self.version,
            "kind": self.kind.value,
            "sender": self.sender,
            "timestamp": self.timestamp,
        }
        if self.kind is EnvelopeKind.PUBLIC_KEY:
            data["public_key"] = self.public_key
            return data

        data["encrypted_key"] = self.encrypted_key
        data["encrypted_content"] = self.encrypted_content
        data["iv"] = self.iv
        data["type"] = self.content_type.value
        if self.content_type is not ContentType.TEXT:
            data["fileName"] = self.file_name
            data["fileType"] = self.file_type
            data["fileSize"] = self.file_size
        return data


class EnvelopeCodec:
    """Serializes envelopes to and from their JSON text payload."""

    @staticmethod
    def encode(envelope: Envelope) -> str:
        return json.dumps(envelope.to_dict(), ensure_ascii=False)

    @staticmethod
    def decode(payload: Union[str, bytes]) -> Envelope:
        """
        Parse and validate a relay payload.

        Raises:
            UnsupportedVersionError: If the version is not one this build speaks
            EnvelopeFormatError: For anything else that is not a valid envelope
        """
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = bytes(payload).decode("utf-8")
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise EnvelopeFormatError("Payload is not valid JSON") from e

        if not isinstance(data, dict):
            raise EnvelopeFormatError("Payload is not a JSON object")

        if "version" not in data:
            raise EnvelopeFormatError(
                "Missing field: version", {"field": "version"}, code=ErrorCode.E203_MISSING_FIELD
            )
        if data["version"] not in SUPPORTED_VERSIONS:
            raise UnsupportedVersionError(data["version"])

        kind_value = _require_str(data, "kind")
        try:
            kind = EnvelopeKind(kind_value)
        except ValueError as e:
            raise EnvelopeFormatError(f"Unknown envelope kind: {kind_value!r}") from e

        sender = _require_str(data, "sender")
        timestamp = _require_str(data, "timestamp")

        if kind is EnvelopeKind.PUBLIC_KEY:
            public_key = _require_b64(data, "public_key")
            return Envelope(
                kind=kind,
                sender=sender,
                timestamp=timestamp,
                version=data["version"],
                public_key=public_key,
            )

        encrypted_key = _require_b64(data, "encrypted_key")
        encrypted_content = _require_b64(data, "encrypted_content")
        iv = _require_b64(data, "iv")
        if len(b64decode(iv)) != NONCE_SIZE:
            raise EnvelopeFormatError(
                f"iv must decode to {NONCE_SIZE} bytes", {"field": "iv"}
            )

        type_value = data.get("type", ContentType.TEXT.value)
        try:
            content_type = ContentType(type_value)
        except ValueError as e:
            raise EnvelopeFormatError(
                f"Unknown content type: {type_value!r}", {"field": "type"}
            ) from e

        file_name = file_type = file_size = None
        if content_type is not ContentType.TEXT:
            file_name = _require_str(data, "fileName")
            file_type = _require_str(data, "fileType")
            file_size = data.get("fileSize")
            if file_size is None:
                raise EnvelopeFormatError(
                    "Missing field: fileSize",
                    {"field": "fileSize"},
                    code=ErrorCode.E203_MISSING_FIELD,
                )
            if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0:
                raise EnvelopeFormatError(
                    "fileSize must be a non-negative integer", {"field": "fileSize"}
                )

        return Envelope(
            kind=kind,
            sender=sender,
            timestamp=timestamp,
            version=data["version"],
            encrypted_key=encrypted_key,
            encrypted_content=encrypted_content,
            iv=iv,
            content_type=content_type,
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
        )


def _require_str(data: Dict[str, Any], name: str) -> str:
    if name not in data or data[name] is None:
        raise EnvelopeFormatError(
            f"Missing field: {name}", {"field": name}, code=ErrorCode.E203_MISSING_FIELD
        )
    value = data[name]
    if not isinstance(value, str):
        raise EnvelopeFormatError(f"Field {name} must be a string", {"field": name})
    return value


def _require_b64(data: Dict[str, Any], name: str) -> str:
    value = _require_str(data, name)
    try:
        b64decode(value)
    except ValueError as e:
        raise EnvelopeFormatError(f"Field {name} is not valid base64", {"field": name}) from e
    return value
