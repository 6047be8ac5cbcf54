"""
WhisperMail - Message records.

Created by orpheus497

A Message is the local, persisted view of one sent or received item:
the plaintext (text content or attachment bytes) next to the ciphertext
that travelled over the relay, kept for integrity audit.

Content fields are fixed at creation; only the read/withdrawn flags change.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .constants import IMAGE_MIME_PREFIX


class ContentType(str, Enum):
    """Payload types carried in message envelopes."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"

    @classmethod
    def for_mime(cls, mime_type: str) -> "ContentType":
        """Attachment type for a MIME type: images are shown inline, the rest are files."""
        if mime_type and mime_type.startswith(IMAGE_MIME_PREFIX):
            return cls.IMAGE
        return cls.FILE


class Message:
    """Represents a message in the conversation history."""

    def __init__(
        self,
        sender: str,
        incoming: bool,
        content_type: ContentType = ContentType.TEXT,
        content: Optional[str] = None,
        data: Optional[bytes] = None,
        file_name: Optional[str] = None,
        file_type: Optional[str] = None,
        file_size: Optional[int] = None,
        encrypted_key: str = "",
        encrypted_content: str = "",
        iv: str = "",
        timestamp: Optional[str] = None,
        message_id: Optional[str] = None,
        read: bool = False,
        withdrawn: bool = False,
    ):
        self.message_id = message_id or str(uuid.uuid4())
        self.sender = sender
        self.incoming = incoming
        self.content_type = ContentType(content_type)
        self.content = content
        self.data = data
        self.file_name = file_name
        self.file_type = file_type
        self.file_size = file_size
        self.encrypted_key = encrypted_key
        self.encrypted_content = encrypted_content
        self.iv = iv
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        # Outgoing messages are read by definition
        self.read = read or not incoming
        self.withdrawn = withdrawn

    @property
    def is_attachment(self) -> bool:
        return self.content_type is not ContentType.TEXT

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for storage."""
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "incoming": self.incoming,
            "content_type": self.content_type.value,
            "content": self.content,
            "data": self.data,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "encrypted_key": self.encrypted_key,
            "encrypted_content": self.encrypted_content,
            "iv": self.iv,
            "timestamp": self.timestamp,
            "read": self.read,
            "withdrawn": self.withdrawn,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        """Create message from dictionary."""
        return Message(
            sender=data["sender"],
            incoming=bool(data["incoming"]),
            content_type=ContentType(data.get("content_type", ContentType.TEXT.value)),
            content=data.get("content"),
            data=data.get("data"),
            file_name=data.get("file_name"),
            file_type=data.get("file_type"),
            file_size=data.get("file_size"),
            encrypted_key=data.get("encrypted_key", ""),
            encrypted_content=data.get("encrypted_content", ""),
            iv=data.get("iv", ""),
            timestamp=data["timestamp"],
            message_id=data["message_id"],
            read=bool(data.get("read", False)),
            withdrawn=bool(data.get("withdrawn", False)),
        )

    def mark_read(self) -> None:
        """Mark message as read."""
        self.read = True

    def mark_withdrawn(self) -> None:
        """Mark message as withdrawn."""
        self.withdrawn = True

    def __repr__(self) -> str:
        direction = "in" if self.incoming else "out"
        return (
            f"Message(id={self.message_id}, {direction}, type={self.content_type.value}, "
            f"sender={self.sender!r}, timestamp={self.timestamp})"
        )
