"""
WhisperMail - Local persistence.

Created by orpheus497

Two stores back a local instance:

- Keyring: a JSON file holding the private key blob, the per-address peer
  public keys (with import time and verification flag) and named settings
  such as the poll checkpoint. Written atomically (temp file + rename).
- MessageLog: an SQLite database of Message records, keyed by an opaque id
  and indexed by timestamp. Rows are only ever appended, flag-updated or
  deleted.

Thread safety:
- All MessageLog database operations are guarded by a threading.Lock
"""

import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from .crypto import b64decode, b64encode
from .errors import ErrorCode, StorageError
from .message import Message

logger = logging.getLogger(__name__)


class Keyring:
    """Durable key and settings storage for one local instance."""

    def __init__(self, keyring_file: str):
        self.keyring_file = str(keyring_file)
        self.data: Dict[str, Any] = {"identity": None, "peers": {}, "settings": {}}
        self._load()

    def _load(self) -> None:
        """Load keyring from file.

        A corrupted keyring is an error: starting empty would silently
        overwrite the private key on the next save.
        """
        if not os.path.exists(self.keyring_file):
            return

        try:
            with open(self.keyring_file, encoding="utf-8") as f:
                stored = json.load(f)
        except OSError as e:
            logger.error(f"Failed to read keyring file: {e}")
            raise StorageError(
                ErrorCode.E501_STORAGE_LOAD_FAILED,
                f"Cannot load keyring: {e}",
                {"path": self.keyring_file},
            ) from e
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted keyring file: {e}")
            raise StorageError(
                ErrorCode.E501_STORAGE_LOAD_FAILED,
                "Keyring file is corrupted",
                {"path": self.keyring_file},
            ) from e

        self.data["identity"] = stored.get("identity")
        self.data["peers"] = stored.get("peers", {})
        self.data["settings"] = stored.get("settings", {})
        logger.info(
            f"Loaded keyring from {self.keyring_file} "
            f"({len(self.data['peers'])} peer keys)"
        )

    def _serialize(self) -> str:
        return json.dumps(self.data, indent=2, ensure_ascii=False)

    def _finish_write(self, temp_file: str) -> None:
        os.replace(temp_file, self.keyring_file)
        try:
            os.chmod(self.keyring_file, 0o600)
        except OSError as e:
            logger.debug(f"Could not restrict keyring permissions: {e}")

    def save(self) -> None:
        """Save keyring to file synchronously."""
        try:
            Path(self.keyring_file).parent.mkdir(parents=True, exist_ok=True)
            temp_file = f"{self.keyring_file}.tmp"
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(self._serialize())
            self._finish_write(temp_file)
            logger.debug(f"Saved keyring to {self.keyring_file}")
        except OSError as e:
            logger.error(f"Failed to save keyring: {e}")
            raise StorageError(
                ErrorCode.E502_STORAGE_SAVE_FAILED,
                f"Cannot save keyring: {e}",
                {"path": self.keyring_file},
            ) from e

    async def save_async(self) -> None:
        """Save keyring to file asynchronously."""
        try:
            Path(self.keyring_file).parent.mkdir(parents=True, exist_ok=True)
            temp_file = f"{self.keyring_file}.tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(self._serialize())
            self._finish_write(temp_file)
            logger.debug(f"Saved keyring (async) to {self.keyring_file}")
        except OSError as e:
            logger.error(f"Failed to save keyring: {e}")
            raise StorageError(
                ErrorCode.E502_STORAGE_SAVE_FAILED,
                f"Cannot save keyring: {e}",
                {"path": self.keyring_file},
            ) from e

    # Private key

    def set_private_key(self, blob: bytes, created_at: Optional[str] = None) -> None:
        """Store the opaque private key blob, replacing any previous one."""
        self.data["identity"] = {
            "private_key": b64encode(blob),
            "created_at": created_at or datetime.now(timezone.utc).isoformat(),
        }
        self.save()

    def get_private_key(self) -> Optional[bytes]:
        """Return the stored private key blob, or None on first run."""
        identity = self.data.get("identity")
        if not identity:
            return None
        try:
            return b64decode(identity["private_key"])
        except (KeyError, ValueError) as e:
            raise StorageError(
                ErrorCode.E501_STORAGE_LOAD_FAILED, "Stored private key is unreadable"
            ) from e

    def get_private_key_created_at(self) -> Optional[str]:
        """Creation time recorded with the stored private key."""
        identity = self.data.get("identity")
        return identity.get("created_at") if identity else None

    def delete_private_key(self) -> bool:
        """Remove the stored private key. Returns True if one was stored."""
        had_key = bool(self.data.get("identity"))
        self.data["identity"] = None
        self.save()
        return had_key

    # Peer keys

    def set_peer_key(
        self,
        address: str,
        blob: bytes,
        imported_at: str,
        fingerprint: str,
        verified: bool = False,
    ) -> None:
        """Store a peer public key blob under its address."""
        self.data["peers"][address] = {
            "public_key": b64encode(blob),
            "imported_at": imported_at,
            "fingerprint": fingerprint,
            "verified": verified,
        }
        self.save()

    def get_peer_key(self, address: str) -> Optional[Dict[str, Any]]:
        """Return the stored record for a peer, with ``public_key`` as bytes."""
        record = self.data["peers"].get(address)
        if not record:
            return None
        try:
            result = dict(record)
            result["public_key"] = b64decode(record["public_key"])
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(
                ErrorCode.E501_STORAGE_LOAD_FAILED,
                f"Stored public key for {address} is unreadable",
                {"address": address},
            ) from e
        return result

    def remove_peer_key(self, address: str) -> bool:
        """Remove a peer key. Returns True if removed, False if not found."""
        if address in self.data["peers"]:
            del self.data["peers"][address]
            self.save()
            return True
        return False

    def peer_addresses(self) -> List[str]:
        """Addresses with a stored public key."""
        return sorted(self.data["peers"])

    # Settings

    def set_value(self, name: str, value: Any) -> None:
        """Store a named setting."""
        self.data["settings"][name] = value
        self.save()

    async def set_value_async(self, name: str, value: Any) -> None:
        """Store a named setting without blocking the event loop."""
        await self.update_values_async({name: value})

    async def update_values_async(self, values: Dict[str, Any]) -> None:
        """Store several settings with a single write."""
        self.data["settings"].update(values)
        await self.save_async()

    def get_value(self, name: str, default: Any = None) -> Any:
        """Get a named setting."""
        return self.data["settings"].get(name, default)


class MessageLog:
    """
    Persistent, append-only message history.

    Stores messages in SQLite keyed by an opaque id and indexed by
    timestamp. Content is never updated after insert; only the read and
    withdrawn flags change.

    Thread Safety:
        All database operations are protected by a threading.Lock.
    """

    COLUMNS = (
        "message_id",
        "sender",
        "incoming",
        "content_type",
        "content",
        "data",
        "file_name",
        "file_type",
        "file_size",
        "encrypted_key",
        "encrypted_content",
        "iv",
        "timestamp",
        "read",
        "withdrawn",
    )

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.Lock()

        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._db_lock:
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.conn.row_factory = sqlite3.Row

            cursor = self.conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    sender TEXT NOT NULL,
                    incoming INTEGER NOT NULL,
                    content_type TEXT NOT NULL DEFAULT 'text',
                    content TEXT,
                    data BLOB,
                    file_name TEXT,
                    file_type TEXT,
                    file_size INTEGER,
                    encrypted_key TEXT NOT NULL,
                    encrypted_content TEXT NOT NULL,
                    iv TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0,
                    withdrawn INTEGER NOT NULL DEFAULT 0
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages (timestamp)
            """
            )
            self.conn.commit()
            logger.info(f"Message log initialized: {self.db_path}")

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message.from_dict({key: row[key] for key in self.COLUMNS})

    def append(self, message: Message) -> str:
        """Append a message. Returns its id.

        Raises:
            StorageError: If the id already exists or the write fails
        """
        record = message.to_dict()
        values = tuple(
            int(record[col]) if col in ("incoming", "read", "withdrawn") else record[col]
            for col in self.COLUMNS
        )
        placeholders = ", ".join("?" for _ in self.COLUMNS)

        try:
            with self._db_lock:
                self.conn.execute(
                    f"INSERT INTO messages ({', '.join(self.COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
                self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to append message {message.message_id}: {e}")
            raise StorageError(
                ErrorCode.E502_STORAGE_SAVE_FAILED,
                f"Cannot append message: {e}",
                {"message_id": message.message_id},
            ) from e

        logger.debug(
            f"Logged {'incoming' if message.incoming else 'outgoing'} "
            f"{message.content_type.value} message {message.message_id}"
        )
        return message.message_id

    def get(self, message_id: str) -> Optional[Message]:
        """Get a message by id."""
        with self._db_lock:
            row = self.conn.execute(
                "SELECT * FROM messages WHERE message_id = ?", (message_id,)
            ).fetchone()
        return self._row_to_message(row) if row else None

    def all(self) -> List[Message]:
        """All messages, oldest first."""
        with self._db_lock:
            rows = self.conn.execute(
                "SELECT * FROM messages ORDER BY timestamp ASC, rowid ASC"
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def recent(self, limit: int = 50) -> List[Message]:
        """The latest ``limit`` messages, returned oldest first."""
        with self._db_lock:
            rows = self.conn.execute(
                "SELECT * FROM messages ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def _set_flag(self, message_id: str, column: str) -> bool:
        with self._db_lock:
            cursor = self.conn.execute(
                f"UPDATE messages SET {column} = 1 WHERE message_id = ?", (message_id,)
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def mark_read(self, message_id: str) -> bool:
        """Mark a message as read. Returns False if the id is unknown."""
        return self._set_flag(message_id, "read")

    def mark_withdrawn(self, message_id: str) -> bool:
        """Mark a message as withdrawn. Returns False if the id is unknown."""
        return self._set_flag(message_id, "withdrawn")

    def delete(self, message_id: str) -> bool:
        """Delete one message. Returns False if the id is unknown."""
        with self._db_lock:
            cursor = self.conn.execute("DELETE FROM messages WHERE message_id = ?", (message_id,))
            self.conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted message {message_id}")
        return deleted

    def clear(self) -> int:
        """Delete all messages. Returns how many were removed."""
        with self._db_lock:
            cursor = self.conn.execute("DELETE FROM messages")
            self.conn.commit()
        logger.info(f"Cleared message log ({cursor.rowcount} messages)")
        return cursor.rowcount

    def unread_count(self) -> int:
        """Number of unread incoming messages."""
        with self._db_lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM messages WHERE incoming = 1 AND read = 0"
            ).fetchone()
        return row[0]

    def count(self) -> int:
        """Total number of messages."""
        with self._db_lock:
            row = self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()
        return row[0]

    def close(self) -> None:
        """Close the database connection."""
        with self._db_lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Message log closed")
