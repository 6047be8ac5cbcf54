"""
WhisperMail - Client.

Created by orpheus497

Wires the configuration, keyring, message log, key manager, exchange
protocol, message session, relay transport and inbox poller of one local
instance (one data directory) together.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from .config import Config
from .constants import (
    CONFIG_FILENAME,
    HISTORY_DEFAULT_LIMIT,
    KEYRING_FILENAME,
    MESSAGES_DB_FILENAME,
    SETTING_MY_ADDRESS,
    SETTING_PEER_ADDRESS,
)
from .crypto import HybridCipher
from .envelope import Envelope, EnvelopeCodec
from .errors import (
    ConfigError,
    ErrorCode,
    ExchangeIncompleteError,
    FileTooLargeError,
    IdentityError,
    StorageError,
    TransportError,
    WhisperError,
)
from .exchange import ExchangeProtocol
from .identity import Identity, KeyManager, PeerKey
from .message import Message
from .poller import InboxPoller
from .relay import MailRelay, MemoryRelay, Transport
from .session import BatchReport, MessageSession
from .storage import Keyring, MessageLog
from .utils import guess_file_type, sanitize_filename, validate_address

logger = logging.getLogger(__name__)


class WhisperClient:
    """One local WhisperMail instance."""

    def __init__(
        self,
        data_dir: Path,
        config: Optional[Config] = None,
        transport: Optional[Transport] = None,
    ):
        self.data_dir = Path(data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config = config or Config(self.data_dir / CONFIG_FILENAME)

        self.keyring = Keyring(str(self.data_dir / KEYRING_FILENAME))
        self.message_log = MessageLog(self.data_dir / MESSAGES_DB_FILENAME)

        self.my_address = self.config.get("session", "my_address") or self.keyring.get_value(
            SETTING_MY_ADDRESS, ""
        )
        self.peer_address = self.config.get("session", "peer_address") or self.keyring.get_value(
            SETTING_PEER_ADDRESS
        )
        self.max_file_size = self.config.get("limits", "max_file_size")

        self.key_manager = KeyManager(
            self.keyring, key_size=self.config.get("identity", "key_size")
        )
        self.transport = transport or self._create_transport()
        self.exchange = ExchangeProtocol(self.key_manager, self.my_address, self.transport)
        self.exchange.peer_address = self.peer_address
        self.session = MessageSession(
            self.key_manager,
            self.exchange,
            self.message_log,
            my_address=self.my_address,
            peer_address=self.peer_address,
            cipher=HybridCipher(self.max_file_size),
        )
        self.poller = InboxPoller(
            self.transport,
            self.session,
            self.keyring,
            interval=self.config.get("relay", "poll_interval"),
            timeout=self.config.get("relay", "timeout"),
        )

    def _create_transport(self) -> Transport:
        """Build the relay selected by ``relay.backend``."""
        relay = self.config.data.get("relay", {})
        backend = relay.get("backend", "mail")

        if backend == "memory":
            return MemoryRelay(self.my_address)
        if backend == "mail":
            return MailRelay(
                self.my_address,
                smtp_host=relay.get("smtp_host", ""),
                imap_host=relay.get("imap_host", ""),
                username=relay.get("username") or self.my_address,
                password=relay.get("password", ""),
                smtp_port=relay.get("smtp_port"),
                imap_port=relay.get("imap_port"),
                mailbox=relay.get("mailbox"),
                timeout=relay.get("timeout"),
            )
        raise ConfigError(
            ErrorCode.E701_CONFIG_LOAD_FAILED,
            f"Unknown relay backend: {backend!r}",
            {"backend": backend},
        )

    # Lifecycle

    def start(self) -> bool:
        """
        Load the stored identity and the active peer's key.

        Returns:
            False if no identity has been created yet
        """
        loaded = self.exchange.load_identity()
        if self.peer_address:
            state = self.exchange.restore(self.peer_address)
            logger.info(f"Exchange with {self.peer_address}: {state.name}")
        return loaded

    def set_addresses(self, my_address: Optional[str] = None, peer_address: Optional[str] = None):
        """Remember our own and the active peer's address."""
        for address in (my_address, peer_address):
            if address and not validate_address(address):
                raise WhisperError(
                    ErrorCode.E002_INVALID_ARGUMENT,
                    f"Not a mail address: {address!r}",
                    {"address": address},
                )
        if my_address:
            self.my_address = my_address
            self.exchange.my_address = my_address
            self.session.my_address = my_address
            if isinstance(self.transport, (MemoryRelay, MailRelay)):
                self.transport.address = my_address
            self.keyring.set_value(SETTING_MY_ADDRESS, my_address)
        if peer_address:
            self.peer_address = peer_address
            self.session.peer_address = peer_address
            self.exchange.peer_address = peer_address
            self.keyring.set_value(SETTING_PEER_ADDRESS, peer_address)
            self.exchange.restore(peer_address)

    def init_identity(self, force: bool = False) -> Identity:
        """
        Create and persist the local identity.

        An existing identity is kept unless ``force`` is set; replacing it
        makes every message encrypted to the old key unreadable.
        """
        if self.key_manager.has_identity() and not force:
            return self.key_manager.identity
        identity = self.exchange.generate_identity()
        self.key_manager.persist_identity()
        return identity

    async def close(self) -> None:
        await self.poller.stop()
        await self.transport.close()
        self.message_log.close()

    # Keys

    def fingerprint(self) -> str:
        identity = self.key_manager.identity
        if identity is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No local identity")
        return identity.fingerprint

    def export_public_key(self) -> str:
        """Our public key in its wire form (base64 DER)."""
        return self.exchange.build_announcement().public_key

    async def announce(self) -> bool:
        """Send our public key to the active peer."""
        if not self.peer_address:
            raise ExchangeIncompleteError("No peer address selected")
        return await self.exchange.announce(self.peer_address)

    async def import_peer_key(self, address: str, key_data: str, fingerprint: str) -> PeerKey:
        """Trust a peer key whose fingerprint the user verified."""
        peer = await self.exchange.import_peer_public_key(
            address, key_data, confirmed_fingerprint=fingerprint
        )
        if not self.peer_address:
            self.set_addresses(peer_address=address)
        return peer

    async def trust_pending(self, address: str, fingerprint: str) -> PeerKey:
        """Trust the key a peer announced, after verifying its fingerprint."""
        peer = await self.exchange.trust_pending(address, fingerprint)
        if not self.peer_address:
            self.set_addresses(peer_address=address)
        return peer

    def backup_key(self, password: Optional[str] = None) -> str:
        return self.key_manager.export_private_key(password)

    def restore_key(self, blob: str, password: Optional[str] = None) -> Identity:
        return self.exchange.import_identity(blob, password)

    # Messaging

    async def _dispatch(self, envelope: Envelope, message: Message) -> Message:
        try:
            sent = await self.transport.announce(
                self.peer_address, EnvelopeCodec.encode(envelope), subject=envelope.subject
            )
            if not sent:
                raise TransportError(ErrorCode.E211_SEND_FAILED, "Relay rejected the message")
        except TransportError:
            # Only messages that left the device stay in the history
            self.message_log.delete(message.message_id)
            raise
        return message

    async def send_text(self, text: str) -> Message:
        envelope, message = await self.session.send_text(text)
        return await self._dispatch(envelope, message)

    async def send_file(self, path: Path, file_type: Optional[str] = None) -> Message:
        """Encrypt and send a file from disk."""
        path = Path(path)
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise WhisperError(
                ErrorCode.E003_FILE_NOT_FOUND, f"Cannot read file: {path}", {"path": str(path)}
            ) from e
        if size > self.max_file_size:
            raise FileTooLargeError(size, self.max_file_size)

        async with aiofiles.open(path, "rb") as f:
            data = await f.read()

        envelope, message = await self.session.send_file(
            data, path.name, file_type or guess_file_type(path.name)
        )
        return await self._dispatch(envelope, message)

    async def poll_once(self) -> Optional[BatchReport]:
        return await self.poller.poll_once()

    def start_polling(self) -> None:
        self.poller.start()

    async def stop_polling(self) -> None:
        await self.poller.stop()

    # History

    def history(self, limit: int = HISTORY_DEFAULT_LIMIT) -> List[Message]:
        return self.session.history(limit)

    async def save_attachment(self, message_id: str, dest_dir: Path) -> Path:
        """Write a received attachment to ``dest_dir`` under a sanitized name."""
        message = self.message_log.get(message_id)
        if message is None or message.data is None:
            raise StorageError(
                ErrorCode.E503_MESSAGE_NOT_FOUND,
                f"No attachment for message {message_id}",
                {"message_id": message_id},
            )
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / sanitize_filename(message.file_name or message.message_id)

        async with aiofiles.open(target, "wb") as f:
            await f.write(message.data)
        logger.info(f"Saved attachment {message_id} to {target}")
        return target

    def clear_all(self, confirm: bool = False) -> None:
        """Delete the history and destroy the private key."""
        if not confirm:
            raise IdentityError(
                ErrorCode.E302_CLEAR_NOT_CONFIRMED, "Clearing all data must be explicitly confirmed"
            )
        removed = self.session.clear_history()
        self.exchange.clear_identity(confirm=True)
        logger.warning(f"Cleared all local data ({removed} messages)")

    def status(self) -> Dict[str, Any]:
        """Summary of the local instance for display."""
        identity = self.key_manager.identity
        return {
            "my_address": self.my_address,
            "peer_address": self.peer_address,
            "fingerprint": identity.fingerprint if identity else None,
            "state": self.exchange.state(self.peer_address).name if self.peer_address else None,
            "messages": self.message_log.count(),
            "unread": self.message_log.unread_count(),
            "pending_keys": [p.address for p in self.exchange.pending_keys()],
            "last_checked": self.poller.last_checked,
        }
