"""
WhisperMail - Message session.

Created by orpheus497

Sends and receives content once the key exchange with the active peer is
trusted. Every send draws a fresh content key and nonce; every receive uses
the key snapshot taken at its start. Cryptographic work runs in a worker
thread through asyncio.to_thread so the event loop stays responsive.

One bad envelope never blocks the rest of a batch: format and decryption
failures are recorded per item and processing continues.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

from .constants import HISTORY_DEFAULT_LIMIT, MAX_TEXT_MESSAGE_SIZE
from .crypto import HybridCipher, describe_sealed
from .envelope import Envelope, EnvelopeCodec, EnvelopeKind
from .errors import (
    CryptoError,
    DecryptionError,
    EnvelopeFormatError,
    ErrorCode,
    StorageError,
    WhisperError,
)
from .exchange import ExchangeProtocol, PendingKey
from .identity import KeyManager
from .message import ContentType, Message
from .storage import MessageLog

logger = logging.getLogger(__name__)


@dataclass
class ReceiveResult:
    """Outcome of handling one relay payload."""

    index: int
    kind: Optional[EnvelopeKind] = None
    sender: Optional[str] = None
    message: Optional[Message] = None
    pending_key: Optional[PendingKey] = None
    error: Optional[WhisperError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    """Per-item results of one processed batch."""

    results: List[ReceiveResult] = field(default_factory=list)

    @property
    def messages(self) -> List[Message]:
        return [r.message for r in self.results if r.message is not None]

    @property
    def offers(self) -> List[PendingKey]:
        return [r.pending_key for r in self.results if r.pending_key is not None]

    @property
    def errors(self) -> List[ReceiveResult]:
        return [r for r in self.results if not r.ok]

    def __len__(self) -> int:
        return len(self.results)


class MessageSession:
    """1:1 encrypted conversation with the active peer."""

    def __init__(
        self,
        key_manager: KeyManager,
        exchange: ExchangeProtocol,
        message_log: MessageLog,
        my_address: str = "",
        peer_address: Optional[str] = None,
        cipher: Optional[HybridCipher] = None,
    ):
        self.key_manager = key_manager
        self.exchange = exchange
        self.message_log = message_log
        self.my_address = my_address
        self.peer_address = peer_address
        self.cipher = cipher or HybridCipher()

    # Sending

    async def send_text(self, text: str) -> Tuple[Envelope, Message]:
        """
        Encrypt a text message for the active peer.

        Returns the envelope for dispatch and the logged outgoing Message.

        Raises:
            ExchangeIncompleteError: If the peer is not TRUSTED (checked first)
        """
        peer = self.exchange.require_trusted(self.peer_address)

        plaintext = text.encode("utf-8")
        if len(plaintext) > MAX_TEXT_MESSAGE_SIZE:
            raise WhisperError(
                ErrorCode.E002_INVALID_ARGUMENT,
                f"Message too long: {len(plaintext)} > {MAX_TEXT_MESSAGE_SIZE} bytes",
            )

        sealed = await asyncio.to_thread(self.cipher.seal, plaintext, peer.public_key)
        logger.debug(f"Sealed text for {peer.address}: {describe_sealed(sealed)}")
        envelope = Envelope.text_message(self.my_address, sealed)

        message = Message(
            sender=self.my_address,
            incoming=False,
            content=text,
            encrypted_key=envelope.encrypted_key,
            encrypted_content=envelope.encrypted_content,
            iv=envelope.iv,
            timestamp=envelope.timestamp,
        )
        self.message_log.append(message)
        logger.info(f"Sealed text message {message.message_id} for {peer.address}")
        return envelope, message

    async def send_file(
        self, data: bytes, file_name: str, file_type: str
    ) -> Tuple[Envelope, Message]:
        """
        Encrypt an attachment for the active peer.

        Name, MIME type and size travel unencrypted next to the ciphertext.

        Raises:
            ExchangeIncompleteError: If the peer is not TRUSTED (checked first)
            FileTooLargeError: If the attachment exceeds the size limit
        """
        peer = self.exchange.require_trusted(self.peer_address)

        encrypted_key, encrypted = await asyncio.to_thread(
            self.cipher.seal_file, data, file_name, file_type, peer.public_key
        )
        envelope = Envelope.file_message(self.my_address, encrypted_key, encrypted)

        message = Message(
            sender=self.my_address,
            incoming=False,
            content_type=envelope.content_type,
            data=bytes(data),
            file_name=encrypted.file_name,
            file_type=encrypted.file_type,
            file_size=encrypted.file_size,
            encrypted_key=envelope.encrypted_key,
            encrypted_content=envelope.encrypted_content,
            iv=envelope.iv,
            timestamp=envelope.timestamp,
        )
        self.message_log.append(message)
        logger.info(
            f"Sealed {envelope.content_type.value} {message.message_id} "
            f"({encrypted.file_size} bytes) for {peer.address}"
        )
        return envelope, message

    # Receiving

    async def receive(self, envelope: Envelope) -> Message:
        """
        Decrypt a message envelope addressed to the local identity.

        Nothing is logged unless decryption succeeds.

        Raises:
            DecryptionError: If the envelope cannot be opened
            EnvelopeFormatError: If it is not a message envelope
        """
        if envelope.kind is not EnvelopeKind.MESSAGE:
            raise EnvelopeFormatError("Envelope carries no message")

        identity = self.key_manager.snapshot().require_identity()
        try:
            sealed = envelope.sealed()
        except ValueError as e:
            raise EnvelopeFormatError("Envelope fields are not valid base64") from e

        if envelope.content_type is ContentType.TEXT:
            plaintext = await asyncio.to_thread(self.cipher.open, sealed, identity.private_key)
            try:
                content = plaintext.decode("utf-8")
            except UnicodeDecodeError:
                raise DecryptionError() from None
            message = Message(
                sender=envelope.sender,
                incoming=True,
                content=content,
                encrypted_key=envelope.encrypted_key,
                encrypted_content=envelope.encrypted_content,
                iv=envelope.iv,
                timestamp=envelope.timestamp,
            )
        else:
            data = await asyncio.to_thread(
                self.cipher.open_file,
                sealed.encrypted_key,
                envelope.encrypted_file(),
                identity.private_key,
            )
            message = Message(
                sender=envelope.sender,
                incoming=True,
                content_type=envelope.content_type,
                data=data,
                file_name=envelope.file_name,
                file_type=envelope.file_type,
                file_size=len(data),
                encrypted_key=envelope.encrypted_key,
                encrypted_content=envelope.encrypted_content,
                iv=envelope.iv,
                timestamp=envelope.timestamp,
            )

        if self.peer_address and envelope.sender != self.peer_address:
            logger.debug(f"Message from {envelope.sender}, not the active peer")

        self.message_log.append(message)
        logger.info(
            f"Received {message.content_type.value} {message.message_id} from {message.sender}"
        )
        return message

    async def process_batch(self, payloads: Iterable[Union[str, bytes]]) -> BatchReport:
        """
        Decode and handle every payload of a poll.

        Announcements become pending key offers; message envelopes are
        received. Format and crypto failures are recorded on the item and
        processing moves on. Storage failures propagate so the caller
        keeps its checkpoint.
        """
        report = BatchReport()
        for index, payload in enumerate(payloads):
            result = ReceiveResult(index=index)
            report.results.append(result)
            try:
                envelope = EnvelopeCodec.decode(payload)
                result.kind = envelope.kind
                result.sender = envelope.sender
                if envelope.is_announcement:
                    result.pending_key = self.exchange.offer_peer_key(envelope)
                else:
                    result.message = await self.receive(envelope)
            except (EnvelopeFormatError, CryptoError) as e:
                result.error = e
                logger.warning(f"Skipping payload {index}: {e}")

        if report.results:
            logger.info(
                f"Processed batch of {len(report)}: {len(report.messages)} messages, "
                f"{len(report.offers)} key offers, {len(report.errors)} skipped"
            )
        return report

    # History

    def history(self, limit: int = HISTORY_DEFAULT_LIMIT) -> List[Message]:
        """Most recent messages, oldest first."""
        return self.message_log.recent(limit)

    def _require(self, found: bool, message_id: str) -> None:
        if not found:
            raise StorageError(
                ErrorCode.E503_MESSAGE_NOT_FOUND,
                f"Message not found: {message_id}",
                {"message_id": message_id},
            )

    def mark_read(self, message_id: str) -> None:
        self._require(self.message_log.mark_read(message_id), message_id)

    def withdraw(self, message_id: str) -> None:
        """Flag a message as withdrawn. Its content is kept."""
        self._require(self.message_log.mark_withdrawn(message_id), message_id)

    def delete(self, message_id: str) -> None:
        self._require(self.message_log.delete(message_id), message_id)

    def clear_history(self) -> int:
        return self.message_log.clear()

    def unread_count(self) -> int:
        return self.message_log.unread_count()
