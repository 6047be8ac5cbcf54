"""
WhisperMail - Store-and-forward transports.

Created by orpheus497

The core only needs two operations from a relay:
- announce(peer_address, payload): hand one opaque payload to the relay
- poll(since): every payload received after a checkpoint

The relay is untrusted. It may reorder, duplicate or drop payloads; it
never sees plaintext.

Two implementations are provided:
- MemoryRelay: in-process mailboxes for tests and local loopback
- MailRelay: SMTP over SSL for sending, IMAP over SSL for polling
"""

import asyncio
import imaplib
import logging
import smtplib
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email import message_from_bytes, policy
from email.errors import MessageError
from email.message import EmailMessage
from typing import Dict, List, Optional, Tuple

from .constants import (
    DEFAULT_IMAP_PORT,
    DEFAULT_MAILBOX,
    DEFAULT_SMTP_PORT,
    SUBJECT_PREFIX,
    TRANSPORT_TIMEOUT,
)
from .errors import ErrorCode, TransportError

logger = logging.getLogger(__name__)

IMAP_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def parse_checkpoint(since: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 checkpoint; naive values are taken as UTC."""
    if not since:
        return None
    try:
        value = datetime.fromisoformat(since)
    except ValueError as e:
        raise TransportError(
            ErrorCode.E212_POLL_FAILED, f"Invalid poll checkpoint: {since!r}"
        ) from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class Transport(ABC):
    """Contract between the messaging core and a store-and-forward relay."""

    @abstractmethod
    async def announce(
        self, peer_address: str, payload: str, subject: Optional[str] = None
    ) -> bool:
        """Deliver one payload to a peer. Returns True if the relay accepted it."""

    @abstractmethod
    async def poll(self, since: Optional[str] = None) -> List[str]:
        """Payloads received strictly after ``since`` (all of them when None)."""

    async def close(self) -> None:
        """Release relay resources."""


class MemoryRelay(Transport):
    """
    In-process relay.

    Relays created with connect() share one set of mailboxes, so two local
    instances can talk to each other without a network.
    """

    def __init__(
        self,
        address: str,
        mailboxes: Optional[Dict[str, List[Tuple[datetime, str]]]] = None,
    ):
        self.address = address
        self.mailboxes = mailboxes if mailboxes is not None else {}
        self.mailboxes.setdefault(address, [])
        self.sent_count = 0

    def connect(self, address: str) -> "MemoryRelay":
        """A relay for another address on the same mailboxes."""
        return MemoryRelay(address, self.mailboxes)

    async def announce(
        self, peer_address: str, payload: str, subject: Optional[str] = None
    ) -> bool:
        self.mailboxes.setdefault(peer_address, []).append(
            (datetime.now(timezone.utc), payload)
        )
        self.sent_count += 1
        logger.debug(f"Queued {len(payload)}B payload for {peer_address}")
        return True

    async def poll(self, since: Optional[str] = None) -> List[str]:
        checkpoint = parse_checkpoint(since)
        return [
            payload
            for received_at, payload in self.mailboxes.get(self.address, [])
            if checkpoint is None or received_at > checkpoint
        ]

    def pending_count(self, address: Optional[str] = None) -> int:
        return len(self.mailboxes.get(address or self.address, []))


def build_mail(sender: str, recipient: str, subject: str, payload: str) -> EmailMessage:
    """Plain-text mail carrying one payload."""
    mail = EmailMessage()
    mail["From"] = sender
    mail["To"] = recipient
    mail["Subject"] = subject
    mail.set_content(payload)
    return mail


def extract_payload(raw: bytes) -> Optional[str]:
    """Text body of a relay mail, or None if the subject is not ours."""
    mail = message_from_bytes(raw, policy=policy.default)
    subject = str(mail.get("Subject", ""))
    if not subject.startswith(SUBJECT_PREFIX):
        return None
    body = mail.get_body(preferencelist=("plain",))
    if body is None:
        return None
    return body.get_content().strip()


def imap_date(value: datetime) -> str:
    """IMAP SEARCH date (dd-Mon-yyyy), independent of locale."""
    return f"{value.day}-{IMAP_MONTHS[value.month - 1]}-{value.year}"


def parse_internaldate(fetch_header: bytes) -> Optional[datetime]:
    """INTERNALDATE of a FETCH response as an aware UTC datetime."""
    parsed = imaplib.Internaldate2tuple(fetch_header)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), timezone.utc)


class MailRelay(Transport):
    """
    Email relay.

    Sends with SMTP over SSL and polls with IMAP over SSL. The blocking
    library calls run in a worker thread with a socket timeout.
    """

    def __init__(
        self,
        address: str,
        smtp_host: str,
        imap_host: str,
        username: str,
        password: str,
        smtp_port: int = DEFAULT_SMTP_PORT,
        imap_port: int = DEFAULT_IMAP_PORT,
        mailbox: str = DEFAULT_MAILBOX,
        timeout: float = TRANSPORT_TIMEOUT,
    ):
        self.address = address
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.imap_host = imap_host
        self.imap_port = imap_port
        self.username = username
        self.password = password
        self.mailbox = mailbox
        self.timeout = timeout

    def __repr__(self) -> str:
        return (
            f"MailRelay(address={self.address!r}, smtp={self.smtp_host}:{self.smtp_port}, "
            f"imap={self.imap_host}:{self.imap_port})"
        )

    async def announce(
        self, peer_address: str, payload: str, subject: Optional[str] = None
    ) -> bool:
        if subject is None:
            subject = f"{SUBJECT_PREFIX} {datetime.now(timezone.utc).isoformat()}"
        mail = build_mail(self.address, peer_address, subject, payload)
        await asyncio.to_thread(self._send, mail)
        logger.info(f"Sent relay mail to {peer_address} ({len(payload)}B)")
        return True

    def _send(self, mail: EmailMessage) -> None:
        try:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.login(self.username, self.password)
                server.send_message(mail)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send to {mail['To']} failed: {e}")
            raise TransportError(
                ErrorCode.E211_SEND_FAILED,
                f"Failed to send mail: {e}",
                {"host": self.smtp_host, "recipient": str(mail["To"])},
            ) from e

    async def poll(self, since: Optional[str] = None) -> List[str]:
        checkpoint = parse_checkpoint(since)
        payloads = await asyncio.to_thread(self._fetch, checkpoint)
        logger.debug(f"Fetched {len(payloads)} relay mails")
        return payloads

    def _fetch(self, checkpoint: Optional[datetime]) -> List[str]:
        criteria = [f'SUBJECT "{SUBJECT_PREFIX}"']
        if checkpoint is not None:
            # SEARCH SINCE only has day resolution; INTERNALDATE filters the rest
            criteria.append(f"SINCE {imap_date(checkpoint)}")

        try:
            client = imaplib.IMAP4_SSL(self.imap_host, self.imap_port, timeout=self.timeout)
        except OSError as e:
            raise TransportError(
                ErrorCode.E212_POLL_FAILED,
                f"Cannot connect to IMAP server: {e}",
                {"host": self.imap_host},
            ) from e

        payloads: List[str] = []
        try:
            client.login(self.username, self.password)
            client.select(self.mailbox, readonly=True)
            status, data = client.search(None, f"({' '.join(criteria)})")
            if status != "OK":
                raise TransportError(ErrorCode.E212_POLL_FAILED, "IMAP search failed")

            for num in data[0].split():
                status, parts = client.fetch(num, "(INTERNALDATE BODY.PEEK[])")
                if status != "OK":
                    logger.warning(f"Could not fetch mail {num!r}")
                    continue
                for part in parts:
                    if not isinstance(part, tuple):
                        continue
                    try:
                        received_at = parse_internaldate(part[0])
                        if checkpoint and received_at and received_at <= checkpoint:
                            continue
                        payload = extract_payload(part[1])
                    except (LookupError, ValueError, MessageError) as e:
                        # Unknown charset or broken MIME: skip this mail only
                        logger.warning(f"Skipping unreadable mail {num!r}: {type(e).__name__}")
                        continue
                    if payload:
                        payloads.append(payload)
        except (imaplib.IMAP4.error, OSError) as e:
            raise TransportError(
                ErrorCode.E212_POLL_FAILED, f"IMAP poll failed: {e}", {"host": self.imap_host}
            ) from e
        finally:
            try:
                client.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug(f"IMAP logout failed: {e}")

        return payloads
