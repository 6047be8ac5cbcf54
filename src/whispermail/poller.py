"""
WhisperMail - Inbox polling.

Created by orpheus497

Periodically fetches new payloads from the relay and hands them to the
message session.

The "last checked" checkpoint is the local time a cycle started. It is
committed only after the batch has been processed, so a failed cycle leads
to re-delivery on the next one and never to loss. Relay timestamps come from
another clock (and IMAP INTERNALDATE only has one-second resolution), so
each poll starts POLL_OVERLAP seconds before the checkpoint. Payloads read
again inside that window are recognised by their digest and skipped.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union

from .constants import (
    POLL_INTERVAL,
    POLL_OVERLAP,
    SETTING_LAST_CHECKED,
    SETTING_SEEN_PAYLOADS,
    TRANSPORT_TIMEOUT,
)
from .errors import TransportError, WhisperError
from .relay import Transport, parse_checkpoint
from .session import BatchReport, MessageSession
from .storage import Keyring

logger = logging.getLogger(__name__)


def payload_digest(payload: Union[str, bytes]) -> str:
    """Stable identifier of a relay payload (every envelope is unique)."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


class InboxPoller:
    """Cancellable periodic poll loop."""

    def __init__(
        self,
        transport: Transport,
        session: MessageSession,
        keyring: Keyring,
        interval: float = POLL_INTERVAL,
        timeout: float = TRANSPORT_TIMEOUT,
        overlap: float = POLL_OVERLAP,
    ):
        self.transport = transport
        self.session = session
        self.keyring = keyring
        self.interval = interval
        self.timeout = timeout
        self.overlap = overlap

        self.poll_task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.failures = 0

        self.on_batch: Optional[Callable[[BatchReport], None]] = None

    @property
    def last_checked(self) -> Optional[str]:
        return self.keyring.get_value(SETTING_LAST_CHECKED)

    def poll_from(self, checkpoint: Optional[str]) -> Optional[str]:
        """Lower bound handed to the transport for a stored checkpoint."""
        value = parse_checkpoint(checkpoint)
        if value is None:
            return None
        return (value - timedelta(seconds=self.overlap)).isoformat()

    def _seen(self) -> Dict[str, str]:
        return dict(self.keyring.get_value(SETTING_SEEN_PAYLOADS) or {})

    def _forget_old(self, seen: Dict[str, str], now: datetime) -> Dict[str, str]:
        # Anything older than two windows can no longer be returned by a poll
        horizon = (now - timedelta(seconds=2 * self.overlap)).isoformat()
        return {digest: when for digest, when in seen.items() if when >= horizon}

    async def poll_once(self) -> Optional[BatchReport]:
        """
        Run one poll cycle.

        Returns:
            The processed batch, or None if the transport failed or timed out
            (the checkpoint is left unchanged)
        """
        started = datetime.now(timezone.utc)
        checkpoint = self.last_checked
        self.cycles += 1

        try:
            since = self.poll_from(checkpoint)
            payloads = await asyncio.wait_for(self.transport.poll(since), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(f"Poll timed out after {self.timeout}s; keeping checkpoint {checkpoint}")
            return None
        except TransportError as e:
            self.failures += 1
            logger.warning(f"Poll failed: {e}; keeping checkpoint {checkpoint}")
            return None

        seen = self._seen()
        fresh = self._unseen(payloads, seen)
        report = await self.session.process_batch(fresh)

        now = started.isoformat()
        for payload in fresh:
            seen[payload_digest(payload)] = now
        await self.keyring.update_values_async(
            {
                SETTING_SEEN_PAYLOADS: self._forget_old(seen, started),
                SETTING_LAST_CHECKED: now,
            }
        )
        logger.debug(f"Poll checkpoint advanced to {now}")

        if self.on_batch and len(report):
            try:
                self.on_batch(report)
            except Exception as e:
                logger.error(f"Batch callback error: {e}")

        return report

    @staticmethod
    def _unseen(payloads: Iterable[Union[str, bytes]], seen: Dict[str, str]) -> List:
        fresh = []
        digests = set(seen)
        skipped = 0
        for payload in payloads:
            digest = payload_digest(payload)
            if digest in digests:
                skipped += 1
                continue
            digests.add(digest)
            fresh.append(payload)
        if skipped:
            logger.debug(f"Skipped {skipped} payloads already processed")
        return fresh

    async def run(self) -> None:
        """Poll until cancelled. Errors are logged and the loop goes on."""
        logger.info(f"Inbox polling enabled: every {self.interval} seconds")

        try:
            while True:
                try:
                    await self.poll_once()
                except WhisperError as e:
                    self.failures += 1
                    logger.error(f"Poll cycle failed: {e}")
                except Exception as e:
                    self.failures += 1
                    logger.exception(f"Unexpected error in poll cycle: {type(e).__name__}")
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("Inbox polling cancelled")

    def start(self) -> None:
        """Start polling as an asyncio task."""
        if self.poll_task and not self.poll_task.done():
            logger.warning("Inbox polling already running")
            return

        self.poll_task = asyncio.create_task(self.run())
        logger.info("Started inbox polling task")

    async def stop(self) -> None:
        """Stop polling and wait for the task to finish."""
        if self.poll_task and not self.poll_task.done():
            self.poll_task.cancel()
            await self.poll_task
            logger.info("Stopped inbox polling task")
        self.poll_task = None

    @property
    def running(self) -> bool:
        return self.poll_task is not None and not self.poll_task.done()
