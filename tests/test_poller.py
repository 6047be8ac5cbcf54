"""
WhisperMail - Inbox poller tests.

Created by orpheus497
"""

import asyncio
from datetime import timedelta
from typing import List, Optional

import pytest

from conftest import ALICE, BOB
from whispermail.constants import SETTING_SEEN_PAYLOADS
from whispermail.envelope import EnvelopeCodec
from whispermail.errors import ErrorCode, StorageError, TransportError
from whispermail.poller import InboxPoller, payload_digest
from whispermail.relay import Transport, parse_checkpoint


class FlakyRelay(Transport):
    """Relay that fails or hangs on demand."""

    def __init__(self, inner: Transport):
        self.inner = inner
        self.fail = False
        self.hang = False
        self.error: Optional[Exception] = None
        self.calls: List[Optional[str]] = []

    async def announce(self, peer_address, payload, subject=None):
        return await self.inner.announce(peer_address, payload, subject)

    async def poll(self, since=None):
        self.calls.append(since)
        if self.hang:
            await asyncio.sleep(10)
        if self.fail:
            raise TransportError(ErrorCode.E212_POLL_FAILED, "imap down")
        if self.error is not None:
            raise self.error
        return await self.inner.poll(since)


@pytest.fixture
def poller(trusted_pair):
    _, bob = trusted_pair
    relay = FlakyRelay(bob.relay)
    return InboxPoller(relay, bob.session, bob.keyring, interval=0.01, timeout=0.5)


async def _send(alice, text) -> str:
    envelope, _ = await alice.session.send_text(text)
    payload = EnvelopeCodec.encode(envelope)
    await alice.relay.announce(BOB, payload)
    return payload


@pytest.mark.asyncio
class TestPollCycle:
    async def test_poll_once_delivers_and_advances_checkpoint(self, trusted_pair, poller):
        alice, bob = trusted_pair
        await _send(alice, "hello")

        report = await poller.poll_once()

        assert [m.content for m in report.messages] == ["hello"]
        assert poller.last_checked is not None
        assert bob.keyring.get_value("last_checked") == poller.last_checked

    async def test_next_poll_starts_before_checkpoint(self, trusted_pair, poller):
        alice, _ = trusted_pair
        await _send(alice, "first")
        await poller.poll_once()
        checkpoint = poller.last_checked

        await _send(alice, "second")
        report = await poller.poll_once()

        assert poller.transport.calls == [None, poller.poll_from(checkpoint)]
        assert [m.content for m in report.messages] == ["second"]

    async def test_poll_from_subtracts_overlap(self, poller):
        poller.overlap = 90

        since = poller.poll_from("2024-05-01T12:00:00+00:00")

        assert parse_checkpoint(since) == parse_checkpoint("2024-05-01T11:58:30+00:00")
        assert poller.poll_from(None) is None

    async def test_mail_stamped_in_checkpoint_second_is_delivered(self, trusted_pair, poller):
        """Test mail the server dates at or before the checkpoint still arrives."""
        alice, bob = trusted_pair
        await poller.poll_once()
        checkpoint = parse_checkpoint(poller.last_checked)

        # Visible only now, but dated like IMAP INTERNALDATE (whole seconds)
        envelope, _ = await alice.session.send_text("late")
        stamped = checkpoint.replace(microsecond=0) - timedelta(seconds=1)
        bob.relay.mailboxes[BOB].append((stamped, EnvelopeCodec.encode(envelope)))

        report = await poller.poll_once()

        assert [m.content for m in report.messages] == ["late"]

    async def test_overlap_does_not_duplicate_messages(self, trusted_pair, poller):
        alice, bob = trusted_pair
        payload = await _send(alice, "once")

        await poller.poll_once()
        report = await poller.poll_once()
        await poller.poll_once()

        assert len(report) == 0
        assert [m.content for m in bob.session.history()] == ["once"]
        assert payload_digest(payload) in bob.keyring.get_value(SETTING_SEEN_PAYLOADS)

    async def test_duplicates_within_one_batch(self, trusted_pair, poller):
        alice, bob = trusted_pair
        payload = await _send(alice, "twice")
        await alice.relay.announce(BOB, payload)

        report = await poller.poll_once()

        assert len(report) == 1
        assert bob.message_log.count() == 1

    async def test_old_digests_are_forgotten(self, trusted_pair, poller):
        _, bob = trusted_pair
        bob.keyring.set_value(
            SETTING_SEEN_PAYLOADS,
            {"old": "2000-01-01T00:00:00+00:00", "new": "2999-01-01T00:00:00+00:00"},
        )

        await poller.poll_once()

        assert set(bob.keyring.get_value(SETTING_SEEN_PAYLOADS)) == {"new"}

    async def test_transport_failure_keeps_checkpoint(self, trusted_pair, poller):
        """Test a failed cycle re-delivers on the next one instead of losing mail."""
        alice, _ = trusted_pair
        await _send(alice, "hello")
        poller.transport.fail = True

        assert await poller.poll_once() is None
        assert poller.last_checked is None
        assert poller.failures == 1

        poller.transport.fail = False
        report = await poller.poll_once()
        assert [m.content for m in report.messages] == ["hello"]

    async def test_processing_failure_keeps_checkpoint(self, trusted_pair, poller, monkeypatch):
        alice, bob = trusted_pair
        await _send(alice, "hello")

        def failing_append(message):
            raise StorageError(ErrorCode.E502_STORAGE_SAVE_FAILED, "disk full")

        with monkeypatch.context() as patch:
            patch.setattr(bob.message_log, "append", failing_append)
            with pytest.raises(StorageError):
                await poller.poll_once()

        assert poller.last_checked is None
        assert not bob.keyring.get_value(SETTING_SEEN_PAYLOADS)

        report = await poller.poll_once()
        assert [m.content for m in report.messages] == ["hello"]

    async def test_timeout_keeps_checkpoint(self, poller):
        poller.transport.hang = True
        poller.timeout = 0.05

        assert await poller.poll_once() is None
        assert poller.last_checked is None
        assert poller.failures == 1

    async def test_on_batch_callback(self, trusted_pair, poller):
        alice, _ = trusted_pair
        batches = []
        poller.on_batch = batches.append

        await poller.poll_once()
        await _send(alice, "hello")
        await poller.poll_once()

        assert len(batches) == 1
        assert batches[0].messages[0].content == "hello"

    async def test_callback_errors_do_not_break_polling(self, trusted_pair, poller):
        alice, _ = trusted_pair
        await _send(alice, "hello")

        def boom(report):
            raise RuntimeError("ui crashed")

        poller.on_batch = boom
        report = await poller.poll_once()
        assert len(report) == 1
        assert poller.last_checked is not None

    async def test_poller_does_not_poll_for_other_address(self, trusted_pair):
        alice, _ = trusted_pair
        poller = InboxPoller(alice.relay, alice.session, alice.keyring)
        await _send(alice, "to bob")

        report = await poller.poll_once()
        assert len(report) == 0
        assert alice.relay.address == ALICE


@pytest.mark.asyncio
class TestPollLoop:
    async def test_start_and_stop(self, trusted_pair, poller):
        """Test the background loop polls repeatedly and stops on request."""
        alice, _ = trusted_pair
        await _send(alice, "hello")
        received = []
        poller.on_batch = lambda report: received.extend(report.messages)

        poller.start()
        assert poller.running
        poller.start()
        await asyncio.sleep(0.2)
        await poller.stop()

        assert not poller.running
        assert poller.cycles >= 2
        assert [m.content for m in received] == ["hello"]

    async def test_loop_survives_failures(self, poller):
        poller.transport.fail = True

        poller.start()
        await asyncio.sleep(0.1)
        await poller.stop()

        assert poller.failures >= 2
        assert poller.last_checked is None

    @pytest.mark.parametrize(
        "error", [LookupError("unknown encoding: x-bogus"), RuntimeError("socket closed")]
    )
    async def test_loop_survives_unexpected_errors(self, trusted_pair, poller, error):
        """Test an error outside the WhisperError hierarchy does not end polling."""
        alice, _ = trusted_pair
        poller.transport.error = error

        poller.start()
        await asyncio.sleep(0.1)
        assert poller.running
        assert poller.failures >= 2

        poller.transport.error = None
        await _send(alice, "after recovery")
        await asyncio.sleep(0.1)
        await poller.stop()

        assert not poller.running
        assert [m.content for m in poller.session.history()] == ["after recovery"]

    async def test_stop_when_not_running(self, poller):
        await poller.stop()
        assert not poller.running
