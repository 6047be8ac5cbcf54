"""
Pytest configuration and fixtures for WhisperMail tests.

Created by orpheus497

Provides common fixtures and test utilities for unit and integration tests.
RSA key generation is slow, so key pairs are created once per session and
loaded into fresh key managers for every test.
"""

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from whispermail.crypto import b64encode
from whispermail.exchange import ExchangeProtocol
from whispermail.identity import KeyManager
from whispermail.relay import MemoryRelay
from whispermail.session import MessageSession
from whispermail.storage import Keyring, MessageLog

ALICE = "alice@example.com"
BOB = "bob@example.com"


def _generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def private_key_blob(private_key: rsa.RSAPrivateKey) -> str:
    """Unencrypted private key backup, as produced by KeyManager.export_private_key."""
    der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64encode(der)


@dataclass
class Party:
    """One side of a conversation, wired like WhisperClient does it."""

    address: str
    keyring: Keyring
    message_log: MessageLog
    key_manager: KeyManager
    exchange: ExchangeProtocol
    session: MessageSession
    relay: MemoryRelay

    @property
    def fingerprint(self) -> str:
        return self.key_manager.identity.fingerprint

    def public_key(self) -> bytes:
        return self.key_manager.export_public_key()


def make_party(
    directory: Path, address: str, relay: MemoryRelay, private_key: rsa.RSAPrivateKey = None
) -> Party:
    directory.mkdir(parents=True, exist_ok=True)
    keyring = Keyring(str(directory / "keyring.json"))
    message_log = MessageLog(directory / "messages.db")
    key_manager = KeyManager(keyring)
    exchange = ExchangeProtocol(key_manager, address, relay)
    if private_key is not None:
        exchange.import_identity(private_key_blob(private_key))
    session = MessageSession(key_manager, exchange, message_log, my_address=address)
    return Party(address, keyring, message_log, key_manager, exchange, session, relay)


async def trust_each_other(a: Party, b: Party) -> None:
    """Complete the verified key exchange in both directions."""
    await a.exchange.import_peer_public_key(
        b.address, b.public_key(), confirmed_fingerprint=b.fingerprint
    )
    await b.exchange.import_peer_public_key(
        a.address, a.public_key(), confirmed_fingerprint=a.fingerprint
    )
    a.session.peer_address = b.address
    b.session.peer_address = a.address


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="whispermail_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture(scope="session")
def alice_key() -> rsa.RSAPrivateKey:
    return _generate_key()


@pytest.fixture(scope="session")
def bob_key() -> rsa.RSAPrivateKey:
    return _generate_key()


@pytest.fixture(scope="session")
def mallory_key() -> rsa.RSAPrivateKey:
    return _generate_key()


@pytest.fixture
def relay() -> MemoryRelay:
    return MemoryRelay(ALICE)


@pytest.fixture
def alice(temp_dir: Path, relay: MemoryRelay, alice_key) -> Generator[Party, None, None]:
    party = make_party(temp_dir / "alice", ALICE, relay, alice_key)
    yield party
    party.message_log.close()


@pytest.fixture
def bob(temp_dir: Path, relay: MemoryRelay, bob_key) -> Generator[Party, None, None]:
    party = make_party(temp_dir / "bob", BOB, relay.connect(BOB), bob_key)
    yield party
    party.message_log.close()


@pytest_asyncio.fixture
async def trusted_pair(alice: Party, bob: Party):
    """Alice and Bob after a completed, verified key exchange."""
    await trust_each_other(alice, bob)
    return alice, bob


# Pytest marks
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
