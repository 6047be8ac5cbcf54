"""
WhisperMail - End-to-end encrypted messaging over email

Two parties exchange RSA public keys through an untrusted mail relay,
verify them by fingerprint over a trusted channel, and then exchange
messages and attachments sealed with RSA-OAEP + AES-256-GCM.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

from .client import WhisperClient
from .config import Config
from .constants import APP_NAME, VERSION
from .crypto import HybridCipher
from .envelope import Envelope, EnvelopeCodec, EnvelopeKind
from .errors import (
    ConfigError,
    CryptoError,
    DecryptionError,
    EnvelopeFormatError,
    ErrorCode,
    ExchangeIncompleteError,
    FileTooLargeError,
    FingerprintMismatchError,
    IdentityError,
    KeyFormatError,
    KeyWrapError,
    StorageError,
    TransportError,
    UnsupportedVersionError,
    WhisperError,
)
from .exchange import ExchangeProtocol, ExchangeState
from .identity import Identity, KeyManager, PeerKey
from .message import ContentType, Message
from .relay import MailRelay, MemoryRelay, Transport
from .session import BatchReport, MessageSession

__all__ = [
    "APP_NAME",
    "VERSION",
    "BatchReport",
    "Config",
    "ConfigError",
    "ContentType",
    "CryptoError",
    "DecryptionError",
    "Envelope",
    "EnvelopeCodec",
    "EnvelopeFormatError",
    "EnvelopeKind",
    "ErrorCode",
    "ExchangeIncompleteError",
    "ExchangeProtocol",
    "ExchangeState",
    "FileTooLargeError",
    "FingerprintMismatchError",
    "HybridCipher",
    "Identity",
    "IdentityError",
    "KeyFormatError",
    "KeyManager",
    "KeyWrapError",
    "MailRelay",
    "MemoryRelay",
    "Message",
    "MessageSession",
    "PeerKey",
    "StorageError",
    "Transport",
    "TransportError",
    "UnsupportedVersionError",
    "WhisperClient",
    "WhisperError",
    "__author__",
    "__license__",
    "__version__",
]
