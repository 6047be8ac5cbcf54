"""
WhisperMail - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
WhisperMail. Each error has a unique code for logging and debugging.

Error messages and details never carry plaintext or key material.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all WhisperMail error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E003_FILE_NOT_FOUND = "E003"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_KEY_FORMAT = "E101"
    E102_KEY_WRAP_FAILED = "E102"
    E103_DECRYPTION_FAILED = "E103"
    E104_FINGERPRINT_MISMATCH = "E104"
    E105_KEY_GENERATION_FAILED = "E105"

    # Envelope / Transport Errors (E200-E299)
    E200_ENVELOPE_ERROR = "E200"
    E201_MALFORMED_ENVELOPE = "E201"
    E202_UNSUPPORTED_VERSION = "E202"
    E203_MISSING_FIELD = "E203"
    E210_TRANSPORT_ERROR = "E210"
    E211_SEND_FAILED = "E211"
    E212_POLL_FAILED = "E212"
    E213_TRANSPORT_TIMEOUT = "E213"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E301_IDENTITY_NOT_FOUND = "E301"
    E302_CLEAR_NOT_CONFIRMED = "E302"
    E303_BACKUP_INVALID = "E303"

    # Exchange Errors (E400-E499)
    E400_EXCHANGE_ERROR = "E400"
    E401_EXCHANGE_INCOMPLETE = "E401"
    E402_NO_PEER = "E402"

    # Storage Errors (E500-E599)
    E500_STORAGE_ERROR = "E500"
    E501_STORAGE_LOAD_FAILED = "E501"
    E502_STORAGE_SAVE_FAILED = "E502"
    E503_MESSAGE_NOT_FOUND = "E503"

    # File Errors (E600-E699)
    E600_FILE_ERROR = "E600"
    E601_FILE_TOO_LARGE = "E601"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class WhisperError(Exception):
    """Base exception class for all WhisperMail errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(WhisperError):
    """Base for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyFormatError(CryptoError):
    """Raised when key bytes do not decode to a usable public key.

    The user has to obtain the key again.
    """

    def __init__(
        self,
        message: str = "Key data is not a valid RSA public key",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E101_KEY_FORMAT, message, details)


class KeyWrapError(CryptoError):
    """Raised when a content key cannot be wrapped for the recipient.

    This is an algorithm or size mismatch and is fatal to that send.
    """

    def __init__(
        self,
        message: str = "Content key could not be wrapped",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_KEY_WRAP_FAILED, message, details)


class DecryptionError(CryptoError):
    """Raised on any integrity or format failure while opening a message.

    The message text is fixed: callers cannot tell a wrong key from a
    corrupted ciphertext.
    """

    MESSAGE = "Message could not be decrypted"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.E103_DECRYPTION_FAILED, self.MESSAGE, details)


class FingerprintMismatchError(CryptoError):
    """Raised when the verified fingerprint does not match the key being trusted."""

    def __init__(
        self,
        message: str = "Fingerprint does not match the key",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E104_FINGERPRINT_MISMATCH, message, details)


class EnvelopeFormatError(WhisperError):
    """Raised for payloads that are not a well-formed envelope."""

    def __init__(
        self,
        message: str = "Malformed envelope",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E201_MALFORMED_ENVELOPE,
    ):
        super().__init__(code, message, details)


class UnsupportedVersionError(EnvelopeFormatError):
    """Raised for envelopes declaring a version this build does not speak."""

    def __init__(self, version: Any):
        super().__init__(
            f"Unsupported envelope version: {version!r}",
            {"version": version},
            code=ErrorCode.E202_UNSUPPORTED_VERSION,
        )


class TransportError(WhisperError):
    """Raised by relays when sending or polling fails."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E210_TRANSPORT_ERROR,
        message: str = "Transport operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class IdentityError(WhisperError):
    """Raised for identity lifecycle failures (missing key, unconfirmed clear)."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ExchangeIncompleteError(WhisperError):
    """Raised when content is sent before the peer key is trusted."""

    def __init__(
        self,
        message: str = "Key exchange is not complete; cannot send encrypted content",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E401_EXCHANGE_INCOMPLETE, message, details)


class StorageError(WhisperError):
    """Raised for keyring and message log failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_STORAGE_ERROR,
        message: str = "Storage operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class FileTooLargeError(WhisperError):
    """Raised when an attachment exceeds the configured size limit."""

    def __init__(self, size: int, max_size: int):
        super().__init__(
            ErrorCode.E601_FILE_TOO_LARGE,
            f"File too large: {size} > {max_size} bytes",
            {"size": size, "max_size": max_size},
        )


class ConfigError(WhisperError):
    """Raised for configuration loading, parsing and saving failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
