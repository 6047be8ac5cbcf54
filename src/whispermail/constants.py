"""
WhisperMail - Global Constants and Configuration Values

This module defines all constants used throughout WhisperMail.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "WhisperMail"
AUTHOR = "orpheus497"

# Envelope Protocol
PROTOCOL_VERSION = "1.0"
SUPPORTED_VERSIONS = ("1.0",)
KIND_PUBLIC_KEY = "public_key"
KIND_MESSAGE = "message"
SUBJECT_PREFIX = "[WHISPER]"
SUBJECT_KEY_EXCHANGE = "[WHISPER] Public Key Exchange"

# Cryptography Constants
RSA_PUBLIC_EXPONENT = 65537
RSA_KEY_SIZE = 2048  # default modulus, bits
RSA_MIN_KEY_SIZE = 2048
CONTENT_KEY_SIZE = 32  # 256 bits for AES-256-GCM
NONCE_SIZE = 12  # 96 bits for GCM
GCM_TAG_SIZE = 16
OAEP_HASH_SIZE = 32  # SHA-256
FINGERPRINT_GROUP = 4  # hex chars per fingerprint block
FINGERPRINT_SEPARATOR = ":"

# Private key backup (Argon2id)
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
BACKUP_FORMAT_VERSION = "1.0"

# Message Limits
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_TEXT_MESSAGE_SIZE = 100 * 1024  # 100 KB
IMAGE_MIME_PREFIX = "image/"

# Relay / Polling
POLL_INTERVAL = 30  # seconds
TRANSPORT_TIMEOUT = 30  # seconds
DEFAULT_SMTP_PORT = 465
DEFAULT_IMAP_PORT = 993
DEFAULT_MAILBOX = "INBOX"
POLL_OVERLAP = 600  # seconds re-read before the checkpoint (clock skew, 1s INTERNALDATE)

# History
HISTORY_DEFAULT_LIMIT = 100
STATE_HISTORY_LIMIT = 100

# Key Exchange
MAX_PENDING_KEYS = 16  # unverified announcements kept at once
PENDING_KEY_MAX_AGE = 30 * 24 * 3600  # seconds

# File Paths
DEFAULT_DATA_DIR = "~/.whispermail"
KEYRING_FILENAME = "keyring.json"
MESSAGES_DB_FILENAME = "messages.db"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "whispermail.log"

# Settings keys stored in the keyring
SETTING_LAST_CHECKED = "last_checked"
SETTING_MY_ADDRESS = "my_address"
SETTING_PEER_ADDRESS = "peer_address"
SETTING_PENDING_KEYS = "pending_keys"
SETTING_SEEN_PAYLOADS = "seen_payloads"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
