"""
Courier - Global Constants and Configuration Values

This module defines all constants used throughout the Courier application.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Courier"
AUTHOR = "orpheus497"

# Relay Constants
DEFAULT_RELAY_HOST = "0.0.0.0"
DEFAULT_RELAY_PORT = 8085
DEFAULT_RELAY_URL = "ws://127.0.0.1:8085"

# Handshake
HANDSHAKE_RETRY_DELAY = 0.5  # seconds before asking the peer to resend its handshake

# Cryptography Constants
KEY_SIZE = 32  # 256 bits, AES-256 and HMAC-SHA256 keys
SESSION_KEY_MATERIAL_LENGTH = 64  # enc key + mac key
NONCE_SIZE = 12  # 96 bits for AES-GCM
TAG_SIZE = 16  # 128-bit GCM tag
HKDF_SALT_LABEL = b"chat-e2ee-salt"
FINGERPRINT_GROUPS = 4
FINGERPRINT_GROUP_SIZE = 6

# Message Limits
MAX_TEXT_MESSAGE_SIZE = 64 * 1024  # 64 KB of UTF-8 plaintext
MAX_ENVELOPE_SIZE = 1024 * 1024  # 1 MB per wire frame
MAX_IDENTITY_LENGTH = 64

# Pending queue (0 = unbounded)
DEFAULT_MAX_PENDING = 0

# File Paths
DEFAULT_DATA_DIR = "~/.courier"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "courier.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
