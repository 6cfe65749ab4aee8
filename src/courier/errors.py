"""
Courier - Custom Exception Classes and Error Codes

This module defines the exceptions raised by the secure-session protocol,
the envelope codec, the transport and the relay. Each error carries a
unique code for logging and debugging.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Courier error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_NO_SUPPORTED_CURVE = "E101"
    E102_INVALID_PEER_KEY = "E102"
    E103_CURVE_MISMATCH = "E103"
    E104_AUTHENTICATION_FAILED = "E104"
    E105_DECRYPTION_FAILED = "E105"

    # Protocol Errors (E200-E299)
    E200_PROTOCOL_ERROR = "E200"
    E201_MALFORMED_ENVELOPE = "E201"
    E202_PEER_NOT_IN_ROOM = "E202"

    # Network Errors (E300-E399)
    E300_NETWORK_ERROR = "E300"
    E301_TRANSPORT_CLOSED = "E301"
    E302_CONNECTION_FAILED = "E302"

    # Session Errors (E400-E499)
    E400_SESSION_ERROR = "E400"
    E401_SESSION_NOT_ESTABLISHED = "E401"
    E402_QUEUE_ALREADY_DRAINED = "E402"
    E403_MESSAGE_TOO_LARGE = "E403"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Relay Errors (E800-E899)
    E800_RELAY_ERROR = "E800"
    E801_RELAY_START_FAILED = "E801"


class CourierError(Exception):
    """Base exception class for all Courier errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a Courier error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(CourierError):
    """Exception raised for cryptographic operation failures.

    This includes curve selection, key agreement, key derivation,
    sealing and opening of message envelopes.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NoSupportedCurveError(CryptoError):
    """None of the preferred ECDH curves is available. Fatal at startup."""

    def __init__(self, message: str = "No supported ECDH curve found", details=None):
        super().__init__(ErrorCode.E101_NO_SUPPORTED_CURVE, message, details)


class InvalidPeerKeyError(CryptoError):
    """The peer's public key does not decode to a valid key for the curve."""

    def __init__(self, message: str = "Invalid peer public key", details=None):
        super().__init__(ErrorCode.E102_INVALID_PEER_KEY, message, details)


class CurveMismatchError(CryptoError):
    """The peer announced a different curve. Aborts the session."""

    def __init__(self, local_curve: str, peer_curve: Any):
        super().__init__(
            ErrorCode.E103_CURVE_MISMATCH,
            f"Curve mismatch: mine={local_curve}, peer={peer_curve}",
            {"local": local_curve, "peer": peer_curve},
        )


class AuthenticationError(CryptoError):
    """HMAC verification failed. The message is discarded undecrypted."""

    def __init__(self, message: str = "HMAC verification failed", details=None):
        super().__init__(ErrorCode.E104_AUTHENTICATION_FAILED, message, details)


class DecryptionError(CryptoError):
    """AEAD tag mismatch or malformed ciphertext."""

    def __init__(self, message: str = "Decryption failed", details=None):
        super().__init__(ErrorCode.E105_DECRYPTION_FAILED, message, details)


class ProtocolError(CourierError):
    """Exception raised for wire protocol violations."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_PROTOCOL_ERROR,
        message: str = "Protocol error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MalformedEnvelopeError(ProtocolError):
    """JSON, base64 or shape validation of an inbound envelope failed."""

    def __init__(self, message: str = "Malformed envelope", details=None):
        super().__init__(ErrorCode.E201_MALFORMED_ENVELOPE, message, details)


class PeerNotInRoomError(ProtocolError):
    """The relay reported that the addressed peer is not in the room."""

    def __init__(self, peer: Optional[str], message: Optional[str] = None):
        self.peer = peer
        super().__init__(
            ErrorCode.E202_PEER_NOT_IN_ROOM,
            message or f"Peer '{peer}' not in room",
            {"peer": peer},
        )


class NetworkError(CourierError):
    """Exception raised for transport failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TransportClosedError(NetworkError):
    """The relay connection is gone; the local session is over."""

    def __init__(self, message: str = "Transport closed", details=None):
        super().__init__(ErrorCode.E301_TRANSPORT_CLOSED, message, details)


class SessionError(CourierError):
    """Exception raised for invalid use of a secure session."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_SESSION_ERROR,
        message: str = "Session operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(CourierError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RelayError(CourierError):
    """Exception raised for relay server failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_RELAY_ERROR,
        message: str = "Relay operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
