"""
Courier - End-to-end encrypted two-party chat over an untrusted relay

Two peers meet in a room on a WebSocket relay, agree on session keys with
ephemeral ECDH, and exchange messages sealed with AES-256-GCM plus
HMAC-SHA256. The relay only routes envelopes and never sees plaintext.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    AuthenticationError,
    ConfigError,
    CourierError,
    CryptoError,
    CurveMismatchError,
    DecryptionError,
    ErrorCode,
    InvalidPeerKeyError,
    MalformedEnvelopeError,
    NetworkError,
    NoSupportedCurveError,
    PeerNotInRoomError,
    ProtocolError,
    RelayError,
    SessionError,
    TransportClosedError,
)
from .handshake import HandshakeStateMachine, SessionObserver, SessionState
from .key_exchange import Curve, KeyPair, generate_key_pair, select_curve

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthenticationError",
    "Config",
    "ConfigError",
    "CourierError",
    "CryptoError",
    "Curve",
    "CurveMismatchError",
    "DecryptionError",
    "ErrorCode",
    "HandshakeStateMachine",
    "InvalidPeerKeyError",
    "KeyPair",
    "MalformedEnvelopeError",
    "NetworkError",
    "NoSupportedCurveError",
    "PeerNotInRoomError",
    "ProtocolError",
    "RelayError",
    "SessionError",
    "SessionObserver",
    "SessionState",
    "TransportClosedError",
    "__author__",
    "__license__",
    "__version__",
    "generate_key_pair",
    "select_curve",
]
