"""
Courier - Elliptic-curve key exchange.

Created by orpheus497

This module selects the ECDH curve for the process and wraps key pair
generation and shared secret computation:
- X25519 (preferred)
- NIST P-256 (prime256v1)
- secp256k1 (last resort)

The curve is chosen once per process by descending preference and stays
fixed for the lifetime of every session created by that process.

All primitives come from the cryptography library (Apache 2.0/BSD License).
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Tuple, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, x25519

from .errors import InvalidPeerKeyError, NoSupportedCurveError

logger = logging.getLogger(__name__)

PrivateKey = Union[x25519.X25519PrivateKey, ec.EllipticCurvePrivateKey]


class Curve(Enum):
    """ECDH curves, valued by their wire names."""

    X25519 = "x25519"
    P256 = "prime256v1"
    SECP256K1 = "secp256k1"


# Descending preference
CURVE_PREFERENCE: Tuple[Curve, ...] = (Curve.X25519, Curve.P256, Curve.SECP256K1)

_EC_CURVES = {
    Curve.P256: ec.SECP256R1,
    Curve.SECP256K1: ec.SECP256K1,
}


def _generate_private_key(curve: Curve) -> PrivateKey:
    if curve is Curve.X25519:
        return x25519.X25519PrivateKey.generate()
    return ec.generate_private_key(_EC_CURVES[curve]())


def curve_supported(curve: Curve) -> bool:
    """Check whether the installed cryptography backend can use a curve."""
    try:
        _generate_private_key(curve)
    except UnsupportedAlgorithm:
        return False
    return True


def select_curve(is_available: Callable[[Curve], bool] = curve_supported) -> Curve:
    """
    Pick the first available curve from the fixed preference list.

    Args:
        is_available: Predicate telling whether a curve can be used

    Returns:
        The selected Curve

    Raises:
        NoSupportedCurveError: If none of the preferred curves is available
    """
    for curve in CURVE_PREFERENCE:
        if is_available(curve):
            logger.debug(f"Selected ECDH curve: {curve.value}")
            return curve
    raise NoSupportedCurveError(
        "No supported ECDH curves found in this cryptography build",
        {"tried": [curve.value for curve in CURVE_PREFERENCE]},
    )


@dataclass
class KeyPair:
    """
    Ephemeral ECDH key pair for one session.

    The private key is owned by this object and is never serialized.
    public_key holds the transmittable encoding: 32 raw bytes for X25519,
    a 33-byte compressed X9.62 point for the Weierstrass curves.
    """

    curve: Curve
    _private_key: PrivateKey = field(repr=False)
    public_key: bytes

    def exchange(self, peer_public_key: bytes) -> bytes:
        """Compute the raw ECDH shared secret with a peer public key."""
        return compute_shared_secret(self, peer_public_key)


def generate_key_pair(curve: Curve) -> KeyPair:
    """Generate a fresh key pair on the given curve."""
    private_key = _generate_private_key(curve)

    if curve is Curve.X25519:
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
    else:
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.CompressedPoint
        )

    return KeyPair(curve=curve, _private_key=private_key, public_key=public_bytes)


def load_public_key(curve: Curve, public_bytes: bytes):
    """
    Decode a peer public key for the given curve.

    Weierstrass points are accepted compressed or uncompressed.

    Raises:
        InvalidPeerKeyError: If the bytes are not a valid key for the curve
    """
    try:
        if curve is Curve.X25519:
            return x25519.X25519PublicKey.from_public_bytes(public_bytes)
        return ec.EllipticCurvePublicKey.from_encoded_point(_EC_CURVES[curve](), public_bytes)
    except (ValueError, TypeError) as e:
        raise InvalidPeerKeyError(
            f"Peer key is not a valid {curve.value} public key: {e}",
            {"curve": curve.value, "length": len(public_bytes)},
        )


def compute_shared_secret(key_pair: KeyPair, peer_public_key: bytes) -> bytes:
    """
    Perform ECDH between our private key and the peer's public key.

    The returned secret is meant to be fed straight into key derivation
    and then dropped.

    Raises:
        InvalidPeerKeyError: If the peer key does not decode, or the
            agreement is rejected (e.g. a low-order X25519 point)
    """
    peer_key = load_public_key(key_pair.curve, peer_public_key)

    try:
        if key_pair.curve is Curve.X25519:
            return key_pair._private_key.exchange(peer_key)
        return key_pair._private_key.exchange(ec.ECDH(), peer_key)
    except ValueError as e:
        raise InvalidPeerKeyError(
            f"Key agreement rejected the peer key: {e}",
            {"curve": key_pair.curve.value},
        )
