"""
Courier - Session key derivation and fingerprints.

Created by orpheus497

Both peers derive the same pair of session keys from the ECDH shared
secret with HKDF-SHA256. The HKDF info is a canonical session context
built from the sorted identity pair, so the result does not depend on
which peer initiated the handshake.

    salt = SHA-256("chat-e2ee-salt")
    okm  = HKDF-SHA256(ikm=shared_secret, salt, info=context, length=64)
    enc_key = okm[0:32]    (AES-256-GCM)
    mac_key = okm[32:64]   (HMAC-SHA256)
"""

from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    FINGERPRINT_GROUP_SIZE,
    FINGERPRINT_GROUPS,
    HKDF_SALT_LABEL,
    KEY_SIZE,
    SESSION_KEY_MATERIAL_LENGTH,
)
from .key_exchange import Curve


@dataclass(frozen=True)
class SessionKeys:
    """Symmetric keys of one established session. Immutable once derived."""

    enc_key: bytes
    mac_key: bytes

    def __repr__(self) -> str:
        return "SessionKeys(enc_key=<hidden>, mac_key=<hidden>)"


def _sha256(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def build_session_context(room: str, me: str, peer: str, curve: Curve) -> str:
    """
    Build the canonical session context string.

    Identities are ordered lexicographically so both peers produce
    byte-identical contexts.
    """
    peer1, peer2 = sorted((me, peer))
    return f"room:{room}|peer1:{peer1}|peer2:{peer2}|curve:{curve.value}"


def derive_session_keys(shared_secret: bytes, context: str) -> SessionKeys:
    """
    Derive the encryption key and MAC key for a session.

    Deterministic: the same shared secret and context always give the
    same keys.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SESSION_KEY_MATERIAL_LENGTH,
        salt=_sha256(HKDF_SALT_LABEL),
        info=context.encode("utf-8"),
    )
    okm = hkdf.derive(shared_secret)
    return SessionKeys(enc_key=okm[:KEY_SIZE], mac_key=okm[KEY_SIZE:])


def fingerprint(public_key_bytes: bytes) -> str:
    """
    Generate a short human-comparable fingerprint of a public key.

    Format: the first 24 hex characters of SHA-256, as four groups of six
    joined by hyphens (e.g. "3fa91c-07be44-d2e801-9c6b5a").

    Users should compare fingerprints through a trusted channel (phone call,
    in person, etc.). The fingerprint is only as strong as that comparison.
    """
    digest = _sha256(public_key_bytes).hex()
    return "-".join(
        digest[i * FINGERPRINT_GROUP_SIZE:(i + 1) * FINGERPRINT_GROUP_SIZE]
        for i in range(FINGERPRINT_GROUPS)
    )
