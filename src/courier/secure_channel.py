"""
Courier - Authenticated message envelopes.

Created by orpheus497

Every chat message is protected by two independent integrity layers:
- AES-256-GCM with the routing header bound in as associated data
- HMAC-SHA256 over aad || iv || ciphertext || tag

The HMAC is always verified first, in constant time; decryption is never
attempted on a message whose HMAC does not match.

The associated data binds each envelope to its room, sender, recipient
and counter, so the relay cannot redirect an envelope to another
recipient or move it into another counter slot without detection.
"""

import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import NONCE_SIZE, TAG_SIZE
from .errors import AuthenticationError, DecryptionError
from .session_keys import SessionKeys


@dataclass(frozen=True)
class SealedMessage:
    """Output of seal_message: everything the peer needs besides the AAD."""

    iv: bytes
    ciphertext: bytes
    tag: bytes
    hmac: bytes


def build_aad(room: str, sender: str, recipient: str, counter: int) -> bytes:
    """
    Serialize the routing header used as associated data.

    Compact JSON with keys in the order room, from, to, counter.
    """
    header = {"room": room, "from": sender, "to": recipient, "counter": counter}
    return json.dumps(header, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _transcript_mac(mac_key: bytes, aad: bytes, iv: bytes, ciphertext: bytes, tag: bytes) -> bytes:
    return hmac.new(mac_key, aad + iv + ciphertext + tag, hashlib.sha256).digest()


def seal_message(keys: SessionKeys, plaintext: Union[str, bytes], aad: bytes) -> SealedMessage:
    """
    Encrypt and authenticate one message.

    A fresh random 96-bit IV is drawn for every call; IVs must never repeat
    under the same key.

    Args:
        keys: Session keys
        plaintext: Message text (str is UTF-8 encoded)
        aad: Associated data from build_aad()

    Returns:
        SealedMessage with iv, ciphertext, tag and hmac
    """
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")

    iv = os.urandom(NONCE_SIZE)
    sealed = AESGCM(keys.enc_key).encrypt(iv, plaintext, aad)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

    return SealedMessage(
        iv=iv,
        ciphertext=ciphertext,
        tag=tag,
        hmac=_transcript_mac(keys.mac_key, aad, iv, ciphertext, tag),
    )


def open_message(keys: SessionKeys, sealed: SealedMessage, aad: bytes) -> str:
    """
    Verify and decrypt one message.

    Args:
        keys: Session keys
        sealed: Received message parts
        aad: Associated data rebuilt by the receiver

    Returns:
        Decrypted plaintext string

    Raises:
        AuthenticationError: If the HMAC does not match (nothing is decrypted)
        DecryptionError: If the GCM tag fails or the ciphertext is malformed
    """
    expected = _transcript_mac(keys.mac_key, aad, sealed.iv, sealed.ciphertext, sealed.tag)
    if not hmac.compare_digest(expected, sealed.hmac):
        raise AuthenticationError()

    if len(sealed.iv) != NONCE_SIZE or len(sealed.tag) != TAG_SIZE:
        raise DecryptionError(
            "Malformed ciphertext",
            {"iv_length": len(sealed.iv), "tag_length": len(sealed.tag)},
        )

    try:
        plaintext = AESGCM(keys.enc_key).decrypt(sealed.iv, sealed.ciphertext + sealed.tag, aad)
    except InvalidTag:
        raise DecryptionError("Authentication tag mismatch")

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError(f"Plaintext is not valid UTF-8: {e}")
