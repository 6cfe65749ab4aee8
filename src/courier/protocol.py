"""
Courier - Relay wire protocol definitions.

Created by orpheus497

This module defines the JSON envelopes exchanged with the relay. Every
inbound frame is parsed into one of a closed set of envelope classes;
anything that fails JSON, base64 or shape validation raises
MalformedEnvelopeError instead of reaching the session logic.

    join               room, from
    joined             room, from
    handshake          room, from, to, payload:{curve, pub}
    request_handshake  room, from, to
    msg                room, from, to, payload:{counter, iv, ct, tag, hmac}
    error              error

Binary fields travel as standard base64.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union

from .constants import MAX_ENVELOPE_SIZE
from .errors import MalformedEnvelopeError, PeerNotInRoomError, ProtocolError
from .secure_channel import SealedMessage


class EnvelopeType(str, Enum):
    """Envelope type tags."""

    JOIN = "join"
    JOINED = "joined"
    HANDSHAKE = "handshake"
    REQUEST_HANDSHAKE = "request_handshake"
    MSG = "msg"
    ERROR = "error"


@dataclass(frozen=True)
class JoinEnvelope:
    """Ask the relay to register `sender` in `room`."""

    room: str
    sender: str

    type = EnvelopeType.JOIN

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "room": self.room, "from": self.sender}


@dataclass(frozen=True)
class JoinedEnvelope:
    """Relay acknowledgment of a join."""

    room: str
    sender: str

    type = EnvelopeType.JOINED

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "room": self.room, "from": self.sender}


@dataclass(frozen=True)
class HandshakeEnvelope:
    """Our curve and ephemeral public key, addressed to the peer."""

    room: str
    sender: str
    recipient: str
    curve: str
    public_key: bytes

    type = EnvelopeType.HANDSHAKE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "room": self.room,
            "from": self.sender,
            "to": self.recipient,
            "payload": {"curve": self.curve, "pub": b64encode(self.public_key)},
        }


@dataclass(frozen=True)
class RequestHandshakeEnvelope:
    """Ask the peer to resend its handshake."""

    room: str
    sender: str
    recipient: str

    type = EnvelopeType.REQUEST_HANDSHAKE

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "room": self.room, "from": self.sender, "to": self.recipient}


@dataclass(frozen=True)
class MessageEnvelope:
    """One sealed chat message."""

    room: str
    sender: str
    recipient: str
    counter: int
    sealed: SealedMessage

    type = EnvelopeType.MSG

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "room": self.room,
            "from": self.sender,
            "to": self.recipient,
            "payload": {
                "counter": self.counter,
                "iv": b64encode(self.sealed.iv),
                "ct": b64encode(self.sealed.ciphertext),
                "tag": b64encode(self.sealed.tag),
                "hmac": b64encode(self.sealed.hmac),
            },
        }


@dataclass(frozen=True)
class ErrorEnvelope:
    """Informational error reported by the relay."""

    error: str

    type = EnvelopeType.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "error": self.error}


Envelope = Union[
    JoinEnvelope,
    JoinedEnvelope,
    HandshakeEnvelope,
    RequestHandshakeEnvelope,
    MessageEnvelope,
    ErrorEnvelope,
]


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: Any, field: str) -> bytes:
    """Strictly decode a base64 field, raising MalformedEnvelopeError."""
    if not isinstance(value, str):
        raise MalformedEnvelopeError(f"Field '{field}' must be a base64 string", {"field": field})
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedEnvelopeError(f"Invalid base64 in '{field}': {e}", {"field": field})


def _require_str(data: Dict[str, Any], field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise MalformedEnvelopeError(f"Missing required field: {field}", {"field": field})
    return value


def _require_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise MalformedEnvelopeError("Missing or invalid payload", {"field": "payload"})
    return payload


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to a JSON text frame."""
    return json.dumps(envelope.to_dict())


def parse_envelope(data: Union[str, bytes, Dict[str, Any]]) -> Envelope:
    """
    Parse and validate an inbound frame.

    Args:
        data: Raw text/bytes frame or an already decoded JSON object

    Returns:
        One of the envelope classes

    Raises:
        MalformedEnvelopeError: If the frame is not a valid envelope
    """
    if isinstance(data, (str, bytes)):
        if len(data) > MAX_ENVELOPE_SIZE:
            raise MalformedEnvelopeError(
                f"Envelope too large: {len(data)} bytes",
                {"size": len(data), "max_size": MAX_ENVELOPE_SIZE},
            )
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            data = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEnvelopeError(f"Failed to parse envelope: {e}")

    if not isinstance(data, dict):
        raise MalformedEnvelopeError("Envelope must be a JSON object")

    try:
        msg_type = EnvelopeType(data.get("type"))
    except ValueError:
        raise MalformedEnvelopeError(
            f"Invalid envelope type: {data.get('type')!r}", {"type": data.get("type")}
        )

    if msg_type is EnvelopeType.ERROR:
        error = data.get("error")
        if not isinstance(error, str):
            raise MalformedEnvelopeError("Missing required field: error", {"field": "error"})
        return ErrorEnvelope(error=error)

    room = _require_str(data, "room")
    sender = _require_str(data, "from")

    if msg_type is EnvelopeType.JOIN:
        return JoinEnvelope(room=room, sender=sender)
    if msg_type is EnvelopeType.JOINED:
        return JoinedEnvelope(room=room, sender=sender)

    recipient = _require_str(data, "to")

    if msg_type is EnvelopeType.REQUEST_HANDSHAKE:
        return RequestHandshakeEnvelope(room=room, sender=sender, recipient=recipient)

    payload = _require_payload(data)

    if msg_type is EnvelopeType.HANDSHAKE:
        curve = _require_str(payload, "curve")
        public_key = b64decode(payload.get("pub"), "pub")
        if not public_key:
            raise MalformedEnvelopeError("Empty public key", {"field": "pub"})
        return HandshakeEnvelope(
            room=room, sender=sender, recipient=recipient, curve=curve, public_key=public_key
        )

    # EnvelopeType.MSG
    counter = payload.get("counter")
    if isinstance(counter, bool) or not isinstance(counter, int) or counter < 0:
        raise MalformedEnvelopeError(
            "Counter must be a non-negative integer", {"field": "counter", "value": counter}
        )
    sealed = SealedMessage(
        iv=b64decode(payload.get("iv"), "iv"),
        ciphertext=b64decode(payload.get("ct"), "ct"),
        tag=b64decode(payload.get("tag"), "tag"),
        hmac=b64decode(payload.get("hmac"), "hmac"),
    )
    return MessageEnvelope(
        room=room, sender=sender, recipient=recipient, counter=counter, sealed=sealed
    )


_PEER_NOT_IN_ROOM = re.compile(r"^peer '(?P<peer>.*)' not in room$")


def peer_not_in_room_message(peer: str) -> str:
    """Relay error text for an absent target."""
    return f"peer '{peer}' not in room"


def classify_relay_error(error: str) -> ProtocolError:
    """
    Map a relay error string to an exception object.

    Relay errors are informational; the result is reported, never raised
    by the session.
    """
    match = _PEER_NOT_IN_ROOM.match(error)
    if match:
        return PeerNotInRoomError(match.group("peer"), error)
    return ProtocolError(message=error, details={"relay_error": error})
