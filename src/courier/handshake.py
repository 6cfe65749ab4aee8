"""
Courier - Handshake state machine for secure sessions.

Created by orpheus497

This module drives the secure session between two peers in a room. One
HandshakeStateMachine exists per peer pair and exclusively owns its key
pair, session keys, counters and pending message queue.

    IDLE -> JOINING -> JOINED -> HANDSHAKE_SENT -> ESTABLISHED
                                               `-> ABORTED

The machine is synchronous and run-to-completion: every inbound envelope
is handled by a single call, outbound envelopes are handed to a `send`
callable, and the handshake retry nudge is armed through a `schedule`
callable. Presentation subscribes through SessionObserver.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Union

from .constants import HANDSHAKE_RETRY_DELAY, MAX_TEXT_MESSAGE_SIZE
from .errors import (
    AuthenticationError,
    CourierError,
    CurveMismatchError,
    DecryptionError,
    ErrorCode,
    InvalidPeerKeyError,
    MalformedEnvelopeError,
    SessionError,
    TransportClosedError,
)
from .key_exchange import KeyPair, compute_shared_secret, generate_key_pair, select_curve
from .pending_queue import PendingMessageQueue
from .protocol import (
    Envelope,
    ErrorEnvelope,
    HandshakeEnvelope,
    JoinedEnvelope,
    JoinEnvelope,
    MessageEnvelope,
    RequestHandshakeEnvelope,
    classify_relay_error,
    parse_envelope,
)
from .secure_channel import build_aad, open_message, seal_message
from .session_keys import SessionKeys, build_session_context, derive_session_keys, fingerprint

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Secure session states."""

    IDLE = auto()  # Nothing sent yet
    JOINING = auto()  # Join request sent to the relay
    JOINED = auto()  # Relay acknowledged the join
    HANDSHAKE_SENT = auto()  # Our public key is on its way to the peer
    ESTABLISHED = auto()  # Session keys derived
    ABORTED = auto()  # Handshake failed for good


class SessionEvent(Enum):
    """Events that trigger state transitions."""

    JOIN_REQUESTED = auto()
    JOIN_ACKNOWLEDGED = auto()
    HANDSHAKE_SENT = auto()
    KEYS_DERIVED = auto()
    HANDSHAKE_FAILED = auto()


TERMINAL_STATES = (SessionState.ESTABLISHED, SessionState.ABORTED)


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


class SessionObserver:
    """
    Receives session events for presentation.

    Every hook is a no-op here; subclasses override what they display.
    Exceptions raised by observers are logged and never reach the protocol.
    """

    def on_state_change(self, old_state: SessionState, new_state: SessionState) -> None:
        pass

    def on_handshake_sent(self, peer: str) -> None:
        pass

    def on_handshake_requested(self, peer: str) -> None:
        pass

    def on_handshake_resend_requested(self, peer: str) -> None:
        pass

    def on_peer_handshake(self, peer: str, peer_fingerprint: str) -> None:
        pass

    def on_duplicate_handshake(self, peer: str) -> None:
        pass

    def on_established(self, pending_count: int) -> None:
        pass

    def on_message(self, sender: str, text: str, counter: int) -> None:
        pass

    def on_message_queued(self, envelope: MessageEnvelope, queue_size: int) -> None:
        pass

    def on_security_warning(self, sender: str, error: AuthenticationError) -> None:
        pass

    def on_message_rejected(self, sender: str, error: CourierError) -> None:
        pass

    def on_envelope_dropped(self, error: MalformedEnvelopeError) -> None:
        pass

    def on_relay_error(self, error: CourierError) -> None:
        pass

    def on_aborted(self, error: CourierError) -> None:
        pass

    def on_closed(self) -> None:
        pass


class HandshakeStateMachine:
    """
    Protocol driver for one peer pair.

    Args:
        room: Room both peers join on the relay
        me: Our identity
        peer: The peer's identity
        send: Callable handing an envelope to the transport
        schedule: Callable(delay, callback) arming a one-shot timer
        key_pair: Ephemeral key pair (generated on the selected curve if None)
        retry_delay: Seconds before asking the peer to resend its handshake
        max_pending: Cap on the pending queue (None = unbounded)
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
        SessionState.IDLE: {
            SessionEvent.JOIN_REQUESTED: SessionState.JOINING,
        },
        SessionState.JOINING: {
            SessionEvent.JOIN_ACKNOWLEDGED: SessionState.JOINED,
            SessionEvent.HANDSHAKE_SENT: SessionState.HANDSHAKE_SENT,
            SessionEvent.HANDSHAKE_FAILED: SessionState.ABORTED,
        },
        SessionState.JOINED: {
            SessionEvent.HANDSHAKE_SENT: SessionState.HANDSHAKE_SENT,
            SessionEvent.HANDSHAKE_FAILED: SessionState.ABORTED,
        },
        SessionState.HANDSHAKE_SENT: {
            SessionEvent.KEYS_DERIVED: SessionState.ESTABLISHED,
            SessionEvent.HANDSHAKE_FAILED: SessionState.ABORTED,
        },
        SessionState.ESTABLISHED: {},
        SessionState.ABORTED: {},
    }

    def __init__(
        self,
        room: str,
        me: str,
        peer: str,
        send: Callable[[Envelope], None],
        schedule: Callable[[float, Callable[[], None]], Any],
        key_pair: Optional[KeyPair] = None,
        retry_delay: float = HANDSHAKE_RETRY_DELAY,
        max_pending: Optional[int] = None,
    ):
        if me == peer:
            raise SessionError(
                ErrorCode.E002_INVALID_ARGUMENT,
                "Own identity and peer identity must differ",
                {"me": me, "peer": peer},
            )

        self.room = room
        self.me = me
        self.peer = peer
        self.retry_delay = retry_delay

        self._send_envelope = send
        self._schedule = schedule

        self.key_pair = key_pair or generate_key_pair(select_curve())
        self.curve = self.key_pair.curve

        self.state = SessionState.IDLE
        self.session_keys: Optional[SessionKeys] = None
        self.peer_public_key: Optional[bytes] = None
        self.error: Optional[CourierError] = None
        self.send_counter = 0
        self.recv_counter = 0
        self.last_received_counter: Optional[int] = None
        self.pending = PendingMessageQueue(max_pending)

        self.handshake_sent = False
        self.peer_handshake_received = False
        self.closed = False

        self.transition_history: List[StateTransition] = []
        self.max_history = 100
        self.observers: List[SessionObserver] = []

        logger.debug(
            f"Session {self.me}->{self.peer} in room '{self.room}' "
            f"created on curve {self.curve.value}"
        )

    # ------------------------------------------------------------------
    # Observers and state

    def add_observer(self, observer: SessionObserver) -> None:
        """Subscribe an observer to session events."""
        self.observers.append(observer)

    def _notify(self, hook: str, *args: Any) -> None:
        for observer in self.observers:
            try:
                getattr(observer, hook)(*args)
            except Exception as e:
                logger.error(f"Observer {hook} callback error: {e}", exc_info=True)

    def _transition(self, event: SessionEvent) -> bool:
        transitions = self.TRANSITIONS.get(self.state, {})
        if event not in transitions:
            logger.warning(
                f"Invalid transition: {self.state.name} + {event.name} (no valid target state)"
            )
            return False

        old_state = self.state
        new_state = transitions[event]
        self.state = new_state

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history:]

        logger.info(f"Session state: {old_state.name} -> {new_state.name} (event: {event.name})")
        self._notify("on_state_change", old_state, new_state)
        return True

    @property
    def is_established(self) -> bool:
        return self.state is SessionState.ESTABLISHED

    @property
    def local_fingerprint(self) -> str:
        return fingerprint(self.key_pair.public_key)

    @property
    def peer_fingerprint(self) -> Optional[str]:
        if self.peer_public_key is None:
            return None
        return fingerprint(self.peer_public_key)

    def _send(self, envelope: Envelope) -> None:
        if self.closed:
            raise TransportClosedError()
        self._send_envelope(envelope)

    # ------------------------------------------------------------------
    # Outbound

    def join(self) -> None:
        """Ask the relay to register us in the room."""
        if not self._transition(SessionEvent.JOIN_REQUESTED):
            return
        self._send(JoinEnvelope(room=self.room, sender=self.me))

    def _send_handshake(self) -> None:
        self._send(
            HandshakeEnvelope(
                room=self.room,
                sender=self.me,
                recipient=self.peer,
                curve=self.curve.value,
                public_key=self.key_pair.public_key,
            )
        )
        self.handshake_sent = True
        logger.info(f"Handshake sent to '{self.peer}'")
        self._notify("on_handshake_sent", self.peer)

        if self.state in (SessionState.JOINING, SessionState.JOINED):
            self._transition(SessionEvent.HANDSHAKE_SENT)
            self._schedule(self.retry_delay, self._on_retry_timer)

    def _on_retry_timer(self) -> None:
        # One-shot; acts only if the peer handshake is still missing
        if self.closed or self.peer_handshake_received or self.state in TERMINAL_STATES:
            return
        logger.info(f"No handshake from '{self.peer}' yet, requesting it")
        self._send(RequestHandshakeEnvelope(room=self.room, sender=self.me, recipient=self.peer))
        self._notify("on_handshake_requested", self.peer)

    def send_message(self, text: str) -> MessageEnvelope:
        """
        Seal and send a chat message to the peer.

        Returns:
            The transmitted MessageEnvelope

        Raises:
            TransportClosedError: If the transport is gone
            SessionError: If the session is not established or the text is too large
        """
        if self.closed:
            raise TransportClosedError()
        if self.state is not SessionState.ESTABLISHED:
            raise SessionError(
                ErrorCode.E401_SESSION_NOT_ESTABLISHED,
                "Secure session not established",
                {"state": self.state.name},
            )

        data = text.encode("utf-8")
        if len(data) > MAX_TEXT_MESSAGE_SIZE:
            raise SessionError(
                ErrorCode.E403_MESSAGE_TOO_LARGE,
                f"Message too large: {len(data)} > {MAX_TEXT_MESSAGE_SIZE}",
                {"size": len(data), "max_size": MAX_TEXT_MESSAGE_SIZE},
            )

        self.send_counter += 1
        aad = build_aad(self.room, self.me, self.peer, self.send_counter)
        envelope = MessageEnvelope(
            room=self.room,
            sender=self.me,
            recipient=self.peer,
            counter=self.send_counter,
            sealed=seal_message(self.session_keys, data, aad),
        )
        self._send(envelope)
        return envelope

    # ------------------------------------------------------------------
    # Inbound

    def handle_raw(self, data: Union[str, bytes]) -> None:
        """Parse a raw frame from the transport and handle it."""
        try:
            envelope = parse_envelope(data)
        except MalformedEnvelopeError as e:
            logger.debug(f"Dropping malformed envelope: {e}")
            self._notify("on_envelope_dropped", e)
            return
        self.handle_envelope(envelope)

    def handle_envelope(self, envelope: Envelope) -> None:
        """Handle one inbound envelope."""
        if self.closed:
            logger.debug(f"Session closed, ignoring {envelope.type.value}")
            return

        if isinstance(envelope, ErrorEnvelope):
            self._handle_relay_error(envelope)
            return

        if envelope.room != self.room:
            logger.debug(f"Ignoring {envelope.type.value} for room '{envelope.room}'")
            return

        if isinstance(envelope, JoinedEnvelope):
            self._handle_joined(envelope)
            return

        if isinstance(envelope, JoinEnvelope):
            logger.debug("Ignoring join envelope echoed by relay")
            return

        if envelope.recipient != self.me:
            logger.debug(f"Ignoring {envelope.type.value} addressed to '{envelope.recipient}'")
            return

        if envelope.sender != self.peer:
            logger.warning(
                f"Ignoring {envelope.type.value} from unexpected peer '{envelope.sender}'"
            )
            return

        if isinstance(envelope, HandshakeEnvelope):
            self._handle_handshake(envelope)
        elif isinstance(envelope, RequestHandshakeEnvelope):
            self._handle_request_handshake()
        elif isinstance(envelope, MessageEnvelope):
            self._handle_message(envelope)

    def connection_lost(self) -> None:
        """The transport closed; end the session."""
        if self.closed:
            return
        self.closed = True
        logger.info(f"Transport closed in state {self.state.name}")
        self._notify("on_closed")

    def _handle_joined(self, envelope: JoinedEnvelope) -> None:
        if envelope.sender != self.me:
            logger.debug(f"Ignoring join ack for '{envelope.sender}'")
            return
        if self.state is not SessionState.JOINING:
            logger.debug(f"Ignoring join ack in state {self.state.name}")
            return
        self._transition(SessionEvent.JOIN_ACKNOWLEDGED)
        if not self.handshake_sent:
            self._send_handshake()

    def _handle_request_handshake(self) -> None:
        if self.state in (SessionState.IDLE, SessionState.ABORTED):
            logger.debug(f"Ignoring handshake request in state {self.state.name}")
            return
        logger.info(f"Peer '{self.peer}' requests handshake, resending")
        self._notify("on_handshake_resend_requested", self.peer)
        self._send_handshake()

    def _handle_handshake(self, envelope: HandshakeEnvelope) -> None:
        if self.state is SessionState.ESTABLISHED:
            logger.info(f"Duplicate handshake from '{envelope.sender}' ignored")
            self._notify("on_duplicate_handshake", envelope.sender)
            return
        if self.state in (SessionState.IDLE, SessionState.ABORTED):
            logger.debug(f"Ignoring handshake in state {self.state.name}")
            return

        self.peer_public_key = envelope.public_key
        self._notify("on_peer_handshake", envelope.sender, fingerprint(envelope.public_key))

        if envelope.curve != self.curve.value:
            self._abort(CurveMismatchError(self.curve.value, envelope.curve))
            return

        try:
            shared_secret = compute_shared_secret(self.key_pair, envelope.public_key)
        except InvalidPeerKeyError as e:
            self._abort(e)
            return

        # Peer handshook first: answer so both sides converge
        if not self.handshake_sent:
            self._send_handshake()

        context = build_session_context(self.room, self.me, self.peer, self.curve)
        self.session_keys = derive_session_keys(shared_secret, context)
        del shared_secret

        self.peer_handshake_received = True
        self._transition(SessionEvent.KEYS_DERIVED)
        self._notify("on_established", len(self.pending))
        self._drain_pending()

    def _handle_message(self, envelope: MessageEnvelope) -> None:
        if self.state is SessionState.ABORTED:
            logger.debug("Session aborted, dropping message")
            return
        if self.state is not SessionState.ESTABLISHED:
            if self.pending.enqueue(envelope):
                logger.info(f"Message queued, session not ready yet ({len(self.pending)} pending)")
                self._notify("on_message_queued", envelope, len(self.pending))
            return
        self._open_inbound(envelope)

    def _drain_pending(self) -> None:
        pending = self.pending.drain()
        if pending:
            logger.info(f"Processing {len(pending)} pending messages")
        for envelope in pending:
            self._open_inbound(envelope)

    def _open_inbound(self, envelope: MessageEnvelope) -> Optional[str]:
        aad = build_aad(envelope.room, envelope.sender, self.me, envelope.counter)
        try:
            text = open_message(self.session_keys, envelope.sealed, aad)
        except AuthenticationError as e:
            logger.warning(
                f"HMAC verification FAILED for message {envelope.counter} from '{envelope.sender}'"
            )
            self._notify("on_security_warning", envelope.sender, e)
            return None
        except DecryptionError as e:
            logger.warning(f"Decryption failed for message {envelope.counter}: {e.message}")
            self._notify("on_message_rejected", envelope.sender, e)
            return None

        self.recv_counter += 1
        self.last_received_counter = envelope.counter
        self._notify("on_message", envelope.sender, text, envelope.counter)
        return text

    def _handle_relay_error(self, envelope: ErrorEnvelope) -> None:
        error = classify_relay_error(envelope.error)
        logger.info(f"Relay error: {envelope.error}")
        self._notify("on_relay_error", error)

    def _abort(self, error: CourierError) -> None:
        self.error = error
        logger.error(f"Handshake aborted: {error}")
        self._transition(SessionEvent.HANDSHAKE_FAILED)
        self._notify("on_aborted", error)

    # ------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get session statistics.

        Returns:
            Dictionary with statistics
        """
        return {
            "room": self.room,
            "me": self.me,
            "peer": self.peer,
            "state": self.state.name,
            "curve": self.curve.value,
            "local_fingerprint": self.local_fingerprint,
            "peer_fingerprint": self.peer_fingerprint,
            "messages_sent": self.send_counter,
            "messages_received": self.recv_counter,
            "pending": len(self.pending),
            "pending_dropped": self.pending.dropped,
            "closed": self.closed,
            "error": self.error.to_dict() if self.error else None,
        }

    def __repr__(self) -> str:
        return (
            f"HandshakeStateMachine(room={self.room!r}, me={self.me!r}, "
            f"peer={self.peer!r}, state={self.state.name})"
        )
