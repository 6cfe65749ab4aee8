"""
Courier - Handshake state machine tests.

Created by orpheus497

Two state machines talk through an in-memory relay with FIFO delivery;
timers fire only when a test says so.
"""

import base64

import pytest

from courier.errors import (
    CurveMismatchError,
    ErrorCode,
    InvalidPeerKeyError,
    PeerNotInRoomError,
    SessionError,
    TransportClosedError,
)
from courier.handshake import HandshakeStateMachine, SessionState
from courier.key_exchange import Curve, generate_key_pair
from courier.protocol import (
    HandshakeEnvelope,
    JoinedEnvelope,
    RequestHandshakeEnvelope,
)


def establish(relay, scheduler, alice, bob):
    """Join both peers one after the other and let the retry settle."""
    alice.session.join()
    relay.pump()
    bob.session.join()
    relay.pump()
    scheduler.fire_all()
    relay.pump()
    assert alice.session.is_established
    assert bob.session.is_established


@pytest.fixture
def sent():
    return []


@pytest.fixture
def lone_session(sent, scheduler, recorder):
    """A machine whose outbound envelopes land in `sent`."""
    session = HandshakeStateMachine(
        "r1", "bob", "alice", send=sent.append, schedule=scheduler,
        key_pair=generate_key_pair(Curve.X25519),
    )
    session.add_observer(recorder)
    return session


def joined(session):
    session.join()
    session.handle_envelope(JoinedEnvelope("r1", session.me))


class TestLifecycle:
    """Single machine transitions."""

    def test_initial_state(self, lone_session):
        assert lone_session.state is SessionState.IDLE
        assert lone_session.session_keys is None
        assert lone_session.send_counter == 0
        assert lone_session.recv_counter == 0

    def test_same_identity_rejected(self, scheduler):
        with pytest.raises(SessionError) as exc_info:
            HandshakeStateMachine("r1", "alice", "alice", send=lambda env: None, schedule=scheduler)
        assert exc_info.value.code is ErrorCode.E002_INVALID_ARGUMENT

    def test_join_sends_join(self, lone_session, sent):
        lone_session.join()
        assert lone_session.state is SessionState.JOINING
        assert sent[0].to_dict() == {"type": "join", "room": "r1", "from": "bob"}

    def test_join_twice_is_noop(self, lone_session, sent):
        lone_session.join()
        lone_session.join()
        assert len(sent) == 1

    def test_joined_sends_handshake_and_arms_timer(self, lone_session, sent, scheduler):
        joined(lone_session)

        assert lone_session.state is SessionState.HANDSHAKE_SENT
        handshake = sent[-1]
        assert isinstance(handshake, HandshakeEnvelope)
        assert handshake.recipient == "alice"
        assert handshake.curve == "x25519"
        assert handshake.public_key == lone_session.key_pair.public_key
        assert [delay for delay, _ in scheduler.timers] == [0.5]

    def test_duplicate_joined_ignored(self, lone_session, sent):
        joined(lone_session)
        lone_session.handle_envelope(JoinedEnvelope("r1", "bob"))
        assert len(sent) == 2

    def test_joined_for_other_identity_ignored(self, lone_session, sent):
        lone_session.join()
        lone_session.handle_envelope(JoinedEnvelope("r1", "carol"))
        assert lone_session.state is SessionState.JOINING

    def test_retry_timer_requests_handshake(self, lone_session, sent, scheduler, recorder):
        joined(lone_session)
        scheduler.fire_all()

        request = sent[-1]
        assert isinstance(request, RequestHandshakeEnvelope)
        assert request.to_dict() == {"type": "request_handshake", "room": "r1", "from": "bob", "to": "alice"}
        assert "handshake_requested" in recorder.names()

    def test_retry_timer_noop_once_peer_key_known(self, lone_session, sent, scheduler):
        joined(lone_session)
        peer = generate_key_pair(Curve.X25519)
        lone_session.handle_envelope(HandshakeEnvelope("r1", "alice", "bob", "x25519", peer.public_key))
        count = len(sent)

        scheduler.fire_all()
        assert len(sent) == count

    def test_retry_timer_noop_after_close(self, lone_session, sent, scheduler):
        joined(lone_session)
        lone_session.connection_lost()
        scheduler.fire_all()
        assert not any(isinstance(env, RequestHandshakeEnvelope) for env in sent)

    def test_statistics(self, lone_session):
        joined(lone_session)
        stats = lone_session.get_statistics()
        assert stats["state"] == "HANDSHAKE_SENT"
        assert stats["curve"] == "x25519"
        assert stats["peer_fingerprint"] is None
        assert stats["local_fingerprint"] == lone_session.local_fingerprint

    def test_transition_history(self, lone_session):
        joined(lone_session)
        assert [t.to_state for t in lone_session.transition_history] == [
            SessionState.JOINING, SessionState.JOINED, SessionState.HANDSHAKE_SENT,
        ]


class TestKeyAgreement:
    """Handshakes between two peers."""

    def test_simultaneous_join(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")

        alice.session.join()
        bob.session.join()
        relay.pump()

        assert alice.session.is_established
        assert bob.session.is_established
        assert alice.session.session_keys == bob.session.session_keys

    def test_late_joiner_converges_through_retry(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")

        alice.session.join()
        relay.pump()
        assert alice.session.state is SessionState.HANDSHAKE_SENT
        assert isinstance(alice.observer.relay_errors[0], PeerNotInRoomError)
        assert alice.observer.relay_errors[0].peer == "bob"

        bob.session.join()
        relay.pump()
        assert alice.session.is_established
        assert bob.session.state is SessionState.HANDSHAKE_SENT

        scheduler.fire_all()
        relay.pump()
        assert bob.session.is_established
        assert "handshake_resend_requested" in alice.observer.names()
        assert alice.session.session_keys == bob.session.session_keys

    def test_end_to_end_hello(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        envelope = alice.session.send_message("hello")
        relay.pump()

        assert envelope.counter == 1
        assert bob.observer.messages == [("alice", "hello", 1)]
        assert bob.session.recv_counter == 1
        assert bob.session.last_received_counter == 1

    def test_counters_increase(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        for text in ("one", "two", "three"):
            alice.session.send_message(text)
        bob.session.send_message("back")
        relay.pump()

        assert bob.observer.messages == [("alice", "one", 1), ("alice", "two", 2), ("alice", "three", 3)]
        assert alice.observer.messages == [("bob", "back", 1)]
        assert alice.session.send_counter == 3

    def test_fingerprints_match_across_peers(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        assert alice.session.peer_fingerprint == bob.session.local_fingerprint
        assert bob.session.peer_fingerprint == alice.session.local_fingerprint

    @pytest.mark.parametrize("curve", [Curve.P256, Curve.SECP256K1])
    def test_weierstrass_curves(self, relay, scheduler, make_peer, curve):
        alice = make_peer("alice", "bob", curve=curve)
        bob = make_peer("bob", "alice", curve=curve)
        establish(relay, scheduler, alice, bob)

        alice.session.send_message("hi")
        relay.pump()
        assert bob.observer.messages == [("alice", "hi", 1)]

    def test_duplicate_handshake_keeps_keys(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)
        keys = bob.session.session_keys

        bob.session.handle_envelope(
            HandshakeEnvelope("r1", "alice", "bob", "x25519", alice.session.key_pair.public_key)
        )
        assert bob.session.session_keys is keys
        assert "duplicate_handshake" in bob.observer.names()

    def test_handshake_from_new_key_after_established_ignored(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)
        keys = bob.session.session_keys

        other = generate_key_pair(Curve.X25519)
        bob.session.handle_envelope(HandshakeEnvelope("r1", "alice", "bob", "x25519", other.public_key))
        assert bob.session.session_keys is keys
        assert bob.session.peer_public_key == alice.session.key_pair.public_key

    def test_request_when_established_resends_without_state_change(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)
        forwarded = len(relay.forwarded)

        alice.session.handle_envelope(RequestHandshakeEnvelope("r1", "bob", "alice"))
        relay.pump()

        assert alice.session.is_established
        assert relay.forwarded[forwarded]["type"] == "handshake"
        assert "duplicate_handshake" in bob.observer.names()


class TestAbort:
    """Failed handshakes."""

    def test_curve_mismatch_aborts_both(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob", curve=Curve.X25519)
        bob = make_peer("bob", "alice", curve=Curve.P256)

        alice.session.join()
        bob.session.join()
        relay.pump()

        for peer in (alice, bob):
            assert peer.session.state is SessionState.ABORTED
            assert peer.session.session_keys is None
            assert isinstance(peer.session.error, CurveMismatchError)
            assert peer.session.error.code is ErrorCode.E103_CURVE_MISMATCH
            assert peer.observer.aborted

    def test_invalid_peer_key_aborts(self, lone_session, recorder):
        joined(lone_session)
        lone_session.handle_envelope(HandshakeEnvelope("r1", "alice", "bob", "x25519", b"\x01" * 5))

        assert lone_session.state is SessionState.ABORTED
        assert isinstance(lone_session.error, InvalidPeerKeyError)
        assert lone_session.session_keys is None

    def test_aborted_session_ignores_traffic(self, lone_session, sent, scheduler):
        joined(lone_session)
        lone_session.handle_envelope(HandshakeEnvelope("r1", "alice", "bob", "prime256v1", b"\x02" * 33))
        count = len(sent)

        lone_session.handle_envelope(RequestHandshakeEnvelope("r1", "alice", "bob"))
        scheduler.fire_all()
        assert len(sent) == count

        with pytest.raises(SessionError) as exc_info:
            lone_session.send_message("hi")
        assert exc_info.value.code is ErrorCode.E401_SESSION_NOT_ESTABLISHED


class TestMessages:
    """Inbound and outbound chat messages."""

    def test_send_before_established(self, lone_session):
        joined(lone_session)
        with pytest.raises(SessionError) as exc_info:
            lone_session.send_message("too early")
        assert exc_info.value.code is ErrorCode.E401_SESSION_NOT_ESTABLISHED

    def test_message_too_large(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        with pytest.raises(SessionError) as exc_info:
            alice.session.send_message("x" * (64 * 1024 + 1))
        assert exc_info.value.code is ErrorCode.E403_MESSAGE_TOO_LARGE
        assert alice.session.send_counter == 0

    def test_early_message_queued_then_drained(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")

        alice.session.join()
        relay.pump()
        bob.session.join()
        relay.pump()
        assert alice.session.is_established
        assert not bob.session.is_established

        alice.session.send_message("early")
        relay.pump()
        assert len(bob.session.pending) == 1
        assert bob.observer.messages == []

        scheduler.fire_all()
        relay.pump()

        assert bob.session.is_established
        assert bob.observer.messages == [("alice", "early", 1)]
        assert len(bob.session.pending) == 0
        assert ("established", (1,)) in bob.observer.events

    def test_queued_messages_keep_arrival_order(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")

        alice.session.join()
        relay.pump()
        bob.session.join()
        relay.pump()

        for text in ("a", "b", "c"):
            alice.session.send_message(text)
        relay.pump()
        scheduler.fire_all()
        relay.pump()

        assert [text for _, text, _ in bob.observer.messages] == ["a", "b", "c"]

    def test_pending_cap_drops_extra(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice", max_pending=1)

        alice.session.join()
        relay.pump()
        bob.session.join()
        relay.pump()

        alice.session.send_message("kept")
        alice.session.send_message("dropped")
        relay.pump()
        scheduler.fire_all()
        relay.pump()

        assert bob.observer.messages == [("alice", "kept", 1)]
        assert bob.session.pending.dropped == 1

    def test_tampered_ciphertext_raises_security_warning(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        def flip_ct(frame):
            if frame["type"] == "msg":
                ct = bytearray(base64.b64decode(frame["payload"]["ct"]))
                ct[0] ^= 0x01
                frame["payload"]["ct"] = base64.b64encode(bytes(ct)).decode("ascii")
            return frame

        relay.tamper = flip_ct
        alice.session.send_message("hello")
        relay.pump()

        assert bob.observer.messages == []
        assert len(bob.observer.security_warnings) == 1
        assert bob.observer.security_warnings[0].code is ErrorCode.E104_AUTHENTICATION_FAILED
        assert bob.session.recv_counter == 0
        assert bob.session.is_established

    def test_relay_moving_counter_detected(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        def bump_counter(frame):
            if frame["type"] == "msg":
                frame["payload"]["counter"] += 1
            return frame

        relay.tamper = bump_counter
        alice.session.send_message("hello")
        relay.pump()

        assert bob.observer.messages == []
        assert len(bob.observer.security_warnings) == 1

    def test_session_survives_rejected_message(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        relay.drop = lambda frame: frame["type"] == "msg" and frame["payload"]["counter"] == 1
        alice.session.send_message("lost")
        alice.session.send_message("second")
        relay.pump()

        assert bob.observer.messages == [("alice", "second", 2)]

    def test_malformed_frame_dropped(self, lone_session, recorder):
        joined(lone_session)
        lone_session.handle_raw("{not json")
        lone_session.handle_raw('{"type":"msg","room":"r1","from":"alice","to":"bob","payload":{"counter":-1}}')

        assert len(recorder.dropped) == 2
        assert lone_session.state is SessionState.HANDSHAKE_SENT


class TestFiltering:
    """Envelopes that are not for this session."""

    def test_other_room_ignored(self, lone_session, recorder):
        joined(lone_session)
        peer = generate_key_pair(Curve.X25519)
        lone_session.handle_envelope(HandshakeEnvelope("r2", "alice", "bob", "x25519", peer.public_key))
        assert lone_session.state is SessionState.HANDSHAKE_SENT
        assert lone_session.peer_public_key is None

    def test_other_recipient_ignored(self, lone_session):
        joined(lone_session)
        peer = generate_key_pair(Curve.X25519)
        lone_session.handle_envelope(HandshakeEnvelope("r1", "alice", "carol", "x25519", peer.public_key))
        assert lone_session.peer_public_key is None

    def test_unexpected_sender_ignored(self, lone_session):
        joined(lone_session)
        peer = generate_key_pair(Curve.X25519)
        lone_session.handle_envelope(HandshakeEnvelope("r1", "mallory", "bob", "x25519", peer.public_key))
        assert lone_session.state is SessionState.HANDSHAKE_SENT
        assert lone_session.peer_public_key is None

    def test_handshake_before_join_ignored(self, lone_session):
        peer = generate_key_pair(Curve.X25519)
        lone_session.handle_envelope(HandshakeEnvelope("r1", "alice", "bob", "x25519", peer.public_key))
        assert lone_session.state is SessionState.IDLE

    def test_message_from_other_room_not_queued(self, lone_session):
        joined(lone_session)
        sealed_frame = {
            "type": "msg", "room": "r2", "from": "alice", "to": "bob",
            "payload": {"counter": 1, "iv": "AAAA", "ct": "", "tag": "AAAA", "hmac": "AAAA"},
        }
        lone_session.handle_raw(sealed_frame)
        assert len(lone_session.pending) == 0


class TestTransportClose:
    """Behavior after the relay connection is gone."""

    def test_connection_lost(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        alice.session.connection_lost()
        alice.session.connection_lost()

        assert alice.session.closed
        assert alice.observer.names().count("closed") == 1
        with pytest.raises(TransportClosedError) as exc_info:
            alice.session.send_message("bye")
        assert exc_info.value.code is ErrorCode.E301_TRANSPORT_CLOSED

    def test_closed_session_ignores_inbound(self, relay, scheduler, make_peer):
        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        establish(relay, scheduler, alice, bob)

        bob.session.connection_lost()
        alice.session.send_message("late")
        relay.pump()
        assert bob.observer.messages == []


class TestObservers:
    """Observer isolation."""

    def test_observer_exception_does_not_break_protocol(self, relay, scheduler, make_peer):
        class Exploding:
            def __getattr__(self, name):
                def hook(*args):
                    raise RuntimeError("boom")
                return hook

        alice = make_peer("alice", "bob")
        bob = make_peer("bob", "alice")
        alice.session.add_observer(Exploding())

        establish(relay, scheduler, alice, bob)
        bob.session.send_message("still works")
        relay.pump()
        assert alice.observer.messages == [("bob", "still works", 1)]
