"""
Pytest configuration and fixtures for Courier tests.

Created by orpheus497

Provides a fake timer scheduler, an in-memory relay that routes envelopes
between state machines exactly like the real relay, and an observer that
records session events.
"""

import io
import json
import shutil
import tempfile
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Generator, List, Optional, Tuple

import pytest
from rich.console import Console

from courier.console import ConsolePresenter
from courier.handshake import HandshakeStateMachine, SessionObserver
from courier.key_exchange import Curve, generate_key_pair
from courier.protocol import peer_not_in_room_message


class FakeScheduler:
    """Collects one-shot timers so tests decide when they fire."""

    def __init__(self):
        self.timers: List[Tuple[float, Callable[[], None]]] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> int:
        self.timers.append((delay, callback))
        return len(self.timers)

    def fire_all(self) -> int:
        timers, self.timers = self.timers, []
        for _, callback in timers:
            callback()
        return len(timers)


class RecordingObserver(SessionObserver):
    """Keeps every session event for assertions."""

    def __init__(self):
        self.events: List[Tuple[str, tuple]] = []
        self.messages: List[Tuple[str, str, int]] = []
        self.security_warnings: List[Any] = []
        self.rejected: List[Any] = []
        self.relay_errors: List[Any] = []
        self.dropped: List[Any] = []
        self.aborted: List[Any] = []

    def _record(self, name: str, *args) -> None:
        self.events.append((name, args))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def on_state_change(self, old_state, new_state):
        self._record("state_change", old_state, new_state)

    def on_handshake_sent(self, peer):
        self._record("handshake_sent", peer)

    def on_handshake_requested(self, peer):
        self._record("handshake_requested", peer)

    def on_handshake_resend_requested(self, peer):
        self._record("handshake_resend_requested", peer)

    def on_peer_handshake(self, peer, peer_fingerprint):
        self._record("peer_handshake", peer, peer_fingerprint)

    def on_duplicate_handshake(self, peer):
        self._record("duplicate_handshake", peer)

    def on_established(self, pending_count):
        self._record("established", pending_count)

    def on_message(self, sender, text, counter):
        self._record("message", sender, text, counter)
        self.messages.append((sender, text, counter))

    def on_message_queued(self, envelope, queue_size):
        self._record("message_queued", queue_size)

    def on_security_warning(self, sender, error):
        self._record("security_warning", sender)
        self.security_warnings.append(error)

    def on_message_rejected(self, sender, error):
        self._record("message_rejected", sender)
        self.rejected.append(error)

    def on_envelope_dropped(self, error):
        self._record("envelope_dropped")
        self.dropped.append(error)

    def on_relay_error(self, error):
        self._record("relay_error")
        self.relay_errors.append(error)

    def on_aborted(self, error):
        self._record("aborted")
        self.aborted.append(error)

    def on_closed(self):
        self._record("closed")


class LoopbackRelay:
    """
    In-memory relay with FIFO delivery.

    Frames go through the same JSON text form as on the wire, so the
    envelope codec is exercised. `tamper` may rewrite forwarded frames and
    `drop` may discard them.
    """

    def __init__(self):
        self.connections: Dict[str, HandshakeStateMachine] = {}
        self.rooms: Dict[str, Dict[str, str]] = {}
        self.queue: Deque[Tuple[str, Dict[str, Any]]] = deque()
        self.forwarded: List[Dict[str, Any]] = []
        self.tamper: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
        self.drop: Optional[Callable[[Dict[str, Any]], bool]] = None

    def sender_for(self, connection_id: str) -> Callable:
        def send(envelope):
            self.queue.append((connection_id, envelope.to_dict()))
        return send

    def bind(self, connection_id: str, machine: HandshakeStateMachine) -> None:
        self.connections[connection_id] = machine

    def disconnect(self, connection_id: str) -> None:
        for room_id in list(self.rooms):
            members = self.rooms[room_id]
            for peer_id in [p for p, conn in members.items() if conn == connection_id]:
                del members[peer_id]
            if not members:
                del self.rooms[room_id]

    def _deliver(self, connection_id: str, frame: Dict[str, Any]) -> None:
        self.connections[connection_id].handle_raw(json.dumps(frame))

    def pump(self, limit: int = 1000) -> int:
        """Route queued frames until the queue is empty."""
        steps = 0
        while self.queue:
            steps += 1
            if steps > limit:
                raise RuntimeError("relay pump did not settle")
            origin, frame = self.queue.popleft()

            if frame["type"] == "join":
                self.rooms.setdefault(frame["room"], {})[frame["from"]] = origin
                self._deliver(origin, {"type": "joined", "room": frame["room"], "from": frame["from"]})
                continue

            target = self.rooms.get(frame["room"], {}).get(frame.get("to"))
            if target is None:
                self._deliver(origin, {"type": "error", "error": peer_not_in_room_message(frame.get("to"))})
                continue

            if self.drop and self.drop(frame):
                continue
            if self.tamper:
                frame = self.tamper(frame)
            self.forwarded.append(frame)
            self._deliver(target, frame)
        return steps


class Peer:
    """A state machine wired to a loopback relay, with its observer."""

    def __init__(self, relay: LoopbackRelay, scheduler: FakeScheduler, room: str, me: str,
                 peer: str, curve: Curve = Curve.X25519, **kwargs):
        self.observer = RecordingObserver()
        self.session = HandshakeStateMachine(
            room,
            me,
            peer,
            send=relay.sender_for(me),
            schedule=scheduler,
            key_pair=generate_key_pair(curve),
            **kwargs,
        )
        self.session.add_observer(self.observer)
        relay.bind(me, self.session)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="courier_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def relay() -> LoopbackRelay:
    return LoopbackRelay()


@pytest.fixture
def make_peer(relay, scheduler):
    """Factory building peers attached to the shared relay and scheduler."""

    def factory(me: str, peer: str, room: str = "r1", **kwargs) -> Peer:
        return Peer(relay, scheduler, room, me, peer, **kwargs)

    return factory


@pytest.fixture
def recorder() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def console_output():
    """A rich Console writing into a buffer, and the buffer."""
    buffer = io.StringIO()
    console = Console(file=buffer, width=200, color_system=None, highlight=False)
    return console, buffer


@pytest.fixture
def presenter(console_output) -> ConsolePresenter:
    console, _ = console_output
    return ConsolePresenter(console)


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
