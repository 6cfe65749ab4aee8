"""
Courier - Terminal presentation of session events.

Created by orpheus497

ConsolePresenter subscribes to a HandshakeStateMachine and renders its
events with rich. It holds no protocol state.
"""

from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .errors import AuthenticationError, CourierError, MalformedEnvelopeError, PeerNotInRoomError
from .handshake import SessionObserver, SessionState
from .protocol import MessageEnvelope


def now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ConsolePresenter(SessionObserver):
    """Prints session events to the terminal."""

    def __init__(self, console: Optional[Console] = None, show_debug: bool = False):
        self.console = console or Console(highlight=False)
        self.show_debug = show_debug

    def info(self, message: str, style: str = "dim") -> None:
        line = Text(f"[{now()}] ", style="dim")
        line.append(message, style=style)
        self.console.print(line)

    def warning(self, message: str) -> None:
        self.info(f"WARNING: {message}", style="bold yellow")

    def banner(self, curve: str, local_fingerprint: str) -> None:
        self.info(f"Using curve: {curve}", style="cyan")
        self.info(f"Your public key fingerprint: {local_fingerprint}", style="bold cyan")

    def status(self, stats: dict) -> None:
        self.console.print(
            Panel.fit(
                "\n".join(f"{key}: {value}" for key, value in stats.items() if key != "error"),
                title="Session",
            )
        )

    # SessionObserver hooks

    def on_state_change(self, old_state: SessionState, new_state: SessionState) -> None:
        if self.show_debug:
            self.info(f"{old_state.name} -> {new_state.name}")

    def on_handshake_sent(self, peer: str) -> None:
        self.info(f"Handshake sent to '{peer}'.")

    def on_handshake_requested(self, peer: str) -> None:
        self.info(f"Requesting handshake from '{peer}'...")

    def on_handshake_resend_requested(self, peer: str) -> None:
        self.info(f"Peer '{peer}' requests handshake. Resending...")

    def on_peer_handshake(self, peer: str, peer_fingerprint: str) -> None:
        self.info(f"Handshake received from '{peer}'.", style="default")
        self.console.print(
            Panel.fit(
                f"Peer public key fingerprint: [bold]{peer_fingerprint}[/bold]\n"
                "Verify this fingerprint with your peer via another channel.",
                title="IMPORTANT",
                border_style="yellow",
            )
        )

    def on_duplicate_handshake(self, peer: str) -> None:
        self.info(f"Duplicate handshake from '{peer}' ignored.")

    def on_established(self, pending_count: int) -> None:
        self.info("Session keys derived.", style="bold green")
        if pending_count:
            self.info(f"Processing {pending_count} pending messages...")
        self.info("You can start chatting. Type and press Enter (/quit to leave).", style="green")

    def on_message(self, sender: str, text: str, counter: int) -> None:
        line = Text(f"[{sender}] ", style="bold magenta")
        line.append(text)
        self.console.print(line)

    def on_message_queued(self, envelope: MessageEnvelope, queue_size: int) -> None:
        self.info(f"Message from '{envelope.sender}' queued, session not ready yet.")

    def on_security_warning(self, sender: str, error: AuthenticationError) -> None:
        self.info(
            f"HMAC verification FAILED for a message from '{sender}'. Message discarded.",
            style="bold red",
        )

    def on_message_rejected(self, sender: str, error: CourierError) -> None:
        self.warning(f"Decrypt/auth failed for a message from '{sender}': {error.message}")

    def on_envelope_dropped(self, error: MalformedEnvelopeError) -> None:
        if self.show_debug:
            self.info(f"Dropped malformed envelope: {error.message}")

    def on_relay_error(self, error: CourierError) -> None:
        if isinstance(error, PeerNotInRoomError):
            self.info(f"Peer '{error.peer}' is not in the room yet.", style="yellow")
        else:
            self.warning(f"Relay error: {error.message}")

    def on_aborted(self, error: CourierError) -> None:
        self.info(f"{error.message}. Abort.", style="bold red")

    def on_closed(self) -> None:
        self.info("Disconnected.")
