"""
Courier - Chat client driving a secure session over the relay.

Created by orpheus497

This module connects to the relay with websockets and feeds every frame
and every input line into a HandshakeStateMachine. Everything runs on one
asyncio event loop: the state machine never awaits, outbound envelopes go
through a queue drained by a writer task, and stdin is read without
blocking so relay traffic keeps flowing while the user types.
"""

import asyncio
import contextlib
import logging
import sys
from typing import AsyncIterator, Callable, Iterable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .config import Config
from .console import ConsolePresenter
from .constants import HANDSHAKE_RETRY_DELAY, MAX_ENVELOPE_SIZE
from .errors import ErrorCode, NetworkError, SessionError, TransportClosedError
from .handshake import HandshakeStateMachine, SessionObserver
from .key_exchange import KeyPair
from .protocol import Envelope, encode_envelope

logger = logging.getLogger(__name__)

QUIT_COMMAND = "/quit"
FINGERPRINT_COMMAND = "/fp"
STATUS_COMMAND = "/status"


class ChatClient:
    """Interactive client for one peer pair."""

    def __init__(
        self,
        url: str,
        room: str,
        me: str,
        peer: str,
        presenter: Optional[ConsolePresenter] = None,
        key_pair: Optional[KeyPair] = None,
        retry_delay: float = HANDSHAKE_RETRY_DELAY,
        max_pending: Optional[int] = None,
        observers: Iterable[SessionObserver] = (),
        lines: Optional[Callable[[], AsyncIterator[str]]] = None,
    ):
        """
        Initialize client.

        Args:
            url: Relay WebSocket URL
            room: Room to join
            me: Our identity
            peer: Peer identity
            presenter: Terminal presenter (a default ConsolePresenter if None)
            key_pair: Ephemeral key pair (generated if None)
            retry_delay: Handshake retry nudge delay in seconds
            max_pending: Pending queue cap (None = unbounded)
            observers: Extra session observers
            lines: Factory for the input line source (stdin if None)
        """
        self.url = url
        self.presenter = presenter or ConsolePresenter()
        self._lines = lines or self._stdin_lines
        self._outbox: Optional[asyncio.Queue] = None

        self.session = HandshakeStateMachine(
            room,
            me,
            peer,
            send=self._enqueue,
            schedule=self._schedule,
            key_pair=key_pair,
            retry_delay=retry_delay,
            max_pending=max_pending,
        )
        self.session.add_observer(self.presenter)
        for observer in observers:
            self.session.add_observer(observer)

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> "ChatClient":
        """Build a client from validated configuration."""
        return cls(
            config.get("relay", "url"),
            config.get("session", "room"),
            config.get("session", "me"),
            config.get("session", "peer"),
            retry_delay=config.get("session", "handshake_retry_delay"),
            max_pending=config.max_pending,
            **kwargs,
        )

    def _enqueue(self, envelope: Envelope) -> None:
        if self._outbox is None:
            raise TransportClosedError("Not connected to relay")
        self._outbox.put_nowait(envelope)

    @staticmethod
    def _schedule(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    async def run(self) -> None:
        """
        Connect, join the room and run until the user quits or the relay
        connection closes.

        Raises:
            NetworkError: If the relay cannot be reached
        """
        try:
            ws = await websockets.connect(self.url, max_size=MAX_ENVELOPE_SIZE)
        except (OSError, InvalidURI, InvalidHandshake, asyncio.TimeoutError) as e:
            raise NetworkError(
                ErrorCode.E302_CONNECTION_FAILED,
                f"Cannot connect to relay at {self.url}: {e}",
                {"url": self.url},
            )

        logger.info(f"Connected to relay at {self.url}")
        self._outbox = asyncio.Queue()

        try:
            self.session.join()
            tasks = {
                asyncio.ensure_future(self._receive_loop(ws)),
                asyncio.ensure_future(self._send_loop(ws)),
                asyncio.ensure_future(self._input_loop()),
            }
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        finally:
            self.session.connection_lost()
            self._outbox = None
            await ws.close()

        for task in done:
            error = task.exception()
            if error is not None:
                raise error

    async def _receive_loop(self, ws) -> None:
        """Feed every relay frame to the session."""
        try:
            async for frame in ws:
                self.session.handle_raw(frame)
        except ConnectionClosed as e:
            logger.info(f"Relay connection closed: {e}")
        logger.debug("Receive loop ended")

    async def _send_loop(self, ws) -> None:
        """Write queued envelopes to the relay in order."""
        try:
            while True:
                envelope = await self._outbox.get()
                await ws.send(encode_envelope(envelope))
        except ConnectionClosed as e:
            logger.info(f"Relay connection closed while sending: {e}")

    async def _input_loop(self) -> None:
        async for line in self._lines():
            if not self.handle_line(line):
                break
        logger.debug("Input loop ended")

    async def _stdin_lines(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

        while True:
            raw = await reader.readline()
            if not raw:
                return
            yield raw.decode("utf-8", errors="replace")

    def handle_line(self, line: str) -> bool:
        """
        Handle one line of user input.

        Returns:
            False when the client should stop, True otherwise
        """
        text = line.rstrip("\r\n")
        if not text:
            return True

        if text == QUIT_COMMAND:
            return False

        if text == FINGERPRINT_COMMAND:
            self.presenter.info(f"Your fingerprint: {self.session.local_fingerprint}")
            peer_fp = self.session.peer_fingerprint or "(no handshake yet)"
            self.presenter.info(f"Peer fingerprint: {peer_fp}")
            return True

        if text == STATUS_COMMAND:
            self.presenter.status(self.session.get_statistics())
            return True

        if not self.session.is_established:
            self.presenter.warning("Secure session not ready yet...")
            return True

        try:
            self.session.send_message(text)
        except TransportClosedError:
            return False
        except SessionError as e:
            self.presenter.warning(e.message)
        return True
