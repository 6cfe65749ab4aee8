"""
Courier - Rendezvous relay server.

Created by orpheus497

The relay registers peers in rooms and forwards envelopes between them.
It only reads routing metadata (type, room, from, to); payloads are
forwarded verbatim and never inspected, decoded or logged. Direct
messages only: there is no broadcast.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from .config import Config
from .constants import DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT, MAX_ENVELOPE_SIZE
from .errors import ConfigError, ErrorCode, RelayError
from .main import setup_logging
from .protocol import EnvelopeType, peer_not_in_room_message

logger = logging.getLogger(__name__)

RELAY_LOG_FILENAME = "courier-relay.log"


class Connection(Protocol):
    """What the router needs from a client connection."""

    async def send(self, message: str) -> None:
        ...


class RelayRouter:
    """
    Room-keyed forwarder.

    Attributes:
        rooms: room id -> {peer id -> connection}
    """

    def __init__(self):
        self.rooms: Dict[str, Dict[str, Connection]] = {}

    async def _safe_send(self, conn: Connection, message: Dict[str, Any]) -> None:
        try:
            await conn.send(json.dumps(message))
        except ConnectionClosed:
            logger.debug("Skipping send to closed connection")

    async def handle_frame(self, conn: Connection, raw: Any) -> None:
        """
        Route one frame received from `conn`.

        Frames that are not JSON objects with type, room and from are ignored.
        """
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            msg = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("Ignoring unparseable frame")
            return

        if not isinstance(msg, dict):
            return

        msg_type = msg.get("type")
        room = msg.get("room")
        sender = msg.get("from")
        if not msg_type or not room or not sender:
            return
        if not all(isinstance(value, str) for value in (msg_type, room, sender)):
            return

        if msg_type == EnvelopeType.JOIN.value:
            self.rooms.setdefault(room, {})[sender] = conn
            logger.info(f"'{sender}' joined room '{room}'")
            await self._safe_send(conn, {"type": EnvelopeType.JOINED.value, "room": room, "from": sender})
            return

        members = self.rooms.get(room)
        if members is None:
            return

        recipient = msg.get("to")
        if not recipient or not isinstance(recipient, str):
            return

        target = members.get(recipient)
        if target is None:
            await self._safe_send(
                conn, {"type": EnvelopeType.ERROR.value, "error": peer_not_in_room_message(recipient)}
            )
            return

        forwarded = {"type": msg_type, "room": room, "from": sender, "to": recipient}
        if "payload" in msg:
            forwarded["payload"] = msg["payload"]

        logger.info(f"Relayed {msg_type} in room '{room}': {sender} -> {recipient}")
        await self._safe_send(target, forwarded)

    def disconnect(self, conn: Connection) -> None:
        """Remove a connection from every room and delete empty rooms."""
        for room_id in list(self.rooms):
            members = self.rooms[room_id]
            for peer_id in [p for p, sock in members.items() if sock is conn]:
                del members[peer_id]
                logger.info(f"'{peer_id}' left room '{room_id}'")
            if not members:
                del self.rooms[room_id]


class RelayServer:
    """WebSocket server exposing a RelayRouter."""

    def __init__(self, host: str = DEFAULT_RELAY_HOST, port: int = DEFAULT_RELAY_PORT):
        self.host = host
        self.port = port
        self.router = RelayRouter()
        self.server = None

    async def _handle_client(self, ws) -> None:
        logger.debug(f"Client connected from {ws.remote_address}")
        try:
            async for frame in ws:
                await self.router.handle_frame(ws, frame)
        except ConnectionClosed:
            pass
        finally:
            self.router.disconnect(ws)
            logger.debug(f"Client disconnected from {ws.remote_address}")

    async def start(self) -> None:
        """
        Start listening.

        Raises:
            RelayError: If the listening socket cannot be opened
        """
        try:
            self.server = await websockets.serve(
                self._handle_client, self.host, self.port, max_size=MAX_ENVELOPE_SIZE
            )
        except OSError as e:
            raise RelayError(
                ErrorCode.E801_RELAY_START_FAILED,
                f"Failed to start relay on {self.host}:{self.port}: {e}",
                {"host": self.host, "port": self.port},
            )
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Relay server listening on ws://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the server and close client connections."""
        if self.server is None:
            return
        self.server.close()
        await self.server.wait_closed()
        self.server = None
        logger.info("Relay server stopped")

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run until `stop` is set (or forever)."""
        stop = stop or asyncio.Event()
        await self.start()
        try:
            await stop.wait()
        finally:
            await self.stop()


async def async_main(argv=None) -> None:
    """Async entry point for the relay."""
    parser = argparse.ArgumentParser(description="Courier relay - rendezvous and routing only")
    parser.add_argument("--config", type=str, default=None, help="Path to a TOML config file")
    parser.add_argument("--host", default=None, help="Listen address")
    parser.add_argument("--port", type=int, default=None, help="Listen port")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except ConfigError as e:
        print(e.message, file=sys.stderr)
        sys.exit(1)

    host = args.host or config.get("relay", "host")
    port = args.port if args.port is not None else config.get("relay", "port")

    setup_logging(config, args.debug, log_filename=RELAY_LOG_FILENAME, force_console=True)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops lack add_signal_handler
            pass

    server = RelayServer(host, port)
    try:
        await server.run(stop)
    except RelayError as e:
        logger.error(e.message)
        sys.exit(1)


def main():
    """Main entry point - runs async_main."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
