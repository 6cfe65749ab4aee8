"""
Courier - Main entry point for the chat client.

Created by orpheus497
"""

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Prompt

from . import __version__
from .client import ChatClient
from .config import Config
from .console import ConsolePresenter
from .constants import (
    DEFAULT_DATA_DIR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)
from .errors import ConfigError, NetworkError, NoSupportedCurveError
from .key_exchange import generate_key_pair, select_curve
from .session_keys import fingerprint

logger = logging.getLogger(__name__)


def setup_logging(
    config: Config,
    debug: bool = False,
    log_filename: str = LOG_FILENAME,
    console: Optional[Console] = None,
    force_console: bool = False,
) -> None:
    """
    Configure the root logger from the [logging] section.

    File logging goes to a rotating file under ~/.courier/logs. Console
    logging goes through rich and is off by default for the chat client,
    whose terminal belongs to the conversation.
    """
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.get("logging", "file_logging", True):
        log_dir = Path(DEFAULT_DATA_DIR).expanduser() / LOGS_DIR
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / log_filename, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            root.addHandler(file_handler)
        except OSError as e:
            print(f"Warning: file logging disabled: {e}", file=sys.stderr)

    if force_console or debug or config.get("logging", "console_logging", False):
        root.addHandler(RichHandler(console=console, show_path=False, rich_tracebacks=True))

    if not root.handlers:
        root.addHandler(logging.NullHandler())


def _prompt_missing(config: Config, console: Console) -> None:
    """Ask for room and identities not given by file, env or flags."""
    prompts = (
        ("room", "Room"),
        ("me", "Your id"),
        ("peer", "Peer id"),
    )
    for key, label in prompts:
        if not config.get("session", key):
            config.set("session", key, Prompt.ask(label, console=console).strip())


def main():
    """Main entry point for the Courier chat client."""
    parser = argparse.ArgumentParser(
        description="Courier - End-to-end encrypted two-party chat over an untrusted relay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  courier --room r1 --me alice --peer bob
  courier --server ws://relay.example.org:8085 --room r1 --me bob --peer alice

Created by orpheus497
        """,
    )

    parser.add_argument("--version", action="version", version=f"Courier {__version__}")
    parser.add_argument("--config", type=str, default=None, help="Path to a TOML config file")
    parser.add_argument("--server", type=str, default=None, help="Relay WebSocket URL")
    parser.add_argument("--room", type=str, default=None, help="Room to join")
    parser.add_argument("--me", type=str, default=None, help="Your id")
    parser.add_argument("--peer", type=str, default=None, help="Peer id")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args()
    console = Console(highlight=False)

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(1)

    if args.server:
        config.set("relay", "url", args.server)
    for key in ("room", "me", "peer"):
        value = getattr(args, key)
        if value:
            config.set("session", key, value)

    setup_logging(config, args.debug, console=console)

    try:
        _prompt_missing(config, console)
        config.validate_session()
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(1)
    except (KeyboardInterrupt, EOFError):
        sys.exit(1)

    try:
        curve = select_curve()
    except NoSupportedCurveError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(1)

    key_pair = generate_key_pair(curve)
    presenter = ConsolePresenter(console, show_debug=args.debug)
    presenter.banner(curve.value, fingerprint(key_pair.public_key))

    client = ChatClient.from_config(config, presenter=presenter, key_pair=key_pair)
    logger.info(
        f"Starting session {config.get('session', 'me')} -> {config.get('session', 'peer')} "
        f"in room '{config.get('session', 'room')}' via {client.url}"
    )

    try:
        asyncio.run(client.run())
    except NetworkError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
