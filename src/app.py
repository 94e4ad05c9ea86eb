"""Application entry point for teleecho."""

from __future__ import annotations

import argparse
import asyncio
import io
import logging
import os
import re
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

from art import tprint

import settings
from adapters.sqlite_store import SQLiteConnectionStore
from adapters.telegram_bot_transport import TelegramBotTransport
from core.config import BEST_EFFORT, STRICT, PairingConfig, RelayConfig, RetryPolicy
from core.errors import TeleechoError
from core.models import ConnectionRecord, PairingSession, normalize_connection_name
from core.pairing import PairingEngine
from core.relay import RelayEngine

NAME = "TELEECHO"
FONT = "tarty-1"
COMMANDS = {"relay", "new", "pair", "list", "remove"}
GLOBAL_FLAGS = {"-v", "--verbose"}
HELP_FLAGS = {"-h", "--help"}

# Bot tokens look like "<bot id>:<35 url-safe chars>" and leak through API URLs.
BOT_TOKEN_PATTERN = re.compile(r"(?<!\d)\d{5,}:[A-Za-z0-9_-]{30,}")


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return BOT_TOKEN_PATTERN.sub("***", message)


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(verbose: bool = False) -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    level_name = "DEBUG" if verbose else str(config.get("level", "WARNING")).upper()
    level = getattr(logging, level_name, logging.WARNING)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = os.path.expanduser(file_cfg.get("path", "~/.teleecho/teleecho.log"))
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _build_store(db_path: str) -> SQLiteConnectionStore:
    store = SQLiteConnectionStore(db_path)
    store.init_db()
    return store


def _build_transport(token: str) -> TelegramBotTransport:
    return TelegramBotTransport(
        token,
        api_base=settings.API_BASE,
        request_timeout=settings.REQUEST_TIMEOUT,
    )


def _relay_config(mode: Optional[str]) -> RelayConfig:
    return RelayConfig(
        max_lines=settings.RELAY_MAX_LINES,
        max_bytes=settings.RELAY_MAX_BYTES,
        max_age=settings.RELAY_MAX_AGE_SECONDS,
        mode=mode or settings.RELAY_MODE,
        max_pending_batches=settings.RELAY_MAX_PENDING_BATCHES,
        min_send_interval=settings.RELAY_MIN_SEND_INTERVAL,
        queue_lines=settings.RELAY_QUEUE_LINES,
    )


def _retry_policy() -> RetryPolicy:
    return RetryPolicy(
        attempts=settings.RETRY_ATTEMPTS,
        base_delay=settings.RETRY_BASE_DELAY,
        max_delay=settings.RETRY_MAX_DELAY,
        max_total_wait=settings.RETRY_MAX_TOTAL_WAIT,
    )


def _pairing_config() -> PairingConfig:
    return PairingConfig(
        code_digits=settings.PAIRING_CODE_DIGITS,
        poll_interval=settings.PAIRING_POLL_INTERVAL,
        timeout=settings.PAIRING_TIMEOUT_SECONDS,
    )


async def _pair(
    store: SQLiteConnectionStore,
    record: ConnectionRecord,
    transport: TelegramBotTransport,
    bot_name: str,
) -> ConnectionRecord:
    def announce(session: PairingSession) -> None:
        print(f"send the following number to the @{bot_name} bot:\t{session.verification_code}")
        print(f"waiting up to {settings.PAIRING_TIMEOUT_SECONDS:g}s for the code...")

    engine = PairingEngine(store, transport, _pairing_config())
    return await engine.pair(record, announce)


async def _create_and_pair(store: SQLiteConnectionStore, name: str, token: str) -> ConnectionRecord:
    transport = _build_transport(token)
    # getMe validates the token before anything is persisted.
    bot_name = await transport.get_bot_username()
    record = store.create(name, token)
    return await _pair(store, record, transport, bot_name)


async def _repair(store: SQLiteConnectionStore, record: ConnectionRecord) -> ConnectionRecord:
    transport = _build_transport(record.credential)
    bot_name = await transport.get_bot_username()
    return await _pair(store, record, transport, bot_name)


def _cmd_new(store: SQLiteConnectionStore, args: argparse.Namespace) -> int:
    _print_banner()
    name = normalize_connection_name(args.name)
    active = asyncio.run(_create_and_pair(store, name, args.token))
    print(f"new connection successfully created: {active.name}")
    return 0


def _cmd_pair(store: SQLiteConnectionStore, args: argparse.Namespace) -> int:
    _print_banner()
    record = store.get(normalize_connection_name(args.name))
    if record.is_active:
        print(f"connection {record.name} is already paired")
        return 0
    active = asyncio.run(_repair(store, record))
    print(f"connection paired: {active.name}")
    return 0


def _cmd_list(store: SQLiteConnectionStore, args: argparse.Namespace) -> int:
    for record in store.list_records():
        suffix = "" if record.is_active else " (pending pairing)"
        print(f"{record.name}{suffix}")
    return 0


def _cmd_remove(store: SQLiteConnectionStore, args: argparse.Namespace) -> int:
    store.remove(normalize_connection_name(args.name))
    print(f"connection removed: {args.name}")
    return 0


def _stdin_lines() -> Iterable[str]:
    # Only "\n" ends a line; a bare "\r" must reach normalize_line untouched.
    stream = io.TextIOWrapper(
        sys.stdin.buffer, encoding="utf-8", errors="replace", newline="\n"
    )
    return iter(stream.readline, "")


async def _run_relay(engine: RelayEngine, lines: Iterable[str]) -> None:
    loop = asyncio.get_running_loop()
    # Signals end reading but still flush what was read.
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, engine.stop)
        except (NotImplementedError, RuntimeError):
            logging.getLogger(__name__).debug("Signal handlers unavailable on this platform")
    await engine.run(lines)


def _cmd_relay(store: SQLiteConnectionStore, args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    name = normalize_connection_name(args.name) if args.name else None
    record = store.resolve(name)

    engine = RelayEngine(
        record,
        _build_transport(record.credential),
        _relay_config(args.mode),
        _retry_policy(),
    )
    logger.info("Relaying stdin to connection %s", record.name)
    asyncio.run(_run_relay(engine, _stdin_lines()))
    return 0


def _normalize_argv(argv: list[str]) -> list[str]:
    """Route ``teleecho [NAME]`` to the relay command."""

    index = 0
    while index < len(argv):
        arg = argv[index]
        if arg == "--db":
            index += 2
        elif arg.startswith("--db=") or arg in GLOBAL_FLAGS:
            index += 1
        else:
            break
    if index < len(argv) and argv[index] in COMMANDS | HELP_FLAGS:
        return argv
    return argv[:index] + ["relay"] + argv[index:]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="teleecho", description="forwards input via telegram to a chat")
    parser.add_argument("--db", default=None, help=f"connection database; defaults to {settings.DB_PATH}")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug information")
    subparsers = parser.add_subparsers(dest="command")

    relay = subparsers.add_parser("relay", help="Forward stdin to a connection (default)")
    relay.add_argument("name", nargs="?", help="connection to send with; optional if only one exists")
    mode = relay.add_mutually_exclusive_group()
    mode.add_argument("--strict", dest="mode", action="store_const", const=STRICT,
                      help="abort with a non-zero exit when a batch cannot be delivered")
    mode.add_argument("--best-effort", dest="mode", action="store_const", const=BEST_EFFORT,
                      help="log undeliverable batches and keep relaying")

    new = subparsers.add_parser("new", help="Register a bot and pair it with your chat")
    new.add_argument("token", help="token from BotFather to send from")
    new.add_argument("name", help="name to specify this connection")

    pair = subparsers.add_parser("pair", help="Retry pairing of a pending connection")
    pair.add_argument("name", help="connection to pair")

    subparsers.add_parser("list", help="List all connections")

    remove = subparsers.add_parser("remove", help="Remove a connection")
    remove.add_argument("name", help="connection to remove")
    return parser


HANDLERS = {
    "relay": _cmd_relay,
    "new": _cmd_new,
    "pair": _cmd_pair,
    "list": _cmd_list,
    "remove": _cmd_remove,
}


def main(argv: Optional[list[str]] = None) -> int:
    raw = list(sys.argv[1:] if argv is None else argv)
    args = _build_parser().parse_args(_normalize_argv(raw))
    _configure_logging(verbose=args.verbose)

    try:
        store = _build_store(args.db or settings.DB_PATH)
        return HANDLERS[args.command](store, args)
    except TeleechoError as exc:
        print(f"error while {exc.operation}: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("cancelled", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
