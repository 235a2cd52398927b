"""Command line entry point for the chat server."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .config import ServerConfig
from .logging_config import configure_logging
from .ws_transport import create_app

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    defaults = ServerConfig()
    parser = argparse.ArgumentParser(prog="chatline", description="Real-time chat server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat server")
    serve_parser.add_argument("--host", default=defaults.host, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=defaults.port, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database; in-memory if omitted")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=defaults.ping_interval_s,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument(
        "--ping-miss-limit",
        type=int,
        default=defaults.ping_miss_limit,
        help="Unanswered pings before a connection is dropped",
    )
    serve_parser.add_argument(
        "--delete-window",
        type=int,
        default=defaults.delete_window_s,
        help="Seconds during which a sender may delete a message for everyone",
    )
    serve_parser.add_argument(
        "--confirm-delivery-on-connect",
        action="store_true",
        help="Mark queued messages delivered when their receiver connects",
    )
    serve_parser.add_argument("--log-level", default=defaults.log_level, help="Root log level")
    serve_parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        host=args.host,
        port=args.port,
        db_path=args.db,
        ping_interval_s=args.ping_interval,
        ping_miss_limit=args.ping_miss_limit,
        delete_window_s=args.delete_window,
        confirm_delivery_on_connect=args.confirm_delivery_on_connect,
        log_level=args.log_level,
        log_file=args.log_file,
    )


def _run_serve(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    configure_logging(config)
    logger.info("starting chat server on %s:%d (db=%s)", config.host, config.port, config.db_path or "memory")
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _run_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
