"""Command-line entry point: ``lanrelay serve | status | init-config``."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger

from lanrelay import __version__
from lanrelay.config import Config, get_config_path, load_config, save_config
from lanrelay.logging_setup import setup_logging
from lanrelay.relay.client import probe_status
from lanrelay.relay.server import RelayServer


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lanrelay",
        description="LAN rendezvous and relay hub for WebRTC signaling and file transfer",
    )
    p.add_argument("--version", action="version", version=f"lanrelay {__version__}")
    sub = p.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the relay server")
    serve.add_argument(
        "--config",
        default=None,
        help=f"Path to a JSON config file (default: {get_config_path()})",
    )
    serve.add_argument("--host", default=None, help="Interface to bind (default from config)")
    serve.add_argument("--port", type=int, default=None, help="Port to bind (0 picks a free one)")
    serve.add_argument(
        "--advertise-address",
        default=None,
        help="Address handed to clients in welcome and QR data (auto-detected if unset)",
    )
    serve.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR)",
    )
    serve.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging)",
    )

    status = sub.add_parser("status", help="Probe a running relay")
    status.add_argument(
        "--url",
        default=None,
        help="Relay HTTP base URL (default: http://127.0.0.1:<configured port>)",
    )
    status.add_argument("--config", default=None, help="Path to a JSON config file")
    status.add_argument("--timeout", type=float, default=2.0, help="Seconds to wait")

    init = sub.add_parser("init-config", help="Write a default config file")
    init.add_argument("--config", default=None, help="Where to write it")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return p


def _config_path(value: str | None) -> Path | None:
    return Path(value).expanduser() if value else None


def _cmd_serve(args: argparse.Namespace) -> int:
    config = load_config(_config_path(args.config))
    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.advertise_address is not None:
        config.server.advertise_address = args.advertise_address

    setup_logging(config.logging, override_level=args.log_level, override_file=args.log_file)

    server = RelayServer(config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("[CLI] interrupted")
    except OSError as exc:
        logger.error("[CLI] cannot listen on {}:{}: {}", config.server.host, config.server.port, exc)
        return 1
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = load_config(_config_path(args.config))
    url = args.url or f"http://127.0.0.1:{config.server.port}"
    data = probe_status(url, config.server.status_path, timeout=args.timeout)
    if data is None:
        print(f"lanrelay: no relay reachable at {url}", file=sys.stderr)
        return 1
    print(json.dumps(data, indent=2))
    return 0


def _cmd_init_config(args: argparse.Namespace) -> int:
    path = _config_path(args.config) or get_config_path()
    if path.exists() and not args.force:
        print(f"lanrelay: {path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    written = save_config(Config(), path)
    print(f"Wrote default configuration to {written}")
    return 0


_COMMANDS = {
    "serve": _cmd_serve,
    "status": _cmd_status,
    "init-config": _cmd_init_config,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)
