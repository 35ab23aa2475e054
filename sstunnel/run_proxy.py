"""
Unified CLI entrypoint for the sstunnel proxy.

Supports subcommands:
- local: SOCKS5 listener that tunnels to a remote sstunnel server
- server: accepts tunnelled connections and relays them to their targets

Settings resolve in order: CONFIG defaults (env overridable), then the
optional JSON config file (-c), then command-line options.
"""

import argparse
import signal
import sys
from typing import Any, Dict, Optional

from sstunnel.config import CONFIG, ProxyConfig, load_config_file
from sstunnel.crypto import list_methods
from sstunnel.exceptions import ConfigError
from sstunnel.listener import TcpListener
from sstunnel.logging_utils import configure_file_logger, get_logger, set_verbosity, tag_role

logger = get_logger("sstunnel")

# argparse dest -> CONFIG key
_CLI_KEYS = {
    "server": "SERVER_HOST",
    "server_port": "SERVER_PORT",
    "local_address": "LOCAL_HOST",
    "local_port": "LOCAL_PORT",
    "password": "PASSWORD",
    "method": "METHOD",
    "timeout": "TIMEOUT",
}

_active_listener: Optional[TcpListener] = None


def signal_handler(signum, frame):
    """Handle interrupt signals gracefully."""
    logger.info("Received interrupt signal. Shutting down...", extra={"signal": signum})
    if _active_listener is not None:
        _active_listener.stop()
    sys.exit(0)


def build_config(args: argparse.Namespace) -> ProxyConfig:
    """Merge defaults, config file and CLI options into one immutable snapshot."""
    cfg: Dict[str, Any] = dict(CONFIG)
    if getattr(args, "config", None):
        cfg = load_config_file(args.config, base=cfg)
    for dest, key in _CLI_KEYS.items():
        value = getattr(args, dest, None)
        if value is not None:
            cfg[key] = value
    if getattr(args, "auth", False):
        cfg["ONE_TIME_AUTH"] = True
    cfg["SERVER_MODE"] = args.command == "server"
    return ProxyConfig.from_mapping(cfg)


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", help="JSON config file")
    parser.add_argument("-k", "--password", help="Shared password")
    parser.add_argument("-m", "--method", help=f"Cipher method ({', '.join(list_methods())})")
    parser.add_argument("-t", "--timeout", type=int, help="Idle timeout in seconds")
    parser.add_argument("-a", "--auth", action="store_true", help="Enable one-time auth on every chunk")
    parser.add_argument("--log-file", action="store_true", help="Also write JSON logs under logs/")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Suppress informational logs (warnings/errors still shown)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logs")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sstunnel", description="Encrypted TCP tunnel (local/server)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    local_parser = subparsers.add_parser("local", help="Start SOCKS5 local end")
    _add_common_options(local_parser)
    local_parser.add_argument("-s", "--server", help="Server address")
    local_parser.add_argument("-p", "--server-port", type=int, help="Server port")
    local_parser.add_argument("-b", "--local-address", help="Local bind address")
    local_parser.add_argument("-l", "--local-port", type=int, help="Local bind port")

    server_parser = subparsers.add_parser("server", help="Start server end")
    _add_common_options(server_parser)
    server_parser.add_argument("-s", "--server", help="Bind address")
    server_parser.add_argument("-p", "--server-port", type=int, help="Bind port")

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint with subcommands."""
    global _active_listener

    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    set_verbosity(logger, quiet=args.quiet, verbose=args.verbose)

    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    tag_role(config.role, logger)
    if args.log_file:
        path = configure_file_logger(config.role, logger)
        logger.info(f"Logging to {path}", extra={"role": config.role})

    logger.info("Current config", extra=config.describe())

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    _active_listener = TcpListener(config)
    try:
        _active_listener.serve_forever()
    except OSError as exc:
        logger.error(f"Cannot listen on {config.listen_address}: {exc}", extra={"role": config.role})
        return 1
    finally:
        _active_listener = None
    return 0


if __name__ == "__main__":
    sys.exit(main())
