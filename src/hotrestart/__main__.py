"""
=============================================================================
HOTRESTART CLI ENTRY POINT
=============================================================================

Runs one of the demo handlers behind graceful-restart listeners.

=============================================================================
USAGE
=============================================================================

    # Echo server on the default address (127.0.0.1:8080)
    python -m hotrestart

    # HTTP on two ports
    python -m hotrestart --handler http --listen :8080,:8081

    # Plus TLS
    python -m hotrestart --handler http --listen :8080 \\
        --tls-listen :8443 --cert-file cert.pem --key-file key.pem

    # The new process retires the old one as soon as it's ready
    python -m hotrestart --handoff immediate

Then, from another terminal:

    kill -HUP <pid>      # start a replacement
    kill -TERM <pid>     # retire the old process

=============================================================================
RESTART ARGUMENTS
=============================================================================

A replacement process is started with this very command line plus
--graceful, --socketorder and --readyfd. They're accepted here so that
argparse doesn't reject them, but hidden from --help: nobody should pass
them by hand.

=============================================================================
"""

import argparse
import logging
import sys

from . import __version__
from .config import GraceConfig, HandoffMode, split_addresses
from .errors import GraceError
from .fork import READY_FD_FLAG, RESTART_MARKER, SOCKET_ORDER_FLAG, RestartArgs
from .handlers import EchoHandler, HelloHTTPHandler
from .supervisor import Supervisor, setup_logging


logger = logging.getLogger("hotrestart")

HANDLERS = {
    "echo": EchoHandler,
    "http": HelloHTTPHandler,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hotrestart",
        description="Serve connections with zero-downtime restarts on SIGHUP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m hotrestart                               # Echo on 127.0.0.1:8080
  python -m hotrestart --handler http --listen :80   # HTTP on all interfaces
  python -m hotrestart --drain-timeout 5             # Give up on clients after 5s
  python -m hotrestart --handoff immediate           # Child retires the parent
        """
    )

    # ─────────────────────────────────────────────────────────────────────
    # LISTENERS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--listen", "-L",
        default=None,
        help="Comma-separated TCP addresses (default: $GRACE_LISTEN or 127.0.0.1:8080)"
    )

    parser.add_argument(
        "--tls-listen",
        default=None,
        help="Comma-separated TLS addresses (needs --cert-file and --key-file)"
    )

    parser.add_argument("--cert-file", default=None, help="PEM certificate for TLS")
    parser.add_argument("--key-file", default=None, help="PEM private key for TLS")

    # ─────────────────────────────────────────────────────────────────────
    # RESTART / SHUTDOWN
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=None,
        help="Seconds to wait for open connections on shutdown, negative waits forever (default: 60)"
    )

    parser.add_argument(
        "--handoff",
        choices=[mode.value for mode in HandoffMode],
        default=None,
        help="graceful: old process waits for SIGTERM; immediate: new process sends it (default: graceful)"
    )

    # ─────────────────────────────────────────────────────────────────────
    # APPLICATION
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--handler",
        choices=sorted(HANDLERS),
        default="echo",
        help="Demo connection handler (default: echo)"
    )

    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"hotrestart {__version__}"
    )

    # ─────────────────────────────────────────────────────────────────────
    # RESTART ARGUMENTS (set by the parent process only)
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(RESTART_MARKER, action="store_true", help=argparse.SUPPRESS)
    parser.add_argument(SOCKET_ORDER_FLAG, default=None, help=argparse.SUPPRESS)
    parser.add_argument(READY_FD_FLAG, default=None, help=argparse.SUPPRESS)

    return parser


def build_config(args: argparse.Namespace) -> GraceConfig:
    """Environment first, then whatever was given on the command line."""
    config = GraceConfig.from_env()

    if args.listen is not None:
        config.addresses = split_addresses(args.listen)
    if args.tls_listen is not None:
        config.tls_addresses = split_addresses(args.tls_listen)
    if args.cert_file:
        config.cert_file = args.cert_file
    if args.key_file:
        config.key_file = args.key_file
    if args.drain_timeout is not None:
        config.drain_timeout = args.drain_timeout
    if args.handoff:
        config.handoff = HandoffMode(args.handoff)
    if args.log_level:
        config.log_level = args.log_level

    return config


def main(argv=None):
    """
    Main CLI entry point.

    Exits with status 1 if the configuration is invalid or a listener
    can't be acquired. Nothing is served in that case.
    """
    argv = sys.argv[1:] if argv is None else argv
    args = build_parser().parse_args(argv)

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.log_level)

    try:
        supervisor = Supervisor(config, restart_args=RestartArgs.parse(argv))
        supervisor.add_configured_servers(HANDLERS[args.handler]())
        supervisor.run()
    except (GraceError, ValueError) as e:
        logger.critical(f"Cannot start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
