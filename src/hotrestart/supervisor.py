"""
=============================================================================
PROCESS SUPERVISOR
=============================================================================

Runs every GraceServer in the process and the machinery they share.

=============================================================================
STARTUP ORDER
=============================================================================

    1. register      one GraceServer per address (offsets fixed here)
    2. listen        every server acquires its listener
                     ── any failure: release what we got, raise ──
    3. signals       install handlers, start the dispatcher thread
    4. announce      child only: write readiness byte,
                     IMMEDIATE mode: SIGTERM the parent
    5. serve         one thread per server, main thread joins them
    6. stop          dispatcher stopped, handlers restored

Signals are installed only after every listener is held, so a process
that can't start never swallows a SIGHUP or SIGTERM meant for someone
else, and a parent never hears from a child that couldn't bind.

=============================================================================
"""

import os
import sys
import logging
import threading
from dataclasses import replace
from typing import List, Optional, Sequence

from .config import GraceConfig, HandoffMode
from .errors import ListenerError
from .fork import ForkCoordinator, RestartArgs, notify_ready, terminate_parent
from .registry import Protocol, ServerRegistry
from .server import GraceServer, Handler
from .signals import DEFAULT_SIGNALS, SignalDispatcher


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s[%(process)d]: %(message)s"


def setup_logging(level: str = "INFO"):
    """Configure logging based on config."""
    numeric = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    logging.getLogger("hotrestart").setLevel(numeric)


class Supervisor:
    """
    Owns the registry, the fork coordinator and the signal dispatcher, and
    runs a set of servers until all of them have drained.

    Usage:
        supervisor = Supervisor(config)
        supervisor.add_server(":8080", handler)
        supervisor.add_server(":8443", handler, Protocol.TLS)
        supervisor.run()     # blocks
    """

    def __init__(
        self,
        config: Optional[GraceConfig] = None,
        restart_args: Optional[RestartArgs] = None,
        command: Optional[Sequence[str]] = None,
        signals: Sequence[int] = DEFAULT_SIGNALS,
    ):
        """
        Args:
            config: Process configuration. Validated here.
            restart_args: Restart arguments. Parsed from sys.argv if None.
            command: Command line for the replacement process.
            signals: Signals the dispatcher listens for.

        Raises:
            ValueError: If the configuration is invalid.
            DescriptorMismatch: If the restart arguments are malformed.
        """
        self.config = config or GraceConfig()
        self.config.validate()

        self.restart_args = restart_args if restart_args is not None else RestartArgs.parse(sys.argv)
        self.registry = ServerRegistry(
            self.restart_args.socket_order, inherited=self.restart_args.is_child
        )
        self.forker = ForkCoordinator(
            self.registry, command=command, ready_timeout=self.config.ready_timeout
        )
        self.dispatcher = SignalDispatcher(signals)

    @property
    def is_child(self) -> bool:
        return self.restart_args.is_child

    @property
    def servers(self) -> List[GraceServer]:
        return self.registry.servers

    def add_server(
        self,
        address: str,
        handler: Handler,
        protocol: Protocol = Protocol.TCP,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
    ) -> GraceServer:
        """Create and register a server. TLS defaults to the configured cert."""
        if protocol is Protocol.TLS:
            cert_file = cert_file or self.config.cert_file
            key_file = key_file or self.config.key_file
        return GraceServer(
            address,
            handler,
            self.registry,
            self.forker,
            config=self.config,
            protocol=protocol,
            cert_file=cert_file,
            key_file=key_file,
        )

    def add_configured_servers(self, handler: Handler) -> List[GraceServer]:
        """One server per configured address, plain ones first."""
        servers = [self.add_server(a, handler) for a in self.config.addresses]
        servers += [self.add_server(a, handler, Protocol.TLS) for a in self.config.tls_addresses]
        return servers

    # =========================================================================
    # STARTUP
    # =========================================================================

    def listen(self):
        """
        Acquire every listener, or none.

        Raises:
            ListenerError: The first bind/inherit failure. Listeners that
                           were already acquired are released first.
        """
        self.registry.check_complete()

        acquired: List[GraceServer] = []
        try:
            for server in self.servers:
                server.listen()
                acquired.append(server)
        except ListenerError:
            for server in acquired:
                server.close_listener()
            raise

    def announce(self):
        """Tell the parent this child is ready, and retire it in IMMEDIATE mode."""
        if not self.is_child:
            return

        if self.restart_args.ready_fd is not None:
            notify_ready(self.restart_args.ready_fd)

        if self.config.handoff is HandoffMode.IMMEDIATE:
            terminate_parent(self.restart_args.parent_pid)

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self, install_signals: bool = True):
        """
        Listen, serve and block until every server has drained.

        Args:
            install_signals: Install OS signal handlers (main thread only).

        Raises:
            ListenerError: If any listener can't be acquired. Nothing has
                           been served and no signal handler installed.
        """
        if not self.servers:
            raise ValueError("No servers registered")

        self.listen()

        for server in self.servers:
            self.dispatcher.subscribe(server)
        self.dispatcher.start(install=install_signals)

        self.announce()

        logger.info(
            f"{os.getpid()} Serving {', '.join(self.registry.addresses)}"
            f"{' (restarted)' if self.is_child else ''}"
        )

        try:
            threads = []
            for server in self.servers:
                thread = threading.Thread(
                    target=server.serve, name=f"serve-{server.address}", daemon=True
                )
                thread.start()
                threads.append(thread)

            # Join with a timeout so the main thread keeps running signal handlers
            for thread in threads:
                while thread.is_alive():
                    thread.join(0.5)
        finally:
            self.dispatcher.stop()

        logger.info(f"{os.getpid()} Exiting.")

    def shutdown(self):
        """Shut every server down, as if SIGTERM had been received."""
        for server in self.servers:
            server.shutdown()

    def restart(self) -> Optional[int]:
        """Fork the replacement process, as if SIGHUP had been received."""
        return self.forker.fork()


def _serve(config: GraceConfig, handler: Handler, protocol: Protocol, **tls):
    supervisor = Supervisor(config)
    address = config.tls_addresses[0] if protocol is Protocol.TLS else config.addresses[0]
    supervisor.add_server(address, handler, protocol, **tls)
    supervisor.run()
    return supervisor


def listen_and_serve(address: str, handler: Handler, config: Optional[GraceConfig] = None):
    """Serve a single plain TCP address with graceful restart support."""
    config = replace(config or GraceConfig(), addresses=[address], tls_addresses=[])
    return _serve(config, handler, Protocol.TCP)


def listen_and_serve_tls(
    address: str,
    cert_file: str,
    key_file: str,
    handler: Handler,
    config: Optional[GraceConfig] = None,
):
    """Serve a single TLS address with graceful restart support."""
    config = replace(
        config or GraceConfig(),
        addresses=[],
        tls_addresses=[address],
        cert_file=cert_file,
        key_file=key_file,
    )
    return _serve(config, handler, Protocol.TLS, cert_file=cert_file, key_file=key_file)
