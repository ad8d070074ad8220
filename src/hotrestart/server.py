"""
=============================================================================
GRACEFUL SERVER
=============================================================================

One GraceServer serves one listening address. It owns:

    - a GraceListener    (fresh or inherited, TCP or TLS)
    - a DrainCounter     (connections accepted but not yet closed)
    - a SignalHandler    (lifecycle state + hooks)

and shares the process-wide ServerRegistry and ForkCoordinator with every
other server in the process.

=============================================================================
LIFECYCLE
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   GraceServer(...)       registered, offset assigned                │
    │        │                                                             │
    │        ▼                                                             │
    │   listen()               bind fresh / adopt fd 3 + offset           │
    │        │                 (failure here is process-fatal)            │
    │        ▼                                                             │
    │   serve()                accept loop, one thread per connection     │
    │        │                                                             │
    │        │    SIGTERM ──► shutdown():                                 │
    │        │                  state → SHUTTING_DOWN                     │
    │        │                  start drain timer                         │
    │        │                  listener.close()                          │
    │        │                                                             │
    │        ├──► accept() raises ListenerClosed, loop ends               │
    │        ├──► drain.wait()   all connections closed, or timer fired   │
    │        ▼                                                             │
    │   TERMINATED             serve() returns                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

import os
import ssl
import time
import logging
import threading
from typing import Callable, Optional

from .config import GraceConfig
from .core.connection import GraceConnection
from .core.drain import DrainCounter
from .core.listener import GraceListener, open_listener, inherit_listener
from .errors import InvalidOperation, ListenerClosed, ListenerError
from .fork import LISTEN_FDS_START
from .registry import ListenerEntry, Protocol
from .signals import HookPhase, ServerState, SignalHandler


logger = logging.getLogger(__name__)

# Accept error backoff bounds, in seconds
_MIN_ACCEPT_DELAY = 0.005
_MAX_ACCEPT_DELAY = 1.0

Handler = Callable[[GraceConnection], None]


def build_tls_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """
    Server-side TLS context advertising HTTP/1.1 over ALPN.

    Raises:
        ListenerError: If the certificate or key can't be loaded.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(cert_file, key_file)
    except (OSError, ssl.SSLError) as e:
        raise ListenerError(f"Failed to load TLS certificate {cert_file}: {e}") from e
    context.set_alpn_protocols(["http/1.1"])
    return context


class GraceServer:
    """
    A server for one address that can be restarted without dropping
    connections.

    Usage:
        registry = ServerRegistry()
        forker = ForkCoordinator(registry)
        server = GraceServer(":8080", handler, registry, forker)
        server.listen()
        server.serve()       # blocks until shut down and drained
    """

    def __init__(
        self,
        address: str,
        handler: Handler,
        registry,
        forker,
        config: Optional[GraceConfig] = None,
        protocol: Protocol = Protocol.TCP,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
    ):
        """
        Args:
            address: Listen address, e.g. ":8080" or "[::1]:8443".
            handler: Called with each accepted connection on its own thread.
            registry: Process-wide ServerRegistry.
            forker: Process-wide ForkCoordinator.
            config: Timeouts and socket tuning.
            protocol: TCP or TLS.
            cert_file: PEM certificate, TLS only.
            key_file: PEM private key, TLS only.

        Raises:
            ValueError: If the address is already registered, or TLS is
                        requested without a certificate and key.
            DescriptorMismatch: If a forked child has no descriptor for
                                this address.
        """
        if protocol is Protocol.TLS and not (cert_file and key_file):
            raise ValueError(f"TLS server {address} needs a cert_file and key_file")

        self.address = address
        self.handler = handler
        self.protocol = protocol
        self.cert_file = cert_file
        self.key_file = key_file
        self.config = config or GraceConfig()
        self.registry = registry
        self.forker = forker

        self.drain = DrainCounter()
        self.listener: Optional[GraceListener] = None

        self._tls_context: Optional[ssl.SSLContext] = None
        self._signals = SignalHandler(
            on_restart=self.fork, on_shutdown=self.shutdown, name=address
        )
        self._drain_timer: Optional[threading.Timer] = None
        self._finished = threading.Event()

        self.offset = registry.register(self)

    # =========================================================================
    # STATE AND HOOKS
    # =========================================================================

    @property
    def state(self) -> ServerState:
        return self._signals.state

    @property
    def is_child(self) -> bool:
        return self.registry.inherited

    def add_hook(self, phase: HookPhase, signum: int, hook: Callable[[], None]):
        """Run hook before (PRE) or after (POST) the built-in signal handling."""
        self._signals.hooks.add(phase, signum, hook)

    def handle_signal(self, signum: int):
        """Entry point for the signal dispatcher."""
        self._signals.handle(signum)

    def listener_entry(self) -> ListenerEntry:
        if self.listener is None:
            raise ListenerClosed(f"{self.address} is not listening")
        return ListenerEntry(self.address, self.protocol, self.listener)

    # =========================================================================
    # LISTEN
    # =========================================================================

    def listen(self):
        """
        Acquire the listening socket.

        A fresh process binds the address. A forked child adopts the
        descriptor at 3 + offset instead and never binds.

        Raises:
            ListenerError: If binding, inheriting or loading TLS fails.
        """
        if self.protocol is Protocol.TLS:
            self._tls_context = build_tls_context(self.cert_file, self.key_file)

        if self.is_child:
            fd = LISTEN_FDS_START + self.offset
            sock = inherit_listener(fd, self.address)
            source = f"inherited fd {fd}"
        else:
            sock = open_listener(self.address, self.config.backlog)
            source = "bound"

        self.listener = GraceListener(
            sock,
            self.drain,
            keepalive_period=self.config.keepalive_period,
            connection_timeout=self.config.connection_timeout,
            poll_interval=self.config.accept_poll_interval,
            linger=self.config.linger,
        )
        logger.info(
            f"{os.getpid()} Serving {self.protocol.value} on {self.address} ({source})"
        )

    def close_listener(self):
        """Release the listener without draining. Used when startup fails."""
        if self.listener is None:
            return
        try:
            self.listener.close()
        except InvalidOperation:
            pass

    # =========================================================================
    # SERVE
    # =========================================================================

    def serve(self):
        """
        Accept connections until shut down, then wait for them to drain.

        Blocks. Returns once every accepted connection has closed, or the
        drain timeout gave up on the rest.
        """
        if self.listener is None:
            self.listen()

        delay = 0.0
        while True:
            try:
                conn = self.listener.accept()
            except ListenerClosed:
                break
            except OSError as e:
                # Transient (EMFILE, ECONNABORTED, ...): back off and retry
                delay = _MIN_ACCEPT_DELAY if not delay else min(delay * 2, _MAX_ACCEPT_DELAY)
                logger.error(f"{os.getpid()} Accept error on {self.address}: {e}; retrying in {delay}s")
                time.sleep(delay)
                continue

            delay = 0.0
            logger.debug(f"[{conn.id}] Accepted {conn.client_ip} on {self.address}")
            worker = threading.Thread(
                target=self._handle_connection,
                args=(conn,),
                name=f"conn-{conn.id}",
                daemon=True,
            )
            worker.start()

        logger.info(
            f"{os.getpid()} Waiting for {self.drain.count} connection(s) on {self.address} to finish..."
        )
        self.drain.wait()

        if self._drain_timer is not None:
            self._drain_timer.cancel()
        self._signals.advance(ServerState.TERMINATED)
        self._finished.set()

        logger.info(f"{os.getpid()} Serve loop on {self.address} shut down")

    def _handle_connection(self, conn: GraceConnection):
        with conn:
            try:
                if self._tls_context is not None:
                    conn.start_tls(self._tls_context)
                self.handler(conn)
            except ssl.SSLError as e:
                logger.warning(f"[{conn.id}] TLS error with {conn.client_ip}: {e}")
            except OSError as e:
                logger.warning(f"[{conn.id}] Connection error: {e}")
            except Exception:
                logger.exception(f"[{conn.id}] Handler failed")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until serve() has returned."""
        return self._finished.wait(timeout)

    # =========================================================================
    # RESTART AND SHUTDOWN
    # =========================================================================

    def fork(self) -> Optional[int]:
        """Launch the replacement process (at most once per process)."""
        return self.forker.fork()

    def shutdown(self) -> bool:
        """
        Stop accepting and start draining.

        Only the first call does anything. Returns True if this call
        started the shutdown.
        """
        if not self._signals.advance(ServerState.SHUTTING_DOWN, expected=ServerState.RUNNING):
            return False

        pid = os.getpid()
        if self.config.drain_enabled:
            self._drain_timer = threading.Timer(self.config.drain_timeout, self._force_release)
            self._drain_timer.daemon = True
            self._drain_timer.start()

        if self.listener is None:
            return True

        try:
            self.listener.close()
        except InvalidOperation:
            pass
        except OSError as e:
            logger.error(f"{pid} Listener close on {self.address} failed: {e}")
        else:
            logger.info(f"{pid} {self.address} Listener closed.")
        return True

    def _force_release(self):
        if self.state is not ServerState.SHUTTING_DOWN:
            return
        logger.warning(
            f"{os.getpid()} Drain timeout on {self.address}, "
            f"giving up on {self.drain.count} connection(s)"
        )
        self.drain.force_complete()
