"""
=============================================================================
LISTENER SHIM
=============================================================================

Wraps one listening TCP socket so that the rest of the system can:

    1. COUNT   every accepted connection against a DrainCounter
    2. STOP    accepting with a close() that is safe to race with accept()
    3. EXPORT  the raw descriptor to a replacement process

=============================================================================
SOCKET LIFECYCLE (Server Side)
=============================================================================

    Fresh process                      Forked child
    ─────────────                      ────────────
    socket()                           socket(fileno=3 + offset)
    setsockopt(SO_REUSEADDR)             └─ the kernel object is the SAME
    bind()                                  one the parent is listening on,
    listen()                                 nothing is re-bound
        │                                        │
        └──────────────────┬─────────────────────┘
                           ▼
                   GraceListener(sock)
                           │
                 accept() / close() / export_descriptor()

Because the child gets the very same kernel socket, connections queued in
the backlog while the parent is shutting down are picked up by the child.
That's what makes the restart lossless.

=============================================================================
THE CLOSE HANDSHAKE
=============================================================================

close() doesn't touch the socket itself. It hands a request to a small
background thread that owns the shutdown of this listener and waits for
its answer:

    caller                         closer thread
    ──────                         ─────────────
    close()                        (blocked on stop queue)
      │── request ───────────────►   │
      │                              ├─ mark stopped
      │                              ├─ socket.close()
      │◄─────────────── result ──────┘
    return / raise

The caller therefore never returns before the descriptor is really gone,
and a second close() fails fast with InvalidOperation instead of waiting
on a thread that already exited.

We deliberately never call shutdown() on the listening socket. The kernel
object may be shared with a child process, and shutdown() would stop the
child from accepting too. close() only drops this process's reference.

=============================================================================
WAKING UP accept()
=============================================================================

Closing a socket from another thread does not interrupt a blocking
accept() on every platform. Like a plain select-free server we give
accept() a short timeout and re-check the stopped flag on every tick:

    while True:
        if stopped: raise ListenerClosed
        try:
            accept()          ← waits at most poll_interval
        except timeout:
            continue

=============================================================================
"""

import os
import queue
import socket
import logging
import threading
from typing import Optional, Tuple

from ..errors import ListenerError, ListenerClosed, InvalidOperation
from .connection import GraceConnection
from .drain import DrainCounter


logger = logging.getLogger(__name__)

# Default TCP keepalive period for accepted connections (3 minutes).
DEFAULT_KEEPALIVE_PERIOD = 180.0


def parse_address(address: str) -> Tuple[int, str, int]:
    """
    Split a listen address into (family, host, port).

    Accepted forms:
        ":8080"            all IPv4 interfaces
        "127.0.0.1:8080"   one IPv4 interface
        "localhost:8080"   resolved by bind()
        "[::1]:8080"       IPv6

    Raises:
        ValueError: If the address has no port or the port is invalid.
    """
    if address.startswith("["):
        host, sep, port = address[1:].partition("]:")
        if not sep:
            raise ValueError(f"Invalid IPv6 listen address: {address!r}")
        family = socket.AF_INET6
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise ValueError(f"Listen address needs a port: {address!r}")
        family = socket.AF_INET

    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in listen address: {address!r}") from None
    if not 0 <= port_number < 65536:
        raise ValueError(f"Port out of range in listen address: {address!r}")

    return family, host, port_number


def open_listener(address: str, backlog: int = 128) -> socket.socket:
    """
    Create, bind and listen on a fresh socket.

    Raises:
        ListenerError: If the address is invalid or can't be bound.
    """
    try:
        family, host, port = parse_address(address)
    except ValueError as e:
        raise ListenerError(str(e), address) from e

    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        # SO_REUSEADDR: bind again right away after a restart, even while
        # old connections sit in TIME_WAIT
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise ListenerError(f"Failed to listen on {address}: {e}", address) from e

    return sock


def inherit_listener(fd: int, address: str) -> socket.socket:
    """
    Adopt a listening socket inherited from the parent process.

    Raises:
        ListenerError: If fd isn't an open, listening stream socket.
    """
    try:
        sock = socket.socket(fileno=fd)
    except OSError as e:
        raise ListenerError(
            f"No inherited listener at fd {fd} for {address}: {e}", address
        ) from e

    if sock.type != socket.SOCK_STREAM or not _is_listening(sock):
        sock.detach()  # Not ours to close
        raise ListenerError(
            f"Inherited fd {fd} for {address} is not a listening stream socket",
            address,
        )

    # Later restarts hand this on through export_descriptor() only
    sock.set_inheritable(False)
    return sock


def _is_listening(sock: socket.socket) -> bool:
    if not hasattr(socket, "SO_ACCEPTCONN"):
        return True  # Can't tell on this platform
    try:
        return bool(sock.getsockopt(socket.SOL_SOCKET, socket.SO_ACCEPTCONN))
    except OSError:
        return False


class GraceListener:
    """
    Listening socket that counts connections and closes exactly once.

    Usage:
        listener = GraceListener(open_listener(":8080"), DrainCounter())
        conn = listener.accept()        # counted
        ...
        listener.close()                # stops accept(), first call only
        listener.close()                # raises InvalidOperation
    """

    def __init__(
        self,
        sock: socket.socket,
        drain: DrainCounter,
        keepalive_period: float = DEFAULT_KEEPALIVE_PERIOD,
        connection_timeout: Optional[float] = None,
        poll_interval: float = 0.5,
        linger: float = 0.5,
    ):
        """
        Args:
            sock: A bound, listening socket. The listener takes ownership.
            drain: Counter every accepted connection is registered with.
            keepalive_period: TCP keepalive idle time for accepted sockets.
            connection_timeout: Read/write timeout for accepted sockets.
                                None leaves them blocking.
            poll_interval: How often a blocked accept() re-checks for close.
            linger: Passed to every GraceConnection.
        """
        self._socket = sock
        self.drain = drain
        self.keepalive_period = keepalive_period
        self.connection_timeout = connection_timeout
        self.linger = linger

        self._socket.settimeout(poll_interval)
        self._address = sock.getsockname()

        self._lock = threading.Lock()
        self._close_requested = False
        self._stopped = threading.Event()

        # Close handshake: one request in, one result out
        self._stop_requests: queue.Queue = queue.Queue(maxsize=1)
        self._stop_results: queue.Queue = queue.Queue(maxsize=1)
        self._closer = threading.Thread(
            target=self._close_when_asked,
            name=f"listener-closer-{self._address[1]}",
            daemon=True,
        )
        self._closer.start()

    @property
    def address(self):
        """The locally bound (host, port, ...) tuple."""
        return self._address

    @property
    def closed(self) -> bool:
        return self._stopped.is_set()

    def fileno(self) -> int:
        return self._socket.fileno()

    # =========================================================================
    # ACCEPT
    # =========================================================================

    def accept(self) -> GraceConnection:
        """
        Wait for the next connection.

        The connection is added to the drain counter before it is returned,
        so a shutdown that starts right after this call still waits for it.

        Raises:
            ListenerClosed: The listener was closed while (or before) waiting.
            OSError: Any other accept failure. The caller decides whether
                     to back off and retry.
        """
        while True:
            if self._stopped.is_set():
                raise ListenerClosed("listener closed")

            try:
                client, address = self._socket.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stopped.is_set():
                    raise ListenerClosed("listener closed") from None
                raise

            self.drain.add()
            try:
                self._tune(client)
            except OSError as e:
                logger.debug(f"Could not tune connection from {address}: {e}")

            return GraceConnection(
                socket=client,
                address=address,
                drain=self.drain,
                linger=self.linger,
            )

    def _tune(self, client: socket.socket):
        """Keepalive, no Nagle, per-connection timeout."""
        client.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        idle = max(1, int(self.keepalive_period))
        if hasattr(socket, "TCP_KEEPIDLE"):
            client.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle)
            client.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, idle)
        elif hasattr(socket, "TCP_KEEPALIVE"):
            # macOS spells TCP_KEEPIDLE differently
            client.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, idle)

        if client.family in (socket.AF_INET, socket.AF_INET6):
            client.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        client.settimeout(self.connection_timeout)

    # =========================================================================
    # CLOSE
    # =========================================================================

    def close(self):
        """
        Stop accepting and release the socket.

        Blocks until the closer thread reports that the descriptor is
        closed.

        Raises:
            InvalidOperation: On every call after the first.
            OSError: If closing the socket failed.
        """
        with self._lock:
            if self._close_requested:
                raise InvalidOperation("listener already closed")
            self._close_requested = True

        self._stop_requests.put(None)
        error = self._stop_results.get()
        if error is not None:
            raise error

    def _close_when_asked(self):
        self._stop_requests.get()
        self._stopped.set()
        try:
            self._socket.close()
        except OSError as e:
            self._stop_results.put(e)
            return
        self._stop_results.put(None)

    # =========================================================================
    # EXPORT
    # =========================================================================

    def export_descriptor(self) -> int:
        """
        Return a duplicate of the listening descriptor for a child process.

        The duplicate has close-on-exec cleared. The caller owns it and
        must close it once the child has been launched.

        Raises:
            ListenerClosed: If the listener has already been closed.
        """
        if self._stopped.is_set():
            raise ListenerClosed("cannot export a closed listener")
        fd = os.dup(self._socket.fileno())
        os.set_inheritable(fd, True)
        return fd
