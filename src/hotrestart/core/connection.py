"""
=============================================================================
CONNECTION WRAPPER
=============================================================================

Wraps one accepted client socket and ties its lifetime to the owning
server's drain counter.

=============================================================================
WHY WRAP THE SOCKET AT ALL?
=============================================================================

During a graceful shutdown the server has to know how much work is still
in flight. The only reliable place to count that is the socket itself:

    ┌─────────────────────────────────────────────────────────────────┐
    │                    Connection Lifetime                           │
    ├─────────────────────────────────────────────────────────────────┤
    │                                                                  │
    │   listener.accept()                                              │
    │        │                                                         │
    │        ├──► drain.add()        ← counted BEFORE the caller       │
    │        │                         ever sees the connection        │
    │        ▼                                                         │
    │   handler(conn)                ← any number of recv/send         │
    │        │                                                         │
    │        ▼                                                         │
    │   conn.close()                                                   │
    │        │                                                         │
    │        └──► drain.done()       ← exactly once, even if close()   │
    │                                  is called again or from two     │
    │                                  threads at the same time        │
    │                                                                  │
    └─────────────────────────────────────────────────────────────────┘

Everything else (recv, sendall, settimeout, getpeername, ...) is passed
straight through to the underlying socket, so handlers can treat a
GraceConnection as if it were the socket.

=============================================================================
CONNECTION STATES
=============================================================================

    OPEN ──────► CLOSING ──────► CLOSED

There is no way back. A closed connection never decrements the counter
again.

=============================================================================
"""

import socket
import ssl
import time
import logging
import threading
from enum import Enum
from dataclasses import dataclass, field
import uuid

from .drain import DrainCounter


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states."""
    OPEN = "open"          # Accepted and counted
    CLOSING = "closing"    # close() in progress
    CLOSED = "closed"      # Socket released, counter decremented


@dataclass(eq=False)
class GraceConnection:
    """
    An accepted connection counted against its server's drain counter.

    Attributes:
        socket: The client socket (an SSLSocket after start_tls()).
        address: Peer address tuple as returned by accept().
        drain: Counter of the server that accepted this connection.
        id: Short identifier for log lines.
        state: Current connection state.
        created_at: Timestamp when the connection was accepted.
        linger: Seconds to spend draining unread client data on close.
    """

    # Required parameters
    socket: socket.socket
    address: tuple
    drain: DrainCounter

    # Generated/default parameters
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.OPEN
    created_at: float = field(default_factory=time.time)
    linger: float = 0.5

    _close_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # =========================================================================
    # PASS-THROUGH: Everything we don't define goes to the socket
    # =========================================================================

    def __getattr__(self, name):
        # Only called for attributes missing on the wrapper itself.
        if name in ("socket", "__setstate__"):
            raise AttributeError(name)
        return getattr(self.socket, name)

    @property
    def client_ip(self) -> str:
        """Get the client IP address."""
        return self.address[0]

    @property
    def age(self) -> float:
        """Get connection age in seconds."""
        return time.time() - self.created_at

    @property
    def closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def start_tls(self, context: ssl.SSLContext):
        """
        Upgrade to TLS, performing the server-side handshake.

        Runs on the connection's own thread so a slow client can't hold
        up the accept loop. Handshake failures propagate as ssl.SSLError
        and the caller closes the connection as usual.
        """
        self.socket = context.wrap_socket(self.socket, server_side=True)

    # =========================================================================
    # CLOSING: Release the socket and the drain slot, once
    # =========================================================================

    def close(self):
        """
        Close the connection and decrement the drain counter.

        Same TCP close sequence as a plain server:

            1. shutdown(SHUT_WR)   send FIN, we're done writing
            2. drain               read what the client still sent
            3. close()             release the descriptor

        Only the first call does any of this. Later calls return
        immediately, and the counter is decremented exactly once.
        """
        with self._close_lock:
            if self.state != ConnectionState.OPEN:
                return
            self.state = ConnectionState.CLOSING

        try:
            try:
                self.socket.shutdown(socket.SHUT_WR)
            except OSError:
                pass  # Peer already gone

            if self.linger > 0:
                # One deadline for the whole drain, however much the client sends
                deadline = time.monotonic() + self.linger
                try:
                    while True:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            break
                        self.socket.settimeout(remaining)
                        if not self.socket.recv(1024):
                            break
                except OSError:
                    pass  # socket.timeout is an OSError too

            try:
                self.socket.close()
            except OSError:
                pass
        finally:
            self.state = ConnectionState.CLOSED
            self.drain.done()
            logger.debug(f"[{self.id}] Connection closed after {self.age:.3f}s")

    # =========================================================================
    # CONTEXT MANAGER: For use with 'with' statement
    # =========================================================================

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensure connection is closed."""
        self.close()
        return False  # Don't suppress exceptions
