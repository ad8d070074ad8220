"""
=============================================================================
HOTRESTART - Zero-Downtime Restarts for Listening Servers
=============================================================================

Send SIGHUP to a running server and it starts a fresh copy of itself that
inherits the open listening sockets. The old process stops accepting,
finishes the connections it already has and exits. Clients never see a
refused connection.

=============================================================================
HOW A RESTART PLAYS OUT
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   old process (pid 100)                new process (pid 200)        │
    │   ─────────────────────                ─────────────────────        │
    │   serving :8080, :8443                                              │
    │        │                                                             │
    │   SIGHUP ──► fork + exec ─────────────► python app.py --graceful   │
    │        │     fds 3, 4 = listeners           --socketorder=...      │
    │        │                                     │                       │
    │        │                                adopt fd 3, fd 4            │
    │        │     ◄──────── ready ───────────     │                       │
    │        │                                serving :8080, :8443        │
    │   SIGTERM                                    │                       │
    │        │  (from ops, or from pid 200                                │
    │        │   in IMMEDIATE handoff mode)                               │
    │        ▼                                                             │
    │   close listeners, drain, exit                                      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Both processes accept from the same kernel socket in the overlap, so a
connection is always picked up by one of them.

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    hotrestart/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m hotrestart)
    ├── config.py            # GraceConfig dataclass
    ├── errors.py            # Exception types
    ├── registry.py          # Servers and their descriptor offsets
    ├── signals.py           # Signal dispatch, lifecycle state, hooks
    ├── fork.py              # Launching the replacement process
    ├── server.py            # GraceServer: listen / serve / shutdown
    ├── supervisor.py        # Runs all servers of one process
    ├── handlers.py          # Demo echo and HTTP handlers
    └── core/                # Low-level components
        ├── drain.py         # Outstanding-connection counter
        ├── connection.py    # Counted connection wrapper
        └── listener.py      # Counting, single-close listener

=============================================================================
QUICK START
=============================================================================

    from hotrestart import listen_and_serve

    def handler(conn):
        data = conn.recv(1024)
        conn.sendall(data)

    listen_and_serve(":8080", handler)

Several addresses in one process:

    from hotrestart import Supervisor, GraceConfig, Protocol

    supervisor = Supervisor(GraceConfig(drain_timeout=30))
    supervisor.add_server(":8080", handler)
    supervisor.add_server(":8443", handler, Protocol.TLS,
                          cert_file="cert.pem", key_file="key.pem")
    supervisor.run()

=============================================================================
"""

__version__ = "1.0.0"

from .config import GraceConfig, HandoffMode
from .errors import (
    GraceError,
    ListenerError,
    DescriptorMismatch,
    ListenerClosed,
    InvalidOperation,
    ForkError,
)
from .registry import Protocol, ServerRegistry
from .signals import HookPhase, ServerState
from .server import GraceServer
from .supervisor import Supervisor, listen_and_serve, listen_and_serve_tls

__all__ = [
    "GraceConfig",
    "HandoffMode",
    "GraceError",
    "ListenerError",
    "DescriptorMismatch",
    "ListenerClosed",
    "InvalidOperation",
    "ForkError",
    "Protocol",
    "ServerRegistry",
    "HookPhase",
    "ServerState",
    "GraceServer",
    "Supervisor",
    "listen_and_serve",
    "listen_and_serve_tls",
    "__version__",
]
