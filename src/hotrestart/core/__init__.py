"""
=============================================================================
CORE SOCKET COMPONENTS
=============================================================================

The low-level pieces that make "outstanding connections" something a
server can wait on:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         GRACE LISTENER                               │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Wraps the listening socket (fresh or inherited)                  │
    │  • accept() counts every connection before handing it out           │
    │  • close() works once, through a background closer thread           │
    │  • export_descriptor() hands a dup to the replacement process       │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    │ add() on accept
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                          DRAIN COUNTER                               │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Outstanding connection count for one server                      │
    │  • wait() blocks the serve loop until it reaches zero               │
    │  • force_complete() gives up waiting, exactly once                  │
    └─────────────────────────────────────────────────────────────────────┘
                                    ▲
                                    │ done() on close
                                    │
    ┌─────────────────────────────────────────────────────────────────────┐
    │                        GRACE CONNECTION                              │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Passes recv/send/... straight to the client socket               │
    │  • close() decrements the counter exactly once                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from .drain import DrainCounter
from .connection import GraceConnection, ConnectionState
from .listener import GraceListener, open_listener, inherit_listener, parse_address

__all__ = [
    "DrainCounter",      # Waitable outstanding-connection count
    "GraceConnection",   # Counted client connection
    "ConnectionState",   # OPEN → CLOSING → CLOSED
    "GraceListener",     # Counting, single-close listening socket
    "open_listener",     # Bind a fresh listening socket
    "inherit_listener",  # Adopt a listening socket from the parent
    "parse_address",     # "host:port" → (family, host, port)
]
