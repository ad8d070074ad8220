"""
=============================================================================
ERROR TYPES
=============================================================================

Every failure the restart machinery can raise, grouped by how the caller
is expected to react:

    ┌──────────────────────┬──────────────────────────────────────────────┐
    │  Exception           │ What the caller does                         │
    ├──────────────────────┼──────────────────────────────────────────────┤
    │  ListenerError       │ Process-fatal. Exit before serving.          │
    │  DescriptorMismatch  │ Process-fatal. Child got the wrong fds.      │
    │  ListenerClosed      │ Normal. The accept loop just stops.          │
    │  InvalidOperation    │ No-op. Listener was already closed.          │
    │  ForkError           │ Logged. Keep serving, no retry.              │
    └──────────────────────┴──────────────────────────────────────────────┘

=============================================================================
"""

import errno
from typing import Optional


class GraceError(Exception):
    """Base class for all hotrestart errors."""


class ListenerError(GraceError):
    """
    Raised when a listening socket can't be bound or inherited.

    This is never recovered locally. A parent that can't bind, or a
    freshly forked child that can't pick up its inherited descriptor,
    must exit instead of serving on a subset of its addresses.
    """

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message)
        self.address = address


class DescriptorMismatch(ListenerError):
    """
    The ordering argument doesn't match the addresses this child registers.

    Binding anyway would attach a descriptor to the wrong address, so the
    child refuses to start at all.
    """


class ListenerClosed(GraceError):
    """accept() was interrupted because the listener was closed on purpose."""


class InvalidOperation(GraceError):
    """Raised by a second close() on a listener."""

    errno = errno.EINVAL


class ForkError(GraceError):
    """The replacement process could not be launched."""
