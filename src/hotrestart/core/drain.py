"""
=============================================================================
DRAIN COUNTER
=============================================================================

Counts outstanding connections for one server and lets exactly one serve
loop wait for the count to reach zero.

    accept()  ──► add()          count += 1
    close()   ──► done()         count -= 1   (never below zero)
    timer     ──► force_complete()  count = 0, once
    serve     ──► wait()         blocks until count == 0

=============================================================================
WHY NOT A SEMAPHORE OR queue.join()?
=============================================================================

The drain timeout needs to give up on the remaining connections in one
step. Calling done() in a loop until the waiter wakes up can run past zero
if a connection finishes at the same moment. force_complete() sets the
count to zero under the same lock that done() uses, so the two can never
race into a negative count.

=============================================================================
"""

import threading
import logging
from typing import Optional


logger = logging.getLogger(__name__)


class DrainCounter:
    """
    Thread-safe outstanding-work counter with a forced-release escape hatch.

    Usage:
        counter = DrainCounter()
        counter.add()          # connection accepted
        counter.done()         # connection closed
        counter.wait()         # blocks until nothing is outstanding
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._count = 0
        self._forced = False
        self._released = 0

    @property
    def count(self) -> int:
        """Current number of outstanding connections."""
        with self._cond:
            return self._count

    @property
    def forced(self) -> bool:
        """True once force_complete() has released at least the waiter."""
        with self._cond:
            return self._forced

    @property
    def released(self) -> int:
        """How many connections were abandoned by force_complete()."""
        with self._cond:
            return self._released

    def add(self, n: int = 1):
        """Register n new outstanding connections."""
        if n < 0:
            raise ValueError("add() needs a non-negative count, use done()")
        with self._cond:
            self._count += n

    def done(self):
        """
        Mark one connection finished.

        After a forced release the count is already zero, and connections
        that were abandoned still call done() when they eventually close.
        Those late calls are ignored.
        """
        with self._cond:
            if self._count == 0:
                return
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()

    def force_complete(self) -> int:
        """
        Drop the count to zero and wake the waiter.

        Returns the number of connections that were abandoned. Calling it
        again after the count is zero is a no-op that returns 0.
        """
        with self._cond:
            abandoned = self._count
            if self._forced and abandoned == 0:
                return 0
            self._forced = True
            self._released += abandoned
            self._count = 0
            self._cond.notify_all()
        if abandoned:
            logger.warning(f"Forced release of {abandoned} outstanding connection(s)")
        return abandoned

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the count reaches zero.

        Returns:
            True if the count is zero, False if timeout expired first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)
