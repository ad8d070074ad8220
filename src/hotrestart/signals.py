"""
=============================================================================
SIGNAL HANDLING AND SERVER LIFECYCLE
=============================================================================

Operators drive a graceful restart entirely with Unix signals:

    SIGHUP  (1)    Fork a replacement that inherits the listeners
    SIGINT  (2)    Stop accepting, drain, exit (Ctrl+C)
    SIGTERM (15)   Same as SIGINT (kill, systemd stop, docker stop)

Anything else that reaches the dispatcher is logged and ignored.

=============================================================================
SERVER STATES
=============================================================================

    RUNNING ──SIGINT/SIGTERM──► SHUTTING_DOWN ──drained──► TERMINATED
       │
       └──SIGHUP──► RUNNING (forking doesn't stop this process)

Transitions only ever move to the right. A second SIGTERM while shutting
down finds the state is no longer RUNNING and does nothing.

=============================================================================
WHERE SIGNALS ARE ACTUALLY HANDLED
=============================================================================

Python runs signal handlers on the main thread, between bytecodes. Doing
real work there (forking, closing sockets, logging) is a recipe for
deadlocks, so the handler only queues the signal number:

    ┌──────────────┐   put(signum)   ┌──────────────┐ handle_signal┌─────────┐
    │ signal.signal│ ──────────────► │ SimpleQueue  │ ───────────► │ servers │
    │   handler    │                 │ (reentrant)  │  dispatcher  │         │
    └──────────────┘                 └──────────────┘   thread     └─────────┘

Each server then runs its own pre-signal hooks, built-in handling and
post-signal hooks on the dispatcher thread.

=============================================================================
"""

import os
import queue
import signal
import logging
import threading
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)


# Signals a graceful-restart process listens for by default
RESTART_SIGNAL = signal.SIGHUP
TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)
DEFAULT_SIGNALS = (RESTART_SIGNAL,) + TERMINATION_SIGNALS


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class ServerState(Enum):
    """Server lifecycle states, in the only order they can occur."""
    RUNNING = 1
    SHUTTING_DOWN = 2
    TERMINATED = 3


class HookPhase(Enum):
    """When a signal hook runs relative to the built-in handling."""
    PRE = "pre"
    POST = "post"


class SignalHooks:
    """
    Callbacks keyed by phase, then by signal.

        hooks = SignalHooks()
        hooks.add(HookPhase.PRE, signal.SIGTERM, flush_metrics)
        hooks.fire(HookPhase.PRE, signal.SIGTERM)

    A signal with no hooks is not an error. A hook that raises is logged
    and the remaining hooks still run.
    """

    def __init__(self):
        self._table: Dict[HookPhase, Dict[int, List[Callable[[], None]]]] = {
            HookPhase.PRE: {},
            HookPhase.POST: {},
        }

    def add(self, phase: HookPhase, signum: int, hook: Callable[[], None]):
        self._table[phase].setdefault(int(signum), []).append(hook)

    def get(self, phase: HookPhase, signum: int) -> List[Callable[[], None]]:
        return list(self._table[phase].get(int(signum), ()))

    def fire(self, phase: HookPhase, signum: int):
        for hook in self.get(phase, signum):
            try:
                hook()
            except Exception as e:
                logger.exception(
                    f"{phase.value}-{signal_name(signum)} hook {hook!r} failed: {e}"
                )


class SignalHandler:
    """
    Lifecycle state and signal routing for one server.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      handle(signum)                                  │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   hooks.fire(PRE, signum)                                           │
    │        │                                                             │
    │        ├── SIGHUP           → on_restart()                          │
    │        ├── SIGINT / SIGTERM → on_shutdown()                         │
    │        └── anything else    → log                                   │
    │        │                                                             │
    │   hooks.fire(POST, signum)                                          │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    on_shutdown is expected to call advance(SHUTTING_DOWN) itself and bail
    out if that returns False, so calling it directly (not via a signal)
    is just as idempotent.
    """

    def __init__(
        self,
        on_restart: Callable[[], object],
        on_shutdown: Callable[[], object],
        name: str = "",
    ):
        self.on_restart = on_restart
        self.on_shutdown = on_shutdown
        self.name = name
        self.hooks = SignalHooks()
        self._state = ServerState.RUNNING
        self._lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    def advance(self, new_state: ServerState, expected: Optional[ServerState] = None) -> bool:
        """
        Move forward to new_state.

        Args:
            new_state: Target state. Must be later than the current one.
            expected: If given, only advance when currently in this state.

        Returns:
            True if the transition happened, False otherwise.
        """
        with self._lock:
            if expected is not None and self._state != expected:
                return False
            if new_state.value <= self._state.value:
                return False
            self._state = new_state
        logger.debug(f"{self.name} state -> {new_state.name}")
        return True

    def handle(self, signum: int):
        self.hooks.fire(HookPhase.PRE, signum)

        pid = os.getpid()
        if signum == RESTART_SIGNAL:
            logger.info(f"{pid} Received {signal_name(signum)}, forking")
            self.on_restart()
        elif signum in TERMINATION_SIGNALS:
            logger.info(f"{pid} Received {signal_name(signum)}")
            self.on_shutdown()
        else:
            logger.info(f"{pid} Received {signal_name(signum)}: nothing to do")

        self.hooks.fire(HookPhase.POST, signum)


class SignalDispatcher:
    """
    The process's signal-listening thread.

    Installs Python signal handlers that only enqueue the signal, and a
    daemon thread that delivers each queued signal to every subscriber's
    handle_signal(). Original handlers are restored by stop().

    Usage:
        dispatcher = SignalDispatcher()
        dispatcher.subscribe(server)
        dispatcher.start()          # main thread only
        ...
        dispatcher.stop()
    """

    def __init__(self, signals: Iterable[int] = DEFAULT_SIGNALS):
        self.signals = tuple(signals)
        self._queue: "queue.SimpleQueue[Optional[int]]" = queue.SimpleQueue()
        self._subscribers: list = []
        self._original_handlers: dict = {}
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, subscriber):
        """Register an object with a handle_signal(signum) method."""
        self._subscribers.append(subscriber)

    def start(self, install: bool = True):
        """
        Start the dispatcher thread.

        Args:
            install: Install OS signal handlers. Must be called from the
                     main thread when True. Tests pass False and call
                     notify() directly.
        """
        if self.running:
            return

        if install:
            for signum in self.signals:
                self._original_handlers[signum] = signal.signal(signum, self._on_signal)

        self._thread = threading.Thread(
            target=self._run, name="signal-dispatcher", daemon=True
        )
        self._thread.start()

    def _on_signal(self, signum, frame):
        # Runs in the main thread between bytecodes: queue it and get out
        self._queue.put(signum)

    def notify(self, signum: int):
        """Queue a signal as if the OS had delivered it."""
        self._queue.put(signum)

    def dispatch(self, signum: int):
        """Deliver a signal to every subscriber synchronously."""
        for subscriber in list(self._subscribers):
            try:
                subscriber.handle_signal(signum)
            except Exception as e:
                logger.exception(f"Handling {signal_name(signum)} failed: {e}")

    def _run(self):
        while True:
            signum = self._queue.get()
            if signum is None:  # Poison pill
                break
            self.dispatch(signum)

    def stop(self, timeout: Optional[float] = 5.0):
        """Stop the dispatcher thread and restore original handlers."""
        for signum, handler in self._original_handlers.items():
            try:
                signal.signal(signum, handler)
            except ValueError:
                pass  # Not on the main thread; handlers die with the process
        self._original_handlers.clear()

        if self._thread is not None:
            self._queue.put(None)
            if self._thread is not threading.current_thread():
                self._thread.join(timeout)
            self._thread = None
