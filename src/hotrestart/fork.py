"""
=============================================================================
FORK COORDINATOR
=============================================================================

Launches the replacement process on SIGHUP and hands it every listening
socket this process owns.

=============================================================================
THE PARENT/CHILD CONTRACT
=============================================================================

Everything the child needs travels in two places, its argument list and
its descriptor table:

    Parent                                   Child
    ──────                                   ─────
    registry:  ":8080" → 0                   argv:  ... --graceful
               ":8443" → 1                                 --socketorder=:8080,:8443
                                                           --readyfd=5
    export_descriptor() ×2  ──────────────►  fd 3  listener for ":8080"
                                             fd 4  listener for ":8443"
    os.pipe() read end      ◄──── "1" ─────  fd 5  readiness pipe

    - fds 0, 1, 2 are the usual stdin/stdout/stderr, inherited as is.
    - Listener n always sits at fd 3 + n.
    - --socketorder is only added when there is more than one listener;
      a lone listener is always at fd 3.
    - Arguments after an earlier --graceful are dropped before appending
      new ones, so restarting a restarted process doesn't pile them up.

=============================================================================
WHY NOT subprocess.Popen?
=============================================================================

Popen(pass_fds=...) keeps each descriptor at whatever number it has in
the parent. The child must find its listeners at fixed numbers starting
at 3, so we fork, move the descriptors into place and exec ourselves:

    fork()
      │
      ├── parent: wait for exec to succeed (cloexec status pipe)
      │
      └── child:  move every source fd above the target range
                  close the sources
                  dup2(source, 3 + n)     ← clears close-on-exec
                  execv(python, args)

If exec fails, the child writes the error to the status pipe and exits.
The parent turns that into a ForkError, keeps serving and does not try
again. An operator has to sort out whatever broke the launch.

=============================================================================
READINESS
=============================================================================

The child writes one byte to --readyfd after it holds every inherited
listener. In IMMEDIATE handoff mode it only then signals the parent to
shut down; a child that dies before binding never touches its parent.

=============================================================================
"""

import os
import sys
import fcntl
import select
import signal
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import DescriptorMismatch, ForkError, ListenerClosed


logger = logging.getLogger(__name__)

# First descriptor number after stdin, stdout and stderr
LISTEN_FDS_START = 3

RESTART_MARKER = "--graceful"
SOCKET_ORDER_FLAG = "--socketorder"
READY_FD_FLAG = "--readyfd"

_READY_BYTE = b"1"


# =============================================================================
# ARGUMENTS
# =============================================================================

@dataclass
class RestartArgs:
    """
    What a process learned about itself from its command line.

    Attributes:
        is_child: True if started by a ForkCoordinator.
        socket_order: Addresses in inherited descriptor order, if given.
        ready_fd: Write end of the parent's readiness pipe, if given.
        parent_pid: The parent's pid as seen at startup, children only.
    """
    is_child: bool = False
    socket_order: Optional[List[str]] = None
    ready_fd: Optional[int] = None
    parent_pid: Optional[int] = None

    @classmethod
    def parse(cls, argv: Sequence[str]) -> "RestartArgs":
        """
        Pick the restart arguments out of a full argument list.

        Other arguments are ignored, so this works next to whatever
        argument parser the application uses.

        Raises:
            DescriptorMismatch: If the restart arguments are malformed.
        """
        result = cls()
        args = list(argv)
        i = 0
        while i < len(args):
            arg = args[i]
            if arg == RESTART_MARKER:
                result.is_child = True
            elif arg.startswith(SOCKET_ORDER_FLAG):
                value, i = _flag_value(args, i, SOCKET_ORDER_FLAG)
                if value is not None:
                    result.socket_order = _parse_socket_order(value)
            elif arg.startswith(READY_FD_FLAG):
                value, i = _flag_value(args, i, READY_FD_FLAG)
                if value is not None:
                    try:
                        result.ready_fd = int(value)
                    except ValueError:
                        raise DescriptorMismatch(f"Invalid {READY_FD_FLAG} value: {value!r}") from None
            i += 1

        if not result.is_child and (result.socket_order or result.ready_fd is not None):
            raise DescriptorMismatch(
                f"{SOCKET_ORDER_FLAG}/{READY_FD_FLAG} given without {RESTART_MARKER}"
            )
        if result.is_child:
            result.parent_pid = os.getppid()
        return result


def _flag_value(args: List[str], i: int, flag: str):
    """Handle both "--flag=value" and "--flag value"."""
    arg = args[i]
    if arg == flag:
        if i + 1 >= len(args):
            raise DescriptorMismatch(f"{flag} needs a value")
        return args[i + 1], i + 1
    if arg.startswith(flag + "="):
        return arg[len(flag) + 1:], i
    return None, i  # Some other flag sharing the prefix


def _parse_socket_order(value: str) -> List[str]:
    order = value.split(",")
    if not value or any(not address for address in order):
        raise DescriptorMismatch(f"Malformed {SOCKET_ORDER_FLAG}: {value!r}")
    return order


def build_child_arguments(
    command: Sequence[str],
    addresses: Sequence[str],
    ready_fd: Optional[int] = None,
) -> List[str]:
    """
    Rebuild this process's command line for its replacement.

    Args:
        command: Current command line, program first.
        addresses: Listener addresses in descriptor order.
        ready_fd: Descriptor number of the readiness pipe in the child.
    """
    args = []
    for arg in command:
        if arg == RESTART_MARKER:
            break
        args.append(arg)

    args.append(RESTART_MARKER)
    if len(addresses) > 1:
        args.append(f"{SOCKET_ORDER_FLAG}={','.join(addresses)}")
    if ready_fd is not None:
        args.append(f"{READY_FD_FLAG}={ready_fd}")
    return args


def default_command() -> List[str]:
    """The interpreter plus the arguments this process was started with."""
    return [sys.executable] + list(sys.orig_argv[1:])


# =============================================================================
# SPAWNING
# =============================================================================

def spawn(args: Sequence[str], inherited_fds: Sequence[int]) -> int:
    """
    fork + exec with inherited_fds[n] placed at descriptor 3 + n.

    stdin, stdout and stderr are inherited unchanged.

    Returns:
        The child's pid, once exec has succeeded.

    Raises:
        ForkError: If fork or exec failed.
    """
    status_read, status_write = os.pipe()
    try:
        pid = os.fork()
    except OSError as e:
        os.close(status_read)
        os.close(status_write)
        raise ForkError(f"fork() failed: {e}") from e

    if pid == 0:
        # Child: no logging, no locks, only fd shuffling and exec
        try:
            os.close(status_read)
            status_write = _place_descriptors(inherited_fds, status_write)
            os.execv(args[0], list(args))
        except OSError as e:
            os.write(status_write, f"{args[0]}: {e}".encode(errors="replace"))
        finally:
            os._exit(127)

    os.close(status_write)
    try:
        chunks = []
        while True:
            chunk = os.read(status_read, 4096)
            if not chunk:
                break  # EOF: the pipe was closed by a successful exec
            chunks.append(chunk)
    finally:
        os.close(status_read)

    if chunks:
        os.waitpid(pid, 0)
        raise ForkError(f"exec failed: {b''.join(chunks).decode(errors='replace')}")
    return pid


def _place_descriptors(fds: Sequence[int], status_write: int) -> int:
    # Runs in the forked child only. Every copy is first moved above the
    # target range so that dup2() can't clobber a source that hasn't been
    # placed yet.
    top = LISTEN_FDS_START + len(fds)

    moved_status = fcntl.fcntl(status_write, fcntl.F_DUPFD, top)
    os.set_inheritable(moved_status, False)

    staged = [fcntl.fcntl(fd, fcntl.F_DUPFD, top) for fd in fds]
    # The sources are inheritable and would otherwise survive exec as
    # stray copies of each listener
    for fd in set(fds):
        os.close(fd)
    for offset, fd in enumerate(staged):
        os.dup2(fd, LISTEN_FDS_START + offset, inheritable=True)
    for fd in staged:
        os.close(fd)

    return moved_status


# =============================================================================
# CHILD SIDE
# =============================================================================

def notify_ready(ready_fd: int) -> bool:
    """Tell the parent every listener is in place. Returns False if it's gone."""
    try:
        os.write(ready_fd, _READY_BYTE)
        return True
    except OSError as e:
        logger.warning(f"Could not confirm readiness to parent: {e}")
        return False
    finally:
        try:
            os.close(ready_fd)
        except OSError:
            pass


def terminate_parent(parent_pid: Optional[int], signum: int = signal.SIGTERM) -> bool:
    """
    Ask the parent process to shut down.

    Only called by a child that already holds all of its listeners.
    parent_pid is the parent recorded at startup; nothing is sent unless
    it is still this process's parent.
    """
    ppid = os.getppid()
    if parent_pid is None or parent_pid <= 1 or ppid != parent_pid:
        # Reparented: the original parent is already gone
        logger.warning(f"Parent process {parent_pid} already exited, nothing to terminate")
        return False
    try:
        os.kill(ppid, signum)
    except OSError as e:
        logger.error(f"Could not signal parent {ppid}: {e}")
        return False
    logger.info(f"{os.getpid()} Sent {signal.Signals(signum).name} to parent {ppid}")
    return True


# =============================================================================
# COORDINATOR
# =============================================================================

class ForkCoordinator:
    """
    Spawns at most one replacement process per process lifetime.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                          fork()                                      │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   with registry.lock:                                               │
    │       already forked? ──yes──► return None                          │
    │       forked = True            (never reset)                        │
    │       │                                                              │
    │       ├──► export one descriptor per server, in offset order        │
    │       ├──► build child arguments                                    │
    │       ├──► spawn(args, fds + [readiness pipe])                      │
    │       └──► close our copies of the exported fds                     │
    │                                                                      │
    │   watcher thread: wait for the readiness byte                       │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    Usage:
        forker = ForkCoordinator(registry)
        forker.fork()          # spawns
        forker.fork()          # None, already forked
    """

    def __init__(
        self,
        registry,
        command: Optional[Sequence[str]] = None,
        ready_timeout: float = 10.0,
    ):
        """
        Args:
            registry: The ServerRegistry whose listeners get handed over.
            command: Command line to restart with, program first.
                     Defaults to the current interpreter and arguments.
            ready_timeout: How long to wait for the child's readiness byte.
        """
        self.registry = registry
        self.command = list(command) if command is not None else default_command()
        self.ready_timeout = ready_timeout

        self.child_pid: Optional[int] = None
        self.child_ready = threading.Event()
        self.child_exit_code: Optional[int] = None
        self._forked = False
        self._watcher: Optional[threading.Thread] = None

    @property
    def forked(self) -> bool:
        with self.registry.lock:
            return self._forked

    def fork(self) -> Optional[int]:
        """
        Launch the replacement process.

        Returns:
            The child's pid, or None if a fork already happened or the
            launch failed. Failures are logged, never raised: this process
            keeps serving either way.
        """
        with self.registry.lock:
            if self._forked:
                logger.info(f"{os.getpid()} Already forked, ignoring restart request")
                return None
            self._forked = True

            try:
                pid, ready_read = self._launch()
            except (ForkError, ListenerClosed, OSError) as e:
                logger.error(f"{os.getpid()} Fork failed, continuing to serve: {e}")
                return None

        self.child_pid = pid
        self._watcher = threading.Thread(
            target=self._watch_readiness,
            args=(pid, ready_read),
            name="fork-readiness",
            daemon=True,
        )
        self._watcher.start()
        return pid

    def _launch(self):
        entries = self.registry.entries()
        for expected, entry in enumerate(entries):
            offset = self.registry.offset(entry.address)
            if offset != expected:
                raise ForkError(f"Descriptor offsets are not dense: {entry.address} at {offset}")

        addresses = [entry.address for entry in entries]
        fds: List[int] = []
        try:
            for entry in entries:
                fds.append(entry.listener.export_descriptor())

            ready_read, ready_write = os.pipe()
            args = build_child_arguments(
                self.command, addresses, ready_fd=LISTEN_FDS_START + len(fds)
            )
            logger.info(f"{os.getpid()} Restarting: {' '.join(args)}")
            try:
                pid = spawn(args, fds + [ready_write])
            except ForkError:
                os.close(ready_read)
                raise
            finally:
                os.close(ready_write)
        finally:
            for fd in fds:
                os.close(fd)

        logger.info(f"{os.getpid()} Forked replacement process {pid}")
        return pid, ready_read

    def _watch_readiness(self, pid: int, ready_read: int):
        try:
            readable, _, _ = select.select([ready_read], [], [], self.ready_timeout)
            data = os.read(ready_read, 1) if readable else b""
        finally:
            os.close(ready_read)

        if data == _READY_BYTE:
            self.child_ready.set()
            logger.info(f"{os.getpid()} Replacement process {pid} is ready")
        else:
            # No confirmation: the child died early or is stuck before binding
            logger.error(
                f"{os.getpid()} Replacement process {pid} did not confirm readiness, "
                f"this process keeps serving"
            )

        # Blocks until the child exits, however long it serves
        try:
            _, status = os.waitpid(pid, 0)
        except ChildProcessError:
            return
        self.child_exit_code = os.waitstatus_to_exitcode(status)
        log = logger.info if self.child_exit_code == 0 else logger.error
        log(f"{os.getpid()} Replacement process {pid} exited with status {self.child_exit_code}")

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the child confirmed readiness."""
        return self.child_ready.wait(timeout)
