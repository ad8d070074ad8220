"""
Unit tests for restart arguments and the fork coordinator.
"""

import json
import os
import signal
import socket
import sys
import threading

import pytest

from hotrestart import fork as fork_module
from hotrestart.errors import DescriptorMismatch, ForkError
from hotrestart.fork import (
    ForkCoordinator,
    RestartArgs,
    build_child_arguments,
    notify_ready,
    spawn,
    terminate_parent,
)
from hotrestart.registry import ServerRegistry
from hotrestart.server import GraceServer


requires_fork = pytest.mark.skipif(not hasattr(os, "fork"), reason="needs os.fork()")


class TestRestartArgs:

    def test_plain_start(self):
        args = RestartArgs.parse(["app.py", "--listen", ":8080"])
        assert args == RestartArgs(is_child=False, socket_order=None, ready_fd=None)

    def test_child_records_parent_pid(self):
        assert RestartArgs.parse(["app.py", "--graceful"]).parent_pid == os.getppid()
        assert RestartArgs.parse(["app.py"]).parent_pid is None

    def test_child_with_everything(self):
        args = RestartArgs.parse(
            ["app.py", "--graceful", "--socketorder=:8080,:8443", "--readyfd=5"]
        )
        assert args.is_child
        assert args.socket_order == [":8080", ":8443"]
        assert args.ready_fd == 5

    def test_space_separated_values(self):
        args = RestartArgs.parse(["--graceful", "--socketorder", ":8080,:8443", "--readyfd", "4"])
        assert args.socket_order == [":8080", ":8443"]
        assert args.ready_fd == 4

    @pytest.mark.parametrize("argv", [
        ["--graceful", "--socketorder="],
        ["--graceful", "--socketorder=:8080,,:8443"],
        ["--graceful", "--socketorder"],
        ["--graceful", "--readyfd=three"],
        ["--socketorder=:8080,:8443"],
    ])
    def test_malformed(self, argv):
        with pytest.raises(DescriptorMismatch):
            RestartArgs.parse(argv)


class TestBuildChildArguments:

    def test_single_listener_has_no_order(self):
        args = build_child_arguments(["python", "app.py", "-v"], [":8080"])
        assert args == ["python", "app.py", "-v", "--graceful"]

    def test_order_matches_addresses(self):
        args = build_child_arguments(["python", "app.py"], [":8080", ":8443"], ready_fd=5)
        assert args == [
            "python", "app.py", "--graceful", "--socketorder=:8080,:8443", "--readyfd=5",
        ]

    def test_previous_restart_arguments_are_dropped(self):
        command = ["python", "app.py", "-v", "--graceful", "--socketorder=:1,:2", "--readyfd=5"]
        args = build_child_arguments(command, [":1", ":2"], ready_fd=5)
        assert args == ["python", "app.py", "-v", "--graceful", "--socketorder=:1,:2", "--readyfd=5"]


@requires_fork
class TestSpawn:

    def test_descriptors_land_at_three(self):
        r, w = os.pipe()
        try:
            pid = spawn([sys.executable, "-c", "import os; os.write(3, b'ok')"], [w])
            os.close(w)
            w = None
            assert os.read(r, 2) == b"ok"
            _, status = os.waitpid(pid, 0)
            assert os.waitstatus_to_exitcode(status) == 0
        finally:
            os.close(r)
            if w is not None:
                os.close(w)

    def test_only_placed_sockets_survive_exec(self):
        listeners = [socket.create_server(("127.0.0.1", 0)) for _ in range(2)]
        exported = []
        for sock in listeners:
            fd = os.dup(sock.fileno())
            os.set_inheritable(fd, True)
            exported.append(fd)
        r, w = os.pipe()
        report = (
            "import os, stat\n"
            "found = []\n"
            "for fd in range(3, 256):\n"
            "    try:\n"
            "        mode = os.fstat(fd).st_mode\n"
            "    except OSError:\n"
            "        continue\n"
            "    if stat.S_ISSOCK(mode):\n"
            "        found.append(fd)\n"
            "os.write(5, repr(found).encode())\n"
        )
        try:
            pid = spawn([sys.executable, "-c", report], exported + [w])
            os.close(w)
            w = None
            assert os.read(r, 1024) == b"[3, 4]"
            os.waitpid(pid, 0)
        finally:
            os.close(r)
            if w is not None:
                os.close(w)
            for fd in exported:
                os.close(fd)
            for sock in listeners:
                sock.close()

    def test_exec_failure(self):
        with pytest.raises(ForkError):
            spawn(["/nonexistent/hotrestart-binary"], [])


class TestChildSide:

    def test_notify_ready_writes_and_closes(self):
        r, w = os.pipe()
        try:
            assert notify_ready(w) is True
            assert os.read(r, 1) == b"1"
            assert os.read(r, 1) == b""  # Write end closed
        finally:
            os.close(r)

    def test_notify_ready_parent_gone(self):
        r, w = os.pipe()
        os.close(r)
        assert notify_ready(w) is False

    def test_terminate_parent(self, monkeypatch):
        sent = []
        monkeypatch.setattr(os, "getppid", lambda: 4242)
        monkeypatch.setattr(os, "kill", lambda pid, sig: sent.append((pid, sig)))

        assert terminate_parent(4242) is True
        assert sent == [(4242, signal.SIGTERM)]

    def test_terminate_parent_when_orphaned(self, monkeypatch):
        monkeypatch.setattr(os, "getppid", lambda: 1)
        monkeypatch.setattr(os, "kill", lambda pid, sig: pytest.fail("must not signal init"))

        assert terminate_parent(4242) is False

    def test_terminate_parent_after_reparenting(self, monkeypatch):
        # The original parent died and a subreaper adopted us
        monkeypatch.setattr(os, "getppid", lambda: 777)
        monkeypatch.setattr(os, "kill", lambda pid, sig: pytest.fail("must not signal the new parent"))

        assert terminate_parent(4242) is False

    def test_terminate_parent_unknown(self, monkeypatch):
        monkeypatch.setattr(os, "kill", lambda pid, sig: pytest.fail("no parent recorded"))

        assert terminate_parent(None) is False


@pytest.fixture
def make_coordinator(config, port_factory, tmp_path, scripts_dir):
    """Registry + coordinator + listening servers whose child reports back."""
    created = []

    def factory(count=2, command=None):
        report = tmp_path / "report.json"
        registry = ServerRegistry()
        forker = ForkCoordinator(
            registry,
            command=command or [sys.executable, str(scripts_dir / "report_inherited.py"), str(report)],
            ready_timeout=5.0,
        )
        servers = []
        for _ in range(count):
            server = GraceServer(f"127.0.0.1:{port_factory()}", lambda conn: None,
                                 registry, forker, config=config)
            server.listen()
            servers.append(server)
        created.append((forker, servers))
        return forker, servers, report

    yield factory

    for forker, servers in created:
        for server in servers:
            server.close_listener()
        if forker.child_pid:
            try:
                os.waitpid(forker.child_pid, 0)
            except ChildProcessError:
                pass


@requires_fork
class TestForkCoordinator:

    def test_child_inherits_listeners_in_order(self, make_coordinator):
        forker, servers, report = make_coordinator(count=2)
        addresses = [s.address for s in servers]

        pid = forker.fork()

        assert pid
        assert forker.wait_ready(5.0)
        data = json.loads(report.read_text())
        assert data["argv"] == [
            str(report), "--graceful", f"--socketorder={','.join(addresses)}", "--readyfd=5",
        ]
        assert data["listeners"] == addresses
        assert data["ppid"] == os.getpid()

    def test_single_listener(self, make_coordinator):
        forker, servers, report = make_coordinator(count=1)

        forker.fork()

        assert forker.wait_ready(5.0)
        data = json.loads(report.read_text())
        assert data["argv"] == [str(report), "--graceful", "--readyfd=4"]
        assert data["listeners"] == [servers[0].address]

        # A ready child is still reaped once it exits
        forker._watcher.join(5.0)
        assert forker.child_exit_code == 0

    def test_parent_keeps_its_listeners(self, make_coordinator):
        forker, servers, _ = make_coordinator(count=2)

        forker.fork()
        forker.wait_ready(5.0)

        for server in servers:
            assert not server.listener.closed

    def test_two_sighups_spawn_one_child(self, make_coordinator, monkeypatch):
        forker, servers, _ = make_coordinator(count=2)
        spawned = []
        real_spawn = fork_module.spawn

        def counting_spawn(args, fds):
            pid = real_spawn(args, fds)
            spawned.append(pid)
            return pid

        monkeypatch.setattr(fork_module, "spawn", counting_spawn)

        servers[0].handle_signal(signal.SIGHUP)
        servers[1].handle_signal(signal.SIGHUP)

        assert len(spawned) == 1
        assert forker.forked
        assert forker.fork() is None
        forker.wait_ready(5.0)

    def test_concurrent_forks_spawn_one_child(self, make_coordinator):
        forker, _, _ = make_coordinator(count=1)
        results = []
        barrier = threading.Barrier(4)

        def race():
            barrier.wait()
            results.append(forker.fork())

        threads = [threading.Thread(target=race) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len([pid for pid in results if pid]) == 1
        forker.wait_ready(5.0)

    def test_launch_failure_keeps_serving(self, make_coordinator):
        forker, servers, _ = make_coordinator(count=1, command=["/nonexistent/hotrestart-binary"])

        assert forker.fork() is None
        assert forker.forked
        assert forker.fork() is None
        assert not servers[0].listener.closed

    def test_child_without_readiness(self, make_coordinator):
        forker, _, _ = make_coordinator(count=1, command=[sys.executable, "-c", "pass"])

        assert forker.fork()
        forker._watcher.join(5.0)

        assert not forker.child_ready.is_set()
        assert not forker._watcher.is_alive()
        assert forker.child_exit_code == 0
