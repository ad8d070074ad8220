"""
pytest configuration and fixtures.
"""

import os
import shutil
import socket
import subprocess
import threading
import time
from typing import Callable, Generator, List, Optional
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hotrestart import GraceConfig, GraceServer, ServerRegistry


SRC_DIR = Path(__file__).parent.parent / "src"
SCRIPTS_DIR = Path(__file__).parent / "scripts"


def pick_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def wait_until(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll condition until it's true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def sample_get_request() -> bytes:
    """Sample HTTP GET request."""
    return (
        b"GET /status HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"\r\n"
    )


@pytest.fixture
def sample_post_request() -> bytes:
    """Sample HTTP POST request with a body."""
    body = b'{"name": "John", "email": "john@example.com"}'
    return (
        b"POST /api/users HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"Content-Type: application/json\r\n"
        + f"Content-Length: {len(body)}\r\n".encode()
        + b"Connection: close\r\n"
        b"\r\n"
    ) + body


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    return pick_port()


@pytest.fixture
def port_factory() -> Callable[[], int]:
    """Call it once per port needed."""
    return pick_port


@pytest.fixture(name="wait_until")
def wait_until_fixture() -> Callable[..., bool]:
    return wait_until


@pytest.fixture
def config() -> GraceConfig:
    """Fast, quiet configuration for in-process servers."""
    return GraceConfig(
        addresses=["127.0.0.1:0"],
        drain_timeout=None,
        connection_timeout=5.0,
        linger=0.0,
        accept_poll_interval=0.05,
        ready_timeout=5.0,
        log_level="WARNING",
    )


class StubForker:
    """Stands in for ForkCoordinator where no process should be spawned."""

    def __init__(self):
        self.calls = 0

    def fork(self):
        self.calls += 1
        return None


class RunningServer:
    """Runs GraceServer.serve() in a background thread."""

    def __init__(self, server: GraceServer):
        self.server = server
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self.server.listener.address[1]

    def start(self) -> "RunningServer":
        if self.server.listener is None:
            self.server.listen()
        self._thread = threading.Thread(target=self.server.serve, daemon=True)
        self._thread.start()
        return self

    def connect(self, timeout: float = 5.0) -> socket.socket:
        return socket.create_connection(("127.0.0.1", self.port), timeout=timeout)

    def join(self, timeout: float = 5.0) -> bool:
        """Wait for serve() to return. True if it did."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def serving(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 5.0):
        self.server.shutdown()
        if self._thread is not None:
            self.server.drain.force_complete()
            self._thread.join(timeout)


@pytest.fixture
def make_server(config: GraceConfig) -> Generator[Callable[..., RunningServer], None, None]:
    """Factory for started in-process servers, all stopped on teardown."""
    started: List[RunningServer] = []

    def factory(handler, config: GraceConfig = config, address: str = "127.0.0.1:0",
                forker=None, registry: Optional[ServerRegistry] = None, **kwargs) -> RunningServer:
        server = GraceServer(
            address,
            handler,
            registry or ServerRegistry(),
            forker or StubForker(),
            config=config,
            **kwargs,
        )
        running = RunningServer(server).start()
        started.append(running)
        return running

    yield factory

    for running in started:
        running.stop()


@pytest.fixture(scope="session")
def tls_files(tmp_path_factory):
    """Self-signed certificate and key for TLS tests."""
    openssl = shutil.which("openssl")
    if openssl is None:
        pytest.skip("openssl command not available")

    directory = tmp_path_factory.mktemp("tls")
    cert = directory / "cert.pem"
    key = directory / "key.pem"
    subprocess.run(
        [
            openssl, "req", "-x509", "-newkey", "rsa:2048", "-nodes",
            "-keyout", str(key), "-out", str(cert),
            "-days", "1", "-subj", "/CN=localhost",
        ],
        check=True,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return str(cert), str(key)


@pytest.fixture
def scripts_dir() -> Path:
    return SCRIPTS_DIR


@pytest.fixture
def subprocess_env() -> dict:
    """Environment for running the package as a separate process."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(
        [str(SRC_DIR)] + ([env["PYTHONPATH"]] if env.get("PYTHONPATH") else [])
    )
    env["PYTHONUNBUFFERED"] = "1"
    return env
