"""
=============================================================================
DEMO CONNECTION HANDLERS
=============================================================================

Two small handlers for trying out restarts by hand:

    EchoHandler        echo every line back       nc localhost 8080
    HelloHTTPHandler   one HTTP/1.1 response      curl localhost:8080

Both answer with the serving process's pid, so you can watch requests
move from the old process to the new one across a SIGHUP:

    $ python -m hotrestart --handler http --listen :8080 &
    $ curl localhost:8080        → Hello from 4242
    $ kill -HUP 4242
    $ kill -TERM 4242
    $ curl localhost:8080        → Hello from 4250

A handler is any callable taking a GraceConnection. Closing the
connection is the server's job, not the handler's.

=============================================================================
"""

import os
import time
import logging
from http import HTTPStatus
from typing import Optional

from .core.connection import GraceConnection


logger = logging.getLogger(__name__)

HEADER_END = b"\r\n\r\n"


class EchoHandler:
    """Echo each received line, prefixed with the pid."""

    def __init__(self, buffer_size: int = 4096):
        self.buffer_size = buffer_size

    def __call__(self, conn: GraceConnection):
        pid = os.getpid()
        buffer = b""
        while True:
            chunk = conn.recv(self.buffer_size)
            if not chunk:
                break  # Client closed
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                conn.sendall(f"[{pid}] ".encode() + line + b"\n")

        if buffer:
            conn.sendall(f"[{pid}] ".encode() + buffer)


def read_request(conn: GraceConnection, buffer_size: int = 4096,
                 max_request_size: int = 65536) -> Optional[bytes]:
    """
    Read one HTTP request: headers up to the blank line, then
    Content-Length bytes of body.

    Returns:
        The raw request, or None if the client closed before sending
        complete headers.

    Raises:
        ValueError: If the request grows past max_request_size.
    """
    buffer = b""
    while HEADER_END not in buffer:
        chunk = conn.recv(buffer_size)
        if not chunk:
            return None
        buffer += chunk
        if len(buffer) > max_request_size:
            raise ValueError(f"Request too large: {len(buffer)} bytes")

    header_end = buffer.find(HEADER_END)
    body_start = header_end + len(HEADER_END)
    content_length = _parse_content_length(buffer[:header_end])

    while len(buffer) - body_start < content_length:
        chunk = conn.recv(buffer_size)
        if not chunk:
            break  # Client gave up mid-body
        buffer += chunk
        if len(buffer) > max_request_size:
            raise ValueError(f"Request too large: {len(buffer)} bytes")

    return buffer[:body_start + content_length]


def _parse_content_length(headers: bytes) -> int:
    header_str = headers.decode("utf-8", errors="replace").lower()
    for line in header_str.split("\r\n"):
        if line.startswith("content-length:"):
            try:
                return max(0, int(line.split(":", 1)[1].strip()))
            except ValueError:
                return 0
    return 0


class HelloHTTPHandler:
    """
    Answer a single HTTP request with "Hello from <pid>" and close.

    Args:
        delay: Seconds to wait before answering. Handy for watching a
               drain hold the old process open.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    def __call__(self, conn: GraceConnection):
        try:
            request = read_request(conn)
        except ValueError as e:
            logger.warning(f"[{conn.id}] {e}")
            conn.sendall(self._response(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, "Request too large\n"))
            return

        if request is None:
            return

        request_line = request.split(b"\r\n", 1)[0].decode("latin-1", errors="replace")
        logger.debug(f"[{conn.id}] {request_line}")

        if self.delay:
            time.sleep(self.delay)

        conn.sendall(self._response(HTTPStatus.OK, f"Hello from {os.getpid()}\n"))

    @staticmethod
    def _response(status: HTTPStatus, body: str) -> bytes:
        payload = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        return head.encode("latin-1") + payload
