"""
Unit tests for the demo connection handlers.
"""

import os
import socket
import threading

import pytest

from hotrestart.core.connection import GraceConnection
from hotrestart.core.drain import DrainCounter
from hotrestart.handlers import EchoHandler, HelloHTTPHandler, read_request


@pytest.fixture
def pair():
    """(GraceConnection, client socket) over a socketpair."""
    server, client = socket.socketpair()
    server.settimeout(2.0)
    client.settimeout(2.0)
    conn = GraceConnection(socket=server, address=("127.0.0.1", 40000), drain=DrainCounter(), linger=0)
    yield conn, client
    conn.close()
    client.close()


def run_handler(handler, conn) -> threading.Thread:
    thread = threading.Thread(target=handler, args=(conn,), daemon=True)
    thread.start()
    return thread


def read_all(sock: socket.socket) -> bytes:
    data = b""
    while True:
        try:
            chunk = sock.recv(4096)
        except ConnectionResetError:
            return data  # Peer closed with our bytes still unread
        if not chunk:
            return data
        data += chunk


class TestEchoHandler:

    def test_echoes_lines_with_pid(self, pair):
        conn, client = pair
        thread = run_handler(EchoHandler(), conn)

        client.sendall(b"one\ntwo\npartial")
        client.shutdown(socket.SHUT_WR)
        thread.join(2.0)
        conn.close()

        pid = os.getpid()
        assert read_all(client) == (
            f"[{pid}] one\n[{pid}] two\n[{pid}] partial".encode()
        )


class TestReadRequest:

    def test_headers_only(self, pair, sample_get_request):
        conn, client = pair
        client.sendall(sample_get_request)
        assert read_request(conn) == sample_get_request

    def test_body_by_content_length(self, pair, sample_post_request):
        conn, client = pair
        # Arrives in two pieces, plus a pipelined extra byte
        half = len(sample_post_request) // 2
        client.sendall(sample_post_request[:half])
        threading.Timer(0.05, client.sendall, args=(sample_post_request[half:] + b"X",)).start()

        assert read_request(conn) == sample_post_request

    def test_client_closed_early(self, pair):
        conn, client = pair
        client.sendall(b"GET / HTTP/1.1\r\n")
        client.shutdown(socket.SHUT_WR)
        assert read_request(conn) is None

    def test_too_large(self, pair):
        conn, client = pair
        client.sendall(b"GET / HTTP/1.1\r\nX-Filler: " + b"a" * 2048)
        with pytest.raises(ValueError):
            read_request(conn, max_request_size=1024)


class TestHelloHTTPHandler:

    def test_responds_with_pid(self, pair, sample_get_request):
        conn, client = pair
        thread = run_handler(HelloHTTPHandler(), conn)

        client.sendall(sample_get_request)
        thread.join(2.0)
        conn.close()

        response = read_all(client)
        head, _, body = response.partition(b"\r\n\r\n")
        assert head.startswith(b"HTTP/1.1 200 OK")
        assert b"Connection: close" in head
        assert body == f"Hello from {os.getpid()}\n".encode()

    def test_oversized_request(self, pair):
        conn, client = pair
        thread = run_handler(HelloHTTPHandler(), conn)

        client.sendall(b"GET / HTTP/1.1\r\nX-Filler: " + b"a" * 70000)
        thread.join(2.0)
        conn.close()

        assert read_all(client).startswith(b"HTTP/1.1 413")
