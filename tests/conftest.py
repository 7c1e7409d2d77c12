from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List

import pytest

from peerrelay.common import Endpoint, ServerFailure
from peerrelay.config import RelayConfig
from peerrelay.echo import serve_echo
from peerrelay.server import RelayServer


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def recv_until_eof(sock: socket.socket) -> bytes:
    chunks = []
    while True:
        try:
            data = sock.recv(65536)
        except ConnectionResetError:
            break
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@dataclass
class Upstream:
    endpoint: Endpoint
    received: List[bytes] = field(default_factory=list)
    closed: threading.Event = field(default_factory=threading.Event)

    @property
    def data(self) -> bytes:
        return b"".join(self.received)


def _listen() -> socket.socket:
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", 0))
    server.listen(16)
    return server


def _stop(server: socket.socket) -> None:
    try:
        server.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    server.close()


def _run_service(handler: Callable[[socket.socket, Upstream], None]):
    server = _listen()
    upstream = Upstream(Endpoint(*server.getsockname()[:2]))

    def accept_loop() -> None:
        while True:
            try:
                conn, _addr = server.accept()
            except OSError:
                return
            threading.Thread(target=handler, args=(conn, upstream), daemon=True).start()

    threading.Thread(target=accept_loop, daemon=True).start()
    return server, upstream


@pytest.fixture
def echo_service():
    server = _listen()
    threading.Thread(target=serve_echo, args=(server,), daemon=True).start()
    yield Endpoint(*server.getsockname()[:2])
    _stop(server)


@pytest.fixture
def ping_service():
    """Records what it receives and answers every PING with PONG."""

    def handle(conn: socket.socket, upstream: Upstream) -> None:
        with conn:
            while True:
                try:
                    data = conn.recv(4096)
                except ConnectionResetError:
                    break
                if not data:
                    break
                upstream.received.append(data)
                if data == b"PING":
                    conn.sendall(b"PONG")
        upstream.closed.set()

    server, upstream = _run_service(handle)
    yield upstream
    _stop(server)


@pytest.fixture
def sink_service():
    """Reads until end-of-stream and keeps everything it got."""

    def handle(conn: socket.socket, upstream: Upstream) -> None:
        with conn:
            upstream.received.append(recv_until_eof(conn))
        upstream.closed.set()

    server, upstream = _run_service(handle)
    yield upstream
    _stop(server)


@pytest.fixture
def drop_service():
    """Sends a little data, then closes without waiting for the client."""

    def handle(conn: socket.socket, upstream: Upstream) -> None:
        conn.sendall(b"partial")
        conn.close()
        upstream.closed.set()

    server, upstream = _run_service(handle)
    yield upstream
    _stop(server)


@pytest.fixture
def start_relay():
    servers: List[RelayServer] = []

    def _start(locator, **overrides) -> RelayServer:
        server = RelayServer(Endpoint("127.0.0.1", 0), locator, RelayConfig(**overrides))
        server.start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        server.shutdown()
        try:
            server.wait(timeout=5)
        except ServerFailure:
            pass


def connect(server: RelayServer) -> socket.socket:
    return socket.create_connection(server.address, timeout=5)
