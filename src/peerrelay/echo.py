from __future__ import annotations

import socket
import threading

from peerrelay.common import Endpoint


def handle_echo(conn: socket.socket) -> None:
    """Echo everything received on ``conn`` until the other side closes."""
    with conn:
        while True:
            try:
                data = conn.recv(4096)
            except ConnectionResetError:
                return
            if not data:
                return
            conn.sendall(data)


def serve_echo(server: socket.socket) -> None:
    """Accept on an already-listening socket, one echo thread per client.

    Returns once ``server`` is closed.
    """
    while True:
        try:
            conn, _addr = server.accept()
        except OSError:
            return
        threading.Thread(target=handle_echo, args=(conn,), daemon=True).start()


def run_echo_server(bind: Endpoint) -> None:
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((bind.host, bind.port))
    server.listen(128)

    print(f"[echo] listening on tcp://{bind}")
    with server:
        serve_echo(server)


def run_echo_client(target: Endpoint, message: bytes, timeout: float = 5.0) -> bytes:
    """Send ``message`` and read until the same number of bytes came back."""
    with socket.create_connection((target.host, target.port), timeout=timeout) as s:
        s.sendall(message)
        chunks = []
        received = 0
        while received < len(message):
            data = s.recv(4096)
            if not data:
                break
            chunks.append(data)
            received += len(data)
        return b"".join(chunks)
