from __future__ import annotations

import logging
import selectors
import socket
import time
from typing import Optional

from peerrelay.buffer import TransferBuffer
from peerrelay.common import PeerLocatorError
from peerrelay.config import DEFAULT_FLUSH_TIMEOUT, TRANSFER_BUFFER_SIZE
from peerrelay.locators import PeerLocator
from peerrelay.pairs import PairIndex

logger = logging.getLogger(__name__)

# selector key tags
_LISTENER = "listener"
_WAKER = "waker"
_RELAY = "relay"


class StreamClosed(Exception):
    """A relay pair reached end-of-stream or failed; both sides must close."""


class ForwardingEngine:
    """Single-threaded accept/pair/relay loop over one selector.

    Principle of operation: the listener is registered for accept readiness.
    Each accepted socket is handed to the peer locator, and the two sockets
    are indexed together in a ``PairIndex``. Whenever one side is readable,
    its bytes are read into the shared ``TransferBuffer`` and flushed to the
    other side in full before the next event is handled. The first EOF or
    error on either side tears down both sockets and their index entries.

    Both sides of a pair are treated identically; once paired there is no
    notion of inbound vs. outbound.

    Logs never include addresses, byte counts or payload.
    """

    def __init__(
        self,
        listener: socket.socket,
        locator: PeerLocator,
        buffer_size: int = TRANSFER_BUFFER_SIZE,
        flush_timeout: float = DEFAULT_FLUSH_TIMEOUT,
    ) -> None:
        self.listener = listener
        self.locator = locator
        self.flush_timeout = flush_timeout
        self.pairs = PairIndex()
        self.buffer = TransferBuffer(buffer_size)
        self._selector = selectors.DefaultSelector()
        self._closed = False
        listener.setblocking(False)
        self._selector.register(listener, selectors.EVENT_READ, _LISTENER)

    def add_waker(self, sock: socket.socket) -> None:
        """Register a socket whose only job is to interrupt the readiness wait."""
        sock.setblocking(False)
        self._selector.register(sock, selectors.EVENT_READ, _WAKER)

    def poll(self, timeout: Optional[float] = None) -> int:
        """Run one loop iteration; return the number of events handled.

        Per-connection failures are handled here. Anything that escapes is
        an internal failure of the loop itself.
        """
        events = self._selector.select(timeout)
        for key, _mask in events:
            tag = key.data
            sock = key.fileobj
            if tag == _LISTENER:
                self._accept()
            elif tag == _WAKER:
                self._drain_waker(sock)
            elif sock.fileno() == -1:
                # torn down earlier in this batch
                self.teardown(sock)
            else:
                self._relay(sock)
        return len(events)

    def teardown(self, sock: socket.socket) -> None:
        """Close ``sock`` and, if indexed, its peer. Safe to repeat."""
        removed = self.pairs.remove_pair(sock)
        self._close(sock)
        for other in removed:
            if other is not sock:
                self._close(other)

    def close(self) -> None:
        """Tear down every pair, then release the listener and the selector."""
        if self._closed:
            return
        self._closed = True
        for a, b in self.pairs.drain():
            self._close(a)
            self._close(b)
        self._close(self.listener)
        for key in list(self._selector.get_map().values()):
            self._close(key.fileobj)
        self._selector.close()

    def _accept(self) -> None:
        try:
            accepted, _addr = self.listener.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            logger.warning("Accept failed: %s", exc.strerror or exc)
            return

        logger.debug("Accepting inbound connection")
        accepted.setblocking(False)
        self._selector.register(accepted, selectors.EVENT_READ, _RELAY)

        try:
            peer = self.locator.locate(accepted)
        except Exception as exc:
            logger.warning("Peering failure, closing inbound connection: %s", exc)
            self._close(accepted)
            return

        try:
            if peer is None or not _is_connected(peer):
                raise PeerLocatorError("locator returned no usable peer")
            peer.setblocking(False)
            self._selector.register(peer, selectors.EVENT_READ, _RELAY)
            self.pairs.insert_pair(accepted, peer)
        except (OSError, ValueError, KeyError, PeerLocatorError) as exc:
            logger.warning("Peering failure, closing inbound connection: %s", exc)
            if peer is not None:
                self._close(peer)
            self._close(accepted)
            return

        logger.info("Relay pair established (%d active)", len(self.pairs))

    def _relay(self, sock: socket.socket) -> None:
        peer = self.pairs.lookup(sock)
        if peer is None:
            logger.debug("Readable socket has no peer")
            self.teardown(sock)
            return
        if peer.fileno() == -1:
            logger.warning("Pair index holds a closed peer; tearing the pair down")
            self.teardown(sock)
            return

        with self.buffer.acquire() as view:
            try:
                n = sock.recv_into(view)
                if n == 0:
                    raise StreamClosed("closed connection")
                written = self._flush(peer, view[:n])
                if written != n:
                    raise StreamClosed("read/write byte mismatch")
            except (BlockingIOError, InterruptedError):
                return
            except (OSError, StreamClosed) as exc:
                logger.debug("Closing relay pair: %s", exc)
                self.teardown(sock)
                return

    def _flush(self, peer: socket.socket, data: memoryview) -> int:
        """Write all of ``data`` to ``peer``; return how much was written.

        A send that would block waits for the peer to become writable, for at
        most ``flush_timeout`` seconds in total.
        """
        total = 0
        deadline = time.monotonic() + self.flush_timeout
        waiter = None
        try:
            while total < len(data):
                try:
                    total += peer.send(data[total:])
                except (BlockingIOError, InterruptedError):
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    if waiter is None:
                        waiter = selectors.DefaultSelector()
                        waiter.register(peer, selectors.EVENT_WRITE)
                    waiter.select(remaining)
        finally:
            if waiter is not None:
                waiter.close()
        return total

    def _drain_waker(self, sock: socket.socket) -> None:
        try:
            while sock.recv(4096):
                pass
        except (BlockingIOError, InterruptedError):
            pass

    def _close(self, sock: socket.socket) -> None:
        try:
            self._selector.unregister(sock)
        except (KeyError, ValueError):
            pass
        if sock.fileno() == -1:
            return
        try:
            sock.close()
        except OSError as exc:
            logger.debug("Error while closing socket: %s", exc)


def _is_connected(sock: socket.socket) -> bool:
    try:
        sock.getpeername()
    except OSError:
        return False
    return True
