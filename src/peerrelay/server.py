from __future__ import annotations

import logging
import signal
import socket
import threading
from dataclasses import replace
from typing import Optional, Tuple

from peerrelay.common import BindError, Endpoint, ServerFailure
from peerrelay.config import RelayConfig
from peerrelay.engine import ForwardingEngine
from peerrelay.locators import PeerLocator

logger = logging.getLogger(__name__)


class RelayServer:
    """Owns the listening socket and the thread that runs the forwarding loop.

    ``start()`` binds synchronously, so a port that is in use or forbidden
    fails the call with ``BindError`` before any thread exists. ``shutdown()``
    only requests exit; the loop notices at the top of its next iteration,
    tears everything down and then sets the termination signal that
    ``wait()`` blocks on.

    There is one loop thread per server. Outbound connects made by the
    locator block that thread, so new pairs are set up one at a time; run
    several servers on separate ports when that matters.
    """

    def __init__(self, listen: Endpoint, locator: PeerLocator, config: Optional[RelayConfig] = None) -> None:
        self.listen = listen
        self.locator = locator
        self.config = replace(config, listen=listen) if config else RelayConfig(listen=listen)
        self.engine: Optional[ForwardingEngine] = None
        self.failure: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None
        self._address: Optional[Tuple[str, int]] = None
        self._stop = threading.Event()
        self._terminated = threading.Event()
        self._waker_r: Optional[socket.socket] = None
        self._waker_w: Optional[socket.socket] = None

    @property
    def address(self) -> Tuple[str, int]:
        if self._address is None:
            raise RuntimeError("server is not started")
        return self._address

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._terminated.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("server already started")
        if self._stop.is_set():
            raise RuntimeError("server was shut down")

        listener = self._bind()
        self._waker_r, self._waker_w = socket.socketpair()
        self.engine = ForwardingEngine(
            listener,
            self.locator,
            buffer_size=self.config.buffer_size,
            flush_timeout=self.config.flush_timeout,
        )
        self.engine.add_waker(self._waker_r)

        self._thread = threading.Thread(target=self._run, name=type(self).__name__, daemon=False)
        self._thread.start()

    def shutdown(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        waker = self._waker_w
        if waker is None:
            # never started; nothing to drain
            self._terminated.set()
            return
        try:
            waker.send(b"\0")
        except OSError:
            # loop already gone and closed its end
            pass

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the loop has terminated; False if ``timeout`` expired."""
        if not self._terminated.wait(timeout):
            return False
        if self.failure is not None:
            raise ServerFailure(f"relay loop failed: {self.failure}") from self.failure
        return True

    def serve_forever(self) -> None:
        """Start if needed, then block until shutdown.

        SIGINT and SIGTERM request a graceful shutdown.
        """
        if self._thread is None:
            self.start()
        previous = None
        if threading.current_thread() is threading.main_thread():
            previous = signal.signal(signal.SIGTERM, lambda _signo, _frame: self.shutdown())
        try:
            while not self.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
            self.shutdown()
            self.wait()
        finally:
            if previous is not None:
                signal.signal(signal.SIGTERM, previous)

    def _bind(self) -> socket.socket:
        try:
            infos = socket.getaddrinfo(
                self.listen.host, self.listen.port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )
            family, _type, _proto, _canon, sockaddr = infos[0]
            listener = socket.socket(family, socket.SOCK_STREAM)
        except OSError as exc:
            raise BindError(f"cannot bind {self.listen}: {exc}") from exc
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind(sockaddr)
            listener.listen(self.config.backlog)
        except OSError as exc:
            listener.close()
            raise BindError(f"cannot bind {self.listen}: {exc}") from exc
        self._address = listener.getsockname()[:2]
        return listener

    def _run(self) -> None:
        engine = self.engine
        assert engine is not None
        logger.info("Starting %s", type(self).__name__)
        try:
            while not self._stop.is_set():
                engine.poll()
        except Exception as exc:
            logger.exception("Relay loop failed")
            self.failure = exc
        finally:
            logger.info("Exiting %s", type(self).__name__)
            engine.close()
            if self._waker_w is not None:
                self._waker_w.close()
            self._terminated.set()

    def __enter__(self) -> "RelayServer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
        self.wait()
