from __future__ import annotations

import logging
import socket
from typing import Optional, Protocol, Tuple

from peerrelay.common import Endpoint, PeerLocatorError

logger = logging.getLogger(__name__)


class PeerLocator(Protocol):
    """Supplies the outbound half of a relay pair.

    ``locate`` runs on the loop thread and may block it. It returns a
    connected socket, or signals failure by raising ``PeerLocatorError`` /
    ``OSError`` or by returning ``None``.
    """

    def locate(self, sock: socket.socket) -> Optional[socket.socket]:
        ...


class TcpServiceLocator:
    """Pairs every accepted socket with a new connection to a fixed TCP service.

    The target is resolved once, at construction, so no DNS lookup happens
    per connection. Call ``resolve()`` again to pick up an address change.
    """

    def __init__(self, target: Endpoint, connect_timeout: Optional[float] = None) -> None:
        self.target = target
        self.connect_timeout = connect_timeout
        self._family = socket.AF_INET
        self._sockaddr: Tuple = ()
        self.resolve()

    @property
    def sockaddr(self) -> Tuple:
        return self._sockaddr

    def resolve(self) -> None:
        try:
            infos = socket.getaddrinfo(
                self.target.host, self.target.port, type=socket.SOCK_STREAM
            )
        except socket.gaierror as exc:
            raise PeerLocatorError(f"cannot resolve outbound service {self.target}") from exc
        family, _type, _proto, _canon, sockaddr = infos[0]
        self._family = family
        self._sockaddr = sockaddr

    def locate(self, sock: socket.socket) -> socket.socket:
        logger.debug("Connecting to outbound service")
        peer = socket.socket(self._family, socket.SOCK_STREAM)
        try:
            peer.settimeout(self.connect_timeout)
            peer.connect(self._sockaddr)
        except OSError:
            peer.close()
            raise
        return peer

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.target})"
