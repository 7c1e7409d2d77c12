from __future__ import annotations

import logging
import socket

import openziti

from peerrelay.common import PeerLocatorError

logger = logging.getLogger(__name__)


def load_context(identity_path: str) -> openziti.ZitiContext:
    ctx, err = openziti.load(identity_path)
    if err != 0:
        raise RuntimeError(
            f"Failed to load Ziti identity from {identity_path!r} (err={err}). "
            "Ensure the identity JSON exists and is readable."
        )
    return ctx


class ZitiServiceLocator:
    """Pairs every accepted socket with a connection to an OpenZiti service.

    The outbound side is addressed by *service name* rather than IP:port, so
    the service behind the relay needs no public listener.
    """

    def __init__(self, ctx: openziti.ZitiContext, service: str) -> None:
        self.ctx = ctx
        self.service = service

    @classmethod
    def from_identity(cls, identity_path: str, service: str) -> "ZitiServiceLocator":
        return cls(load_context(identity_path), service)

    def locate(self, sock: socket.socket) -> socket.socket:
        logger.debug("Dialing Ziti service %r", self.service)
        try:
            return self.ctx.connect(self.service)
        except Exception as exc:
            raise PeerLocatorError(f"cannot dial Ziti service {self.service!r}") from exc

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.service!r})"
