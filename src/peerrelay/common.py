from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    @classmethod
    def parse(cls, value: str) -> "Endpoint":
        """Parse ``host:port`` (IPv6 hosts may be bracketed: ``[::1]:443``)."""
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"expected host:port, got {value!r}")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        return cls(host, int(port))

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


class RelayError(Exception):
    """Base class for relay errors surfaced to the owning process."""


class BindError(RelayError):
    """The listening socket could not be bound; no relay activity occurred."""


class PeerLocatorError(RelayError):
    """A peer locator could not produce a usable peer for an accepted socket."""


class ServerFailure(RelayError):
    """The forwarding loop stopped because of an unexpected internal error."""
