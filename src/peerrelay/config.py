from __future__ import annotations

import os
from dataclasses import dataclass, field

from peerrelay.common import Endpoint

TRANSFER_BUFFER_SIZE = 64 * 1024
DEFAULT_BIND = "127.0.0.1"
DEFAULT_PORT = 8443
DEFAULT_FLUSH_TIMEOUT = 10.0
DEFAULT_BACKLOG = 128


def env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(raw, 10)
    except ValueError:
        return int(default)


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


@dataclass(frozen=True)
class RelayConfig:
    """Tunables for one relay server.

    ``listen`` is the local accept endpoint. It is loopback-bound unless the
    caller explicitly asks for another address.
    """

    listen: Endpoint = field(default_factory=lambda: Endpoint(DEFAULT_BIND, DEFAULT_PORT))
    buffer_size: int = TRANSFER_BUFFER_SIZE
    flush_timeout: float = DEFAULT_FLUSH_TIMEOUT
    backlog: int = DEFAULT_BACKLOG

    def __post_init__(self) -> None:
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        if self.flush_timeout <= 0:
            raise ValueError("flush_timeout must be positive")

    @classmethod
    def from_env(cls) -> "RelayConfig":
        return cls(
            listen=Endpoint(
                env_str("PEERRELAY_BIND", DEFAULT_BIND),
                env_int("PEERRELAY_PORT", DEFAULT_PORT),
            ),
            flush_timeout=env_float("PEERRELAY_FLUSH_TIMEOUT", DEFAULT_FLUSH_TIMEOUT),
        )
