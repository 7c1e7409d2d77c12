from __future__ import annotations

import socket
from typing import Dict, Iterator, List, Optional, Tuple

Pair = Tuple[socket.socket, socket.socket]


class PairIndex:
    """Bidirectional association between the two sockets of each relay pair.

    Every pair is stored as two directed entries (a -> b and b -> a) that are
    inserted and removed together, so either side can find its counterpart
    in O(1) and no entry ever outlives its mirror.
    """

    def __init__(self) -> None:
        self._peers: Dict[socket.socket, socket.socket] = {}

    def __len__(self) -> int:
        return len(self._peers) // 2

    def __contains__(self, sock: object) -> bool:
        return sock in self._peers

    def insert_pair(self, a: socket.socket, b: socket.socket) -> None:
        if a is b:
            raise ValueError("a socket cannot be paired with itself")
        if a in self._peers or b in self._peers:
            raise ValueError("socket is already paired")
        self._peers[a] = b
        self._peers[b] = a

    def lookup(self, sock: socket.socket) -> Optional[socket.socket]:
        return self._peers.get(sock)

    def remove_pair(self, sock: socket.socket) -> Tuple[socket.socket, ...]:
        """Remove ``sock`` and its peer; return the sockets actually removed.

        Removing a socket that is not indexed is a no-op and returns ``()``.
        """
        peer = self._peers.pop(sock, None)
        if peer is None:
            return ()
        self._peers.pop(peer, None)
        return (sock, peer)

    def pairs(self) -> Iterator[Pair]:
        seen = set()
        for a, b in self._peers.items():
            if b in seen:
                continue
            seen.add(a)
            yield a, b

    def drain(self) -> List[Pair]:
        drained = list(self.pairs())
        self._peers.clear()
        return drained
