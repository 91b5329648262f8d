"""Address of a peer or server taking part in the network."""

from __future__ import annotations

from dataclasses import dataclass

_MAX_PORT = 0xFFFF
_MAX_ID = 0xFFFF_FFFF_FFFF_FFFF


@dataclass(frozen=True)
class SourceInfo:
    """Identifier, IPv4 address and port of a client or server."""

    peer_id: int = 0
    ip_addr: str = ""
    port: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.peer_id, bool) or not isinstance(self.peer_id, int):
            raise TypeError("peer_id must be an integer")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise TypeError("port must be an integer")
        if not isinstance(self.ip_addr, str):
            raise TypeError("ip_addr must be a string")
        if not 0 <= self.peer_id <= _MAX_ID:
            raise ValueError(f"peer_id out of range: {self.peer_id}")
        if not 0 <= self.port <= _MAX_PORT:
            raise ValueError(f"port out of range: {self.port}")