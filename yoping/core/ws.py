from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import websockets
from websockets.asyncio.server import ServerConnection

from .proto import encode_frame

log = logging.getLogger("yoping.ws")


class ChannelHub:
    """Every live connection on this process, plus named channels for fan-out."""

    def __init__(self) -> None:
        self.connections: Set["Connection"] = set()
        self.channels: Dict[str, Set["Connection"]] = {}

    def attach(self, conn: "Connection") -> None:
        self.connections.add(conn)

    def detach(self, conn: "Connection") -> None:
        self.connections.discard(conn)
        for name in list(conn.channels):
            members = self.channels.get(name)
            if members is None:
                continue
            members.discard(conn)
            if not members:
                del self.channels[name]
        conn.channels.clear()

    def join(self, name: str, conn: "Connection") -> None:
        self.channels.setdefault(name, set()).add(conn)
        conn.channels.add(name)

    async def broadcast(self, event: str, payload: Any, *, exclude: Optional["Connection"] = None) -> int:
        """Send to every attached connection except `exclude`. Returns how many got it."""
        return await self._fanout(self.connections, event, payload, exclude)

    @staticmethod
    async def _fanout(targets: Set["Connection"], event: str, payload: Any, exclude: Optional["Connection"]) -> int:
        sent = 0
        for conn in list(targets):
            if conn is exclude:
                continue
            try:
                await conn.emit(event, payload)
                sent += 1
            except websockets.ConnectionClosed:
                log.debug("Skipped %s to closed connection %s", event, conn.remote)
        return sent


class Connection:
    """Live handle for one WebSocket client."""

    def __init__(self, websocket: ServerConnection, hub: ChannelHub) -> None:
        self.websocket = websocket
        self.hub = hub
        self.channels: Set[str] = set()
        self._send_lock = asyncio.Lock()

    async def emit(self, event: str, payload: Any = None) -> None:
        text = encode_frame(event, payload)
        async with self._send_lock:
            await self.websocket.send(text)

    def join_channel(self, name: str) -> None:
        self.hub.join(name, self)

    async def broadcast(self, event: str, payload: Any = None, exclude_self: bool = True) -> int:
        return await self.hub.broadcast(event, payload, exclude=self if exclude_self else None)

    @property
    def remote(self) -> str:
        peer = self.websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ChannelHub", "Connection"]
