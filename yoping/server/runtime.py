from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from yoping.config import ServerConfig
from yoping.core import proto
from yoping.core.gate import RelationshipGate
from yoping.core.lifecycle import ConnectionLifecycle
from yoping.core.presence import PresenceRegistry
from yoping.core.push import ExpoPushTransport, PushDispatcher, PushTransport
from yoping.core.router import RECIPIENT_UNREACHABLE, DeliveryRouter
from yoping.core.service import YoService
from yoping.core.store import MemoryUserStore, SQLiteUserStore, UserStore
from yoping.core.tasks import TaskSupervisor
from yoping.core.ws import ChannelHub, Connection

log = logging.getLogger("yoping.server.runtime")


class ServerRuntime:
    """WebSocket front end wiring presence, gate, router and push together."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        store: Optional[UserStore] = None,
        push_transport: Optional[PushTransport] = None,
    ) -> None:
        self.cfg = config
        self._store = store
        self._push_transport = push_transport

        self.supervisor = TaskSupervisor()
        self.registry: PresenceRegistry[Connection] = PresenceRegistry()
        self.hub = ChannelHub()

        self.store: Optional[UserStore] = None
        self.dispatcher: Optional[PushDispatcher] = None
        self.router: Optional[DeliveryRouter] = None
        self.service: Optional[YoService] = None
        self.lifecycle: Optional[ConnectionLifecycle] = None

        self._ws_server: Optional[Server] = None
        self._owned_store = False
        self._owned_transport: Optional[ExpoPushTransport] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.store = await self._open_store()

        transport = self._push_transport
        if transport is None and self.cfg.push.enabled:
            self._owned_transport = ExpoPushTransport(
                access_token=self.cfg.push.access_token,
                push_url=self.cfg.push.url,
                receipts_url=self.cfg.push.receipts_url,
                timeout=self.cfg.push.timeout,
            )
            transport = self._owned_transport
        if transport is not None:
            self.dispatcher = PushDispatcher(
                transport,
                self.supervisor,
                on_token_invalid=self.store.clear_delivery_token,
                receipt_delay=self.cfg.push.receipt_delay,
            )
        else:
            log.warning("Push notifications disabled; Yos reach online users only")

        gate = RelationshipGate(self.store)
        self.router = DeliveryRouter(self.registry, self.store, self.dispatcher, self.supervisor)
        self.service = YoService(gate, self.router, self.store)
        self.lifecycle = ConnectionLifecycle(self.registry, self.store, self.supervisor)

        self._ws_server = await serve(
            self._handle_connection,
            self.cfg.host,
            self.cfg.port,
            ping_interval=self.cfg.ping_interval,
            ping_timeout=self.cfg.ping_timeout,
        )
        log.info("Yo server listening on ws://%s:%d", self.cfg.host, self.port)

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        await self.supervisor.cancel_all()

        if self._owned_transport is not None:
            await self._owned_transport.aclose()
            self._owned_transport = None
        if self._owned_store and self.store is not None:
            await self.store.close()
        self.store = None

    @property
    def port(self) -> int:
        if self._ws_server is not None:
            for sock in self._ws_server.sockets:
                return sock.getsockname()[1]
        return self.cfg.port

    async def _open_store(self) -> UserStore:
        if self._store is not None:
            return self._store
        self._owned_store = True
        if self.cfg.in_memory:
            log.warning("Using in-memory user store; nothing survives a restart")
            return MemoryUserStore()
        store = SQLiteUserStore(self.cfg.db_path)
        await store.init()
        return store

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket, self.hub)
        self.hub.attach(conn)
        self.lifecycle.open(conn)
        log.debug("Accepted connection from %s", conn.remote)
        try:
            async for raw in websocket:
                try:
                    frame = proto.decode_frame(raw)
                except proto.ProtocolError as exc:
                    await self._send_error(conn, exc.code, exc.detail)
                    continue
                await self._dispatch(conn, frame)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self.lifecycle.disconnect(conn)
            self.hub.detach(conn)

    async def _dispatch(self, conn: Connection, frame: proto.Frame) -> None:
        if frame.event == proto.EV_JOIN:
            await self._handle_join(conn, frame.data)
        elif frame.event == proto.EV_SEND_YO:
            await self._handle_send_yo(conn, frame.data)
        else:
            await self._send_error(conn, "UNKNOWN_EVENT", f"unsupported event {frame.event}")

    async def _handle_join(self, conn: Connection, data: Any) -> None:
        try:
            await self.lifecycle.join(conn, data)
        except proto.ProtocolError as exc:
            await self._send_error(conn, exc.code, exc.detail)

    async def _handle_send_yo(self, conn: Connection, data: Any) -> None:
        try:
            req = proto.parse_send_yo(data)
        except proto.ProtocolError as exc:
            await conn.emit(proto.EV_YO_SENT, {"success": False, "reason": "bad_request", "error": exc.detail})
            return
        try:
            sender = self.lifecycle.require_identity(conn)
        except proto.NotJoinedError:
            await conn.emit(
                proto.EV_YO_SENT,
                {"to": req.to_user, "success": False, "reason": "not_joined", "error": "Join before sending Yos"},
            )
            return
        if req.from_user and req.from_user != sender:
            await conn.emit(
                proto.EV_YO_SENT,
                {"to": req.to_user, "success": False, "reason": "sender_mismatch", "error": "fromUser does not match this connection"},
            )
            return
        await conn.emit(proto.EV_YO_SENT, await self.send_yo(sender, req.to_user))

    async def send_yo(self, sender: str, recipient: str) -> Dict[str, Any]:
        """Run one send under the configured timeout and build the yoSent body."""
        try:
            attempt = await asyncio.wait_for(self.service.send_yo(sender, recipient), self.cfg.send_timeout)
        except asyncio.TimeoutError:
            log.warning("Yo %s -> %s timed out after %.1fs", sender, recipient, self.cfg.send_timeout)
            return {"to": recipient, "success": False, "reason": RECIPIENT_UNREACHABLE, "error": "Timed out delivering Yo"}
        except Exception:
            log.exception("Error sending Yo %s -> %s", sender, recipient)
            return {"to": recipient, "success": False, "reason": "internal_error", "error": "Internal server error"}
        return attempt.reply()

    async def notify(self, identity: str, event: str, payload: Any) -> bool:
        """Relay a side event (friendAdded, friendRequestReceived, ...) if `identity` is online."""
        return await self.router.relay(identity, event, payload)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def _send_error(self, conn: Connection, code: str, detail: str) -> None:
        await conn.emit(proto.EV_ERROR, proto.error_payload(code, detail))


__all__ = ["ServerRuntime"]
