from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from . import proto
from .presence import PresenceRegistry
from .router import LiveHandle
from .store import UserStore
from .tasks import TaskSupervisor

log = logging.getLogger("yoping.lifecycle")


class ConnState(str, Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


@dataclass
class Session:
    handle: Any
    state: ConnState = ConnState.CONNECTING
    identity: Optional[str] = None
    connected_at: datetime = field(default_factory=proto.utc_now)
    joined_at: Optional[datetime] = None


class ConnectionLifecycle:
    """Owns CONNECTING -> JOINED -> DISCONNECTED for every connection.

    This is the only writer of the presence registry. Disconnect uses the registry's
    compare-and-delete, and the offline side effects (store flag, userOffline broadcast)
    only run when that actually removed the mapping; a superseded connection closing
    late must not mark a freshly reconnected user offline.
    """

    def __init__(self, registry: PresenceRegistry, store: UserStore, supervisor: TaskSupervisor) -> None:
        self.registry = registry
        self.store = store
        self.supervisor = supervisor
        self._sessions: Dict[int, Session] = {}

    def open(self, handle: LiveHandle) -> Session:
        session = Session(handle=handle)
        self._sessions[id(handle)] = session
        return session

    def session_for(self, handle: LiveHandle) -> Optional[Session]:
        session = self._sessions.get(id(handle))
        if session is not None and session.handle is handle:
            return session
        return None

    def identity_of(self, handle: LiveHandle) -> Optional[str]:
        session = self.session_for(handle)
        if session is None or session.state is not ConnState.JOINED:
            return None
        return session.identity

    def require_identity(self, handle: LiveHandle) -> str:
        identity = self.identity_of(handle)
        if identity is None:
            raise proto.NotJoinedError("connection has not joined")
        return identity

    async def join(self, handle: LiveHandle, raw: Any) -> proto.JoinRequest:
        """Handle a join announcement. Raises ProtocolError for unusable payloads."""
        req = proto.parse_join(raw)
        session = self.session_for(handle) or self.open(handle)
        if session.state is ConnState.DISCONNECTED:
            log.debug("Ignored join for %s on a closed connection", req.identity)
            return req

        if session.state is ConnState.JOINED and session.identity != req.identity:
            # Same socket, new identity: release the old one first.
            await self._go_offline(session)

        self.registry.register(req.identity, handle)
        session.identity = req.identity
        session.state = ConnState.JOINED
        session.joined_at = proto.utc_now()
        handle.join_channel(req.identity)

        await self._mark_online(req.identity, req.token, session.joined_at)
        self.supervisor.spawn(
            handle.broadcast(proto.EV_USER_ONLINE, req.identity, exclude_self=True),
            name=f"broadcast-online:{req.identity}",
        )
        log.info("%s joined%s", req.identity, " (push token updated)" if req.token else "")
        return req

    async def disconnect(self, handle: LiveHandle) -> None:
        session = self._sessions.pop(id(handle), None)
        if session is None or session.handle is not handle:
            return
        was_joined = session.state is ConnState.JOINED
        session.state = ConnState.DISCONNECTED
        if was_joined:
            await self._go_offline(session)

    async def _go_offline(self, session: Session) -> None:
        identity = session.identity
        if identity is None:
            return
        if not self.registry.unregister(identity, session.handle):
            log.debug("Connection for %s was already superseded; staying online", identity)
            return
        try:
            await self.store.set_online(identity, False, proto.utc_now())
        except Exception:
            log.exception("Failed to mark %s offline", identity)
        self.supervisor.spawn(
            session.handle.broadcast(proto.EV_USER_OFFLINE, identity, exclude_self=True),
            name=f"broadcast-offline:{identity}",
        )
        log.info("%s disconnected and is offline", identity)

    async def _mark_online(self, identity: str, token: Optional[str], now: datetime) -> None:
        try:
            await self.store.set_online(identity, True, now)
            if token:
                await self.store.set_delivery_token(identity, token)
        except Exception:
            log.exception("Failed to update store on join for %s", identity)

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["ConnState", "Session", "ConnectionLifecycle"]
