from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from . import proto
from .gate import Decision
from .presence import PresenceRegistry
from .push import PushDispatcher, PushResult
from .store import UserStore
from .tasks import TaskSupervisor

log = logging.getLogger("yoping.router")

RECIPIENT_UNREACHABLE = "recipient_unreachable"


class LiveHandle(Protocol):
    async def emit(self, event: str, payload: Any = None) -> None: ...

    def join_channel(self, name: str) -> None: ...

    async def broadcast(self, event: str, payload: Any = None, exclude_self: bool = True) -> int: ...


@dataclass
class DeliveryOutcome:
    live_delivered: bool = False
    push_attempted: bool = False
    push_succeeded: bool = False
    push: Optional[PushResult] = None

    @property
    def success(self) -> bool:
        return self.live_delivered or self.push_succeeded

    @property
    def reason(self) -> Optional[str]:
        return None if self.success else RECIPIENT_UNREACHABLE

    @property
    def path(self) -> str:
        if self.live_delivered and self.push_attempted:
            return "live+push"
        if self.live_delivered:
            return "live"
        if self.push_attempted:
            return "push"
        return "none"


class DeliveryRouter:
    """Delivers an admitted Yo over every channel the recipient currently has.

    Live and push are not exclusive: when the recipient is online *and* has a push
    token both are used, so a socket that is registered but not actually being read
    cannot swallow the Yo. The client de-duplicates on (fromUser, timestamp).
    Relationship checks are the caller's job; the router only transports.
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        store: UserStore,
        dispatcher: Optional[PushDispatcher],
        supervisor: TaskSupervisor,
    ) -> None:
        self.registry = registry
        self.store = store
        self.dispatcher = dispatcher
        self.supervisor = supervisor

    async def send(
        self,
        sender: str,
        recipient: str,
        decision: Decision,
        *,
        running_total: int,
        ts: Optional[datetime] = None,
    ) -> DeliveryOutcome:
        if not decision.allowed:
            raise ValueError(f"cannot route a denied Yo ({decision.reason})")
        ts = ts or proto.utc_now()
        outcome = DeliveryOutcome()

        handle = self.registry.lookup(recipient)
        if handle is not None:
            payload = {"from": sender, "timestamp": proto.iso(ts), "totalYos": running_total}
            try:
                await handle.emit(proto.EV_YO_RECEIVED, payload)
                outcome.live_delivered = True
            except Exception as exc:
                log.warning("Live delivery %s -> %s failed: %s", sender, recipient, exc)

        record = await self.store.find_by_identity(recipient)
        token = record.delivery_token if record else None
        if token and self.dispatcher is not None:
            outcome.push_attempted = True
            result = await self._push(token, sender, recipient, ts)
            outcome.push = result
            outcome.push_succeeded = result.success
            if result.should_remove_token:
                self.supervisor.spawn(self._clear_token(recipient, token), name=f"clear-token:{recipient}")

        log.info(
            "Yo %s -> %s via %s (%s)",
            sender,
            recipient,
            outcome.path,
            "delivered" if outcome.success else RECIPIENT_UNREACHABLE,
        )
        return outcome

    async def relay(self, identity: str, event: str, payload: Any) -> bool:
        """Pass an opaque side event (friendAdded, ...) to a live handle unchanged."""
        handle = self.registry.lookup(identity)
        if handle is None:
            return False
        try:
            await handle.emit(event, payload)
        except Exception as exc:
            log.warning("Relay of %s to %s failed: %s", event, identity, exc)
            return False
        return True

    async def _push(self, token: str, sender: str, recipient: str, ts: datetime) -> PushResult:
        try:
            return await self.dispatcher.send_yo(token, sender, recipient=recipient, ts=ts)
        except Exception as exc:
            log.exception("Push dispatch %s -> %s raised", sender, recipient)
            return PushResult(False, error=str(exc))

    async def _clear_token(self, recipient: str, token: str) -> None:
        try:
            cleared = await self.store.clear_delivery_token(recipient, token)
        except Exception:
            log.exception("Failed to clear push token for %s", recipient)
            return
        if cleared:
            log.info("Removed unregistered push token for %s", recipient)
        else:
            log.debug("Push token for %s changed since send; kept", recipient)


__all__ = ["DeliveryRouter", "DeliveryOutcome", "LiveHandle", "RECIPIENT_UNREACHABLE"]
