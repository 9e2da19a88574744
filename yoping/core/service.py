from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from . import proto
from .gate import BLOCKED_BY_RECIPIENT, Decision, RelationshipGate
from .router import RECIPIENT_UNREACHABLE, DeliveryOutcome, DeliveryRouter
from .store import UserStore

log = logging.getLogger("yoping.service")

UNREACHABLE_MESSAGE = "Recipient could not be reached"


@dataclass
class SendAttempt:
    """One Yo transmission; lives only while the send is being handled."""

    sender: str
    recipient: str
    timestamp: datetime
    decision: Optional[Decision] = None
    outcome: Optional[DeliveryOutcome] = None

    @property
    def delivery_path(self) -> str:
        return self.outcome.path if self.outcome else "none"

    @property
    def success(self) -> bool:
        return bool(self.decision and self.decision.allowed and self.outcome and self.outcome.success)

    @property
    def reason(self) -> Optional[str]:
        if self.decision is not None and not self.decision.allowed:
            return self.decision.reason
        if self.outcome is not None and not self.outcome.success:
            return RECIPIENT_UNREACHABLE
        return None

    def reply(self) -> Dict[str, Any]:
        """Body of the yoSent event returned to the sender."""
        if self.success:
            return {"to": self.recipient, "success": True}
        reason = self.reason or RECIPIENT_UNREACHABLE
        body: Dict[str, Any] = {"to": self.recipient, "success": False, "reason": reason}
        if self.decision is not None and not self.decision.allowed:
            body["error"] = self.decision.message
        else:
            body["error"] = UNREACHABLE_MESSAGE
        if reason == BLOCKED_BY_RECIPIENT:
            body["blocked"] = True
        return body


class YoService:
    """gate -> counter increment -> router, for a single send."""

    def __init__(self, gate: RelationshipGate, router: DeliveryRouter, store: UserStore) -> None:
        self.gate = gate
        self.router = router
        self.store = store

    async def send_yo(self, sender: str, recipient: str) -> SendAttempt:
        attempt = SendAttempt(sender=sender, recipient=recipient, timestamp=proto.utc_now())
        attempt.decision = await self.gate.admit(sender, recipient)
        if not attempt.decision.allowed:
            return attempt

        total = await self.store.increment_received_counter(recipient, sender)
        attempt.outcome = await self.router.send(
            sender,
            recipient,
            attempt.decision,
            running_total=total,
            ts=attempt.timestamp,
        )
        return attempt


__all__ = ["SendAttempt", "YoService", "UNREACHABLE_MESSAGE"]
