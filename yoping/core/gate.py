from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .store import UserStore

log = logging.getLogger("yoping.gate")

UNKNOWN_RECIPIENT = "unknown_recipient"
NOT_FRIENDS = "not_friends"
BLOCKED_BY_RECIPIENT = "blocked_by_recipient"

DENY_MESSAGES = {
    UNKNOWN_RECIPIENT: "Recipient not found",
    NOT_FRIENDS: "Can only send Yos to friends",
    BLOCKED_BY_RECIPIENT: "You are blocked by this user and cannot send Yos",
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)

    @property
    def message(self) -> Optional[str]:
        return DENY_MESSAGES.get(self.reason) if self.reason else None


class RelationshipGate:
    """Decides whether `sender` may Yo `recipient`.

    Checks run in order and stop at the first failure:
      1) the recipient exists                        -> unknown_recipient
      2) the recipient is on the sender's friend list -> not_friends
      3) the sender is not on the recipient's blocks  -> blocked_by_recipient
    The block check runs even when the friend check passes, so a block silences a
    friend entry that was left behind by inconsistent data.
    """

    def __init__(self, store: UserStore) -> None:
        self.store = store

    async def admit(self, sender: str, recipient: str) -> Decision:
        if await self.store.find_by_identity(recipient) is None:
            return self._deny(sender, recipient, UNKNOWN_RECIPIENT)
        if not await self.store.is_friend(sender, recipient):
            return self._deny(sender, recipient, NOT_FRIENDS)
        if await self.store.is_blocked_by(sender, recipient):
            return self._deny(sender, recipient, BLOCKED_BY_RECIPIENT)
        return Decision.allow()

    @staticmethod
    def _deny(sender: str, recipient: str, reason: str) -> Decision:
        log.debug("Denied Yo %s -> %s: %s", sender, recipient, reason)
        return Decision.deny(reason)


__all__ = [
    "Decision",
    "RelationshipGate",
    "UNKNOWN_RECIPIENT",
    "NOT_FRIENDS",
    "BLOCKED_BY_RECIPIENT",
    "DENY_MESSAGES",
]
