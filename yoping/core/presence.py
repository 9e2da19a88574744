from __future__ import annotations

import logging
from typing import Dict, Generic, List, Optional, TypeVar


"""
Presence Registry
-----------------
In-memory map of identity -> the one live connection handle currently serving it.

  • register() installs a handle unconditionally (last-registration-wins)
  • unregister() is compare-and-delete: it only removes the mapping if it still points
    at the handle being released, so a late disconnect from a superseded connection
    cannot evict the newer session
  • lookup() / is_online() are O(1) reads

Only the connection lifecycle manager mutates the registry; routers read it. All handlers
run on one event loop, so the compare-and-delete guard needs no locking. Nothing here is
persisted; a restart starts everyone offline.
"""


log = logging.getLogger("yoping.presence")

H = TypeVar("H")


class PresenceRegistry(Generic[H]):
    """identity -> live handle."""

    def __init__(self) -> None:
        self._handles: Dict[str, H] = {}

    def register(self, identity: str, handle: H) -> Optional[H]:
        """Install `handle` for `identity`, returning the handle it displaced (if any).

        The displaced handle is not notified; it simply stops receiving routed events.
        """
        if not identity:
            raise ValueError("identity is required")
        previous = self._handles.get(identity)
        self._handles[identity] = handle
        if previous is not None and previous is not handle:
            log.info("Presence for %s superseded by a newer connection", identity)
        else:
            log.debug("Registered presence for %s", identity)
        return previous if previous is not handle else None

    def unregister(self, identity: str, handle: H) -> bool:
        """Remove the mapping only if `handle` is still the registered one."""
        current = self._handles.get(identity)
        if current is None:
            return False
        if current is not handle:
            log.debug("Ignored stale unregister for %s", identity)
            return False
        del self._handles[identity]
        log.debug("Unregistered presence for %s", identity)
        return True

    def lookup(self, identity: str) -> Optional[H]:
        return self._handles.get(identity)

    def is_online(self, identity: str) -> bool:
        return identity in self._handles

    def online_identities(self) -> List[str]:
        return sorted(self._handles)

    def __len__(self) -> int:
        return len(self._handles)


__all__ = ["PresenceRegistry"]
