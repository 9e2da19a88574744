from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import pytest

from yoping.core.presence import PresenceRegistry
from yoping.core.push import PushDispatcher, PushErrorKind, PushTransportError, is_expo_push_token
from yoping.core.store import MemoryUserStore
from yoping.core.tasks import TaskSupervisor


class FakeHandle:
    """Stands in for a live WebSocket connection."""

    def __init__(self, name: str = "handle") -> None:
        self.name = name
        self.sent: List[tuple] = []
        self.channels: set[str] = set()
        self.broadcasts: List[tuple] = []
        self.fail_emit = False

    async def emit(self, event: str, payload: Any = None) -> None:
        if self.fail_emit:
            raise ConnectionError("socket gone")
        self.sent.append((event, payload))

    def join_channel(self, name: str) -> None:
        self.channels.add(name)

    async def broadcast(self, event: str, payload: Any = None, exclude_self: bool = True) -> int:
        self.broadcasts.append((event, payload, exclude_self))
        return 0

    def events(self, name: str) -> List[Any]:
        return [payload for event, payload in self.sent if event == name]

    def __repr__(self) -> str:
        return f"FakeHandle({self.name})"


class FakePushTransport:
    """Records push hand-offs; tickets and receipts are scripted per test."""

    def __init__(self) -> None:
        self.sent: List[List[Dict[str, Any]]] = []
        self.receipt_requests: List[List[str]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.ticket_for: Optional[Any] = None
        self.send_error: Optional[PushTransportError] = None
        self.fail_chunks: set[int] = set()
        self._ids = itertools.count(1)

    def validate_token_format(self, token: str) -> bool:
        return is_expo_push_token(token)

    async def send(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        chunk_no = len(self.sent)
        self.sent.append(messages)
        if self.send_error is not None:
            raise self.send_error
        if chunk_no in self.fail_chunks:
            raise PushTransportError(PushErrorKind.TRANSPORT, f"chunk {chunk_no} failed")
        if self.ticket_for is not None:
            return [self.ticket_for(m) for m in messages]
        return [{"status": "ok", "id": f"ticket-{next(self._ids)}"} for _ in messages]

    async def get_receipts(self, ticket_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        self.receipt_requests.append(list(ticket_ids))
        return {tid: self.receipts[tid] for tid in ticket_ids if tid in self.receipts}

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [m for chunk in self.sent for m in chunk]


VALID_TOKEN = "ExponentPushToken[bob-device-1]"


@pytest.fixture
def make_handle():
    return FakeHandle


@pytest.fixture
def store():
    return MemoryUserStore()


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def supervisor():
    return TaskSupervisor()


@pytest.fixture
def push_transport():
    return FakePushTransport()


@pytest.fixture
def cleared_tokens():
    return []


@pytest.fixture
def dispatcher(push_transport, supervisor, cleared_tokens):
    async def on_token_invalid(identity: str, token: Optional[str]) -> None:
        cleared_tokens.append((identity, token))

    return PushDispatcher(push_transport, supervisor, on_token_invalid=on_token_invalid, receipt_delay=0)


@pytest.fixture
def valid_token():
    return VALID_TOKEN
