from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ---------------------------------------------------------------------------
# Event frame model (live transport layer)
# ---------------------------------------------------------------------------

class Frame(BaseModel):
    """JSON frame carried over the WebSocket: {"event": ..., "data": ...}."""

    event: str
    data: Any = None

    @field_validator("event")
    @classmethod
    def _event_non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("event must be non-empty")
        return value


# Client -> server
EV_JOIN = "join"
EV_SEND_YO = "sendYo"

# Server -> client
EV_YO_RECEIVED = "yoReceived"
EV_YO_SENT = "yoSent"
EV_USER_ONLINE = "userOnline"
EV_USER_OFFLINE = "userOffline"
EV_ERROR = "error"

# Opaque side events relayed unchanged
EV_FRIEND_ADDED = "friendAdded"
EV_FRIEND_REQUEST_RECEIVED = "friendRequestReceived"
EV_FRIEND_REQUEST_ACCEPTED = "friendRequestAccepted"

# Codes carried by `error` events. Send rejections travel as yoSent reasons instead.
ERROR_CODES = {
    "BAD_FRAME",
    "UNKNOWN_EVENT",
    "BAD_JOIN",
}


class YopingError(Exception):
    """Base class for errors raised by the core."""


class ProtocolError(YopingError, ValueError):
    """A frame or payload could not be understood."""

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


class NotJoinedError(YopingError):
    """An identity-bound event arrived on a connection that never joined."""


# ---------------------------------------------------------------------------
# Join payloads
# ---------------------------------------------------------------------------

class LegacyJoin(BaseModel):
    """Historical join shape: the payload is the bare username string."""

    identity: str

    @property
    def token(self) -> Optional[str]:
        return None


class FullJoin(BaseModel):
    """Structured join: {"username": ..., "expoPushToken": ...}."""

    identity: str = Field(alias="username")
    token: Optional[str] = Field(default=None, alias="expoPushToken")

    model_config = ConfigDict(populate_by_name=True)


JoinRequest = Union[LegacyJoin, FullJoin]


def parse_join(raw: Any) -> JoinRequest:
    """Normalise either join shape; raise ProtocolError when neither fits."""

    if isinstance(raw, str):
        identity = raw.strip()
        if not identity:
            raise ProtocolError("BAD_JOIN", "empty username")
        return LegacyJoin(identity=identity)
    if isinstance(raw, dict):
        try:
            req = FullJoin.model_validate(raw)
        except ValidationError as exc:
            raise ProtocolError("BAD_JOIN", f"invalid join payload: {exc.errors()[0]['msg']}") from exc
        identity = req.identity.strip()
        if not identity:
            raise ProtocolError("BAD_JOIN", "empty username")
        token = req.token or None
        return FullJoin(username=identity, expoPushToken=token)
    raise ProtocolError("BAD_JOIN", "join payload must be a string or an object")


# ---------------------------------------------------------------------------
# Send payloads
# ---------------------------------------------------------------------------

class SendYoRequest(BaseModel):
    to_user: str = Field(alias="toUser")
    from_user: Optional[str] = Field(default=None, alias="fromUser")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("to_user")
    @classmethod
    def _to_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("toUser must be non-empty")
        return value


def parse_send_yo(raw: Any) -> SendYoRequest:
    if not isinstance(raw, dict):
        raise ProtocolError("BAD_FRAME", "sendYo payload must be an object")
    try:
        return SendYoRequest.model_validate(raw)
    except ValidationError as exc:
        raise ProtocolError("BAD_FRAME", f"invalid sendYo payload: {exc.errors()[0]['msg']}") from exc


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z, as JS clients expect."""

    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def encode_frame(event: str, data: Any = None) -> str:
    return json.dumps({"event": event, "data": data}, separators=(",", ":"))


def decode_frame(raw: Union[str, bytes]) -> Frame:
    try:
        return Frame.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise ProtocolError("BAD_FRAME", "invalid frame") from exc


def error_payload(code: str, detail: str) -> Dict[str, str]:
    if code not in ERROR_CODES:
        raise ValueError(f"unknown error code {code!r}")
    return {"code": code, "detail": detail}


__all__ = [
    "Frame",
    "ERROR_CODES",
    "YopingError",
    "ProtocolError",
    "NotJoinedError",
    "LegacyJoin",
    "FullJoin",
    "JoinRequest",
    "parse_join",
    "SendYoRequest",
    "parse_send_yo",
    "utc_now",
    "iso",
    "encode_frame",
    "decode_frame",
    "error_payload",
]
