from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx

from .proto import YopingError, iso, utc_now
from .tasks import TaskSupervisor


"""
Push Dispatcher
---------------
Wraps a push-notification transport (Expo in production) for Yo delivery.

  • Token format is checked before any network call; malformed tokens fail fast
  • A successful hand-off yields a ticket; the real outcome is only known from the
    receipt, which is checked later on a supervised background task
  • A DeviceNotRegistered outcome (ticket or receipt) is the only signal that the
    token should be dropped from the store; other error classes are logged
  • Batch sends are split into provider-sized chunks; one failing chunk does not
    stop the others
"""


log = logging.getLogger("yoping.push")

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_RECEIPTS_URL = "https://exp.host/--/api/v2/push/getReceipts"

PUSH_CHUNK_LIMIT = 100
RECEIPT_CHUNK_LIMIT = 300
DEFAULT_RECEIPT_DELAY = 15 * 60.0

_EXPO_TOKEN_RE = re.compile(r"^Expo(nent)?PushToken\[.+\]$")
_UUID_TOKEN_RE = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


class PushErrorKind(str, Enum):
    INVALID_TOKEN = "invalid_token"
    MESSAGE_TOO_BIG = "message_too_big"
    RATE_EXCEEDED = "rate_exceeded"
    INVALID_CREDENTIALS = "invalid_credentials"
    DEVICE_NOT_REGISTERED = "device_not_registered"
    TRANSPORT = "transport"


_PROVIDER_ERRORS = {
    "DeviceNotRegistered": PushErrorKind.DEVICE_NOT_REGISTERED,
    "MessageTooBig": PushErrorKind.MESSAGE_TOO_BIG,
    "MessageRateExceeded": PushErrorKind.RATE_EXCEEDED,
    "InvalidCredentials": PushErrorKind.INVALID_CREDENTIALS,
    "InvalidProviderToken": PushErrorKind.INVALID_CREDENTIALS,
}


def classify(code: Optional[str]) -> PushErrorKind:
    return _PROVIDER_ERRORS.get(code or "", PushErrorKind.TRANSPORT)


class PushTransportError(YopingError):
    def __init__(self, kind: PushErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass
class PushResult:
    success: bool
    ticket_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[PushErrorKind] = None
    should_remove_token: bool = False


@dataclass
class BatchResult:
    success: bool
    success_count: int = 0
    failure_count: int = 0
    total_sent: int = 0
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class PushTransport(Protocol):
    def validate_token_format(self, token: str) -> bool: ...

    async def send(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Hand messages to the provider; returns one ticket per message, in order."""
        ...

    async def get_receipts(self, ticket_ids: List[str]) -> Dict[str, Dict[str, Any]]: ...


def is_expo_push_token(token: Any) -> bool:
    if not isinstance(token, str):
        return False
    return bool(_EXPO_TOKEN_RE.match(token) or _UUID_TOKEN_RE.match(token))


class ExpoPushTransport:
    """Expo push service over HTTP (httpx)."""

    def __init__(
        self,
        *,
        access_token: Optional[str] = None,
        push_url: str = EXPO_PUSH_URL,
        receipts_url: str = EXPO_RECEIPTS_URL,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.push_url = push_url
        self.receipts_url = receipts_url
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    def validate_token_format(self, token: str) -> bool:
        return is_expo_push_token(token)

    async def send(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        body = await self._post(self.push_url, messages)
        tickets = body.get("data")
        if not isinstance(tickets, list):
            raise PushTransportError(PushErrorKind.TRANSPORT, f"unexpected push response: {body.get('errors')}")
        return tickets

    async def get_receipts(self, ticket_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        body = await self._post(self.receipts_url, {"ids": ticket_ids})
        receipts = body.get("data")
        if not isinstance(receipts, dict):
            raise PushTransportError(PushErrorKind.TRANSPORT, f"unexpected receipts response: {body.get('errors')}")
        return receipts

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, url: str, payload: Any) -> Dict[str, Any]:
        try:
            resp = await self._client.post(url, json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            raise PushTransportError(PushErrorKind.TRANSPORT, f"push request failed: {exc}") from exc
        if resp.status_code == 429:
            raise PushTransportError(PushErrorKind.RATE_EXCEEDED, "push provider rate limit exceeded")
        if resp.status_code in (401, 403):
            raise PushTransportError(PushErrorKind.INVALID_CREDENTIALS, "push provider rejected credentials")
        if resp.status_code == 413:
            raise PushTransportError(PushErrorKind.MESSAGE_TOO_BIG, "push payload too large")
        if resp.is_error:
            raise PushTransportError(PushErrorKind.TRANSPORT, f"push provider returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise PushTransportError(PushErrorKind.TRANSPORT, "push provider returned invalid JSON") from exc


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def build_yo_message(token: str, from_user: str, *, ts: Optional[datetime] = None) -> Dict[str, Any]:
    """Notification for one Yo. `data` lets the client de-duplicate against a live toast."""

    return {
        "to": token,
        "sound": "yo-sound.wav",
        "title": "Yo! 👋",
        "body": f"{from_user} sent you a Yo!",
        "data": {
            "type": "yo",
            "fromUser": from_user,
            "timestamp": iso(ts or utc_now()),
            "action": "yo_received",
        },
        "priority": "high",
        "ttl": 3600,
        "channelId": "yo-notifications",
        "badge": 1,
        "categoryId": "yo-category",
    }


def chunked(items: Sequence[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

# (identity, token the push was sent to)
TokenInvalidFn = Callable[[str, Optional[str]], Awaitable[object]]
TicketOwner = Tuple[Optional[str], Optional[str]]


class PushDispatcher:
    def __init__(
        self,
        transport: PushTransport,
        supervisor: TaskSupervisor,
        *,
        on_token_invalid: Optional[TokenInvalidFn] = None,
        receipt_delay: float = DEFAULT_RECEIPT_DELAY,
    ) -> None:
        self.transport = transport
        self.supervisor = supervisor
        self.on_token_invalid = on_token_invalid
        self.receipt_delay = receipt_delay

    async def send_yo(
        self,
        token: str,
        from_user: str,
        *,
        recipient: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> PushResult:
        if not self.transport.validate_token_format(token):
            log.warning("Invalid push token for %s; not sending", recipient or "?")
            return PushResult(False, error="Invalid push token", error_kind=PushErrorKind.INVALID_TOKEN)

        message = build_yo_message(token, from_user, ts=ts)
        try:
            tickets = await self.transport.send([message])
        except PushTransportError as exc:
            log.warning("Push send for %s failed (%s): %s", recipient or "?", exc.kind.value, exc)
            return PushResult(False, error=str(exc), error_kind=exc.kind)
        if not tickets:
            return PushResult(False, error="No tickets received", error_kind=PushErrorKind.TRANSPORT)

        result = self._ticket_result(tickets[0], recipient)
        if result.success and result.ticket_id:
            self._schedule_receipt_checks({result.ticket_id: (recipient, token)})
        return result

    async def send_yo_many(
        self,
        tokens: Iterable[str],
        from_user: str,
        *,
        recipient: Optional[str] = None,
    ) -> BatchResult:
        valid = [t for t in tokens if self.transport.validate_token_format(t)]
        if not valid:
            return BatchResult(False, error="No valid push tokens")

        ts = utc_now()
        messages = [build_yo_message(t, from_user, ts=ts) for t in valid]
        ok = failed = 0
        to_check: Dict[str, TicketOwner] = {}
        for chunk in chunked(messages, PUSH_CHUNK_LIMIT):
            try:
                tickets = await self.transport.send(chunk)
            except PushTransportError as exc:
                log.warning("Push chunk of %d failed (%s): %s", len(chunk), exc.kind.value, exc)
                failed += len(chunk)
                continue
            for message, ticket in zip(chunk, tickets):
                result = self._ticket_result(ticket, recipient)
                if result.success:
                    ok += 1
                    if result.ticket_id:
                        to_check[result.ticket_id] = (recipient, message["to"])
                else:
                    failed += 1
            failed += max(0, len(chunk) - len(tickets))

        log.info("Sent Yo push from %s to %d/%d devices", from_user, ok, len(valid))
        if to_check:
            self._schedule_receipt_checks(to_check)
        return BatchResult(True, success_count=ok, failure_count=failed, total_sent=len(valid))

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def check_receipt(
        self,
        ticket_id: str,
        recipient: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Optional[str]:
        """Fetch one receipt and act on it. Returns the receipt status, or None if unknown.

        `token` is the address the ticket was issued for; a DeviceNotRegistered
        receipt only clears the recipient's token while it still equals it.
        """
        try:
            receipts = await self.transport.get_receipts([ticket_id])
        except PushTransportError as exc:
            log.warning("Receipt fetch for %s failed (%s): %s", ticket_id, exc.kind.value, exc)
            return None
        receipt = receipts.get(ticket_id)
        if receipt is None:
            log.info("Receipt not yet available for %s", ticket_id)
            return None
        await self._handle_receipt(ticket_id, receipt, recipient, token)
        return receipt.get("status")

    async def check_receipts(self, tickets: Mapping[str, TicketOwner]) -> None:
        """Batch receipt check: ticket id -> (owning identity, token sent to)."""
        ids = list(tickets)
        for chunk in chunked(ids, RECEIPT_CHUNK_LIMIT):
            try:
                receipts = await self.transport.get_receipts(chunk)
            except PushTransportError as exc:
                log.warning("Receipt chunk of %d failed (%s): %s", len(chunk), exc.kind.value, exc)
                continue
            for ticket_id in chunk:
                receipt = receipts.get(ticket_id)
                if receipt is None:
                    log.info("Receipt not yet available for %s", ticket_id)
                    continue
                recipient, token = tickets[ticket_id]
                await self._handle_receipt(ticket_id, receipt, recipient, token)

    def _schedule_receipt_checks(self, tickets: Mapping[str, TicketOwner]) -> None:
        if len(tickets) == 1:
            ((ticket_id, (recipient, token)),) = tickets.items()
            coro = self.check_receipt(ticket_id, recipient, token)
        else:
            coro = self.check_receipts(dict(tickets))
        self.supervisor.spawn_later(self.receipt_delay, coro, name="push-receipt-check")

    async def _handle_receipt(
        self,
        ticket_id: str,
        receipt: Mapping[str, Any],
        recipient: Optional[str],
        token: Optional[str],
    ) -> None:
        status = receipt.get("status")
        if status == "ok":
            log.debug("Push %s delivered", ticket_id)
            return
        code = (receipt.get("details") or {}).get("error")
        kind = classify(code)
        log.warning("Push %s failed (%s): %s", ticket_id, kind.value, receipt.get("message"))
        if kind is PushErrorKind.DEVICE_NOT_REGISTERED and recipient:
            await self.clear_token(recipient, token)

    async def clear_token(self, recipient: str, token: Optional[str] = None) -> None:
        if self.on_token_invalid is None:
            log.info("Token for %s is no longer valid; no cleanup hook configured", recipient)
            return
        try:
            await self.on_token_invalid(recipient, token)
        except Exception:
            log.exception("Failed to clear push token for %s", recipient)
        else:
            log.info("Invalidated push token for %s", recipient)

    # ------------------------------------------------------------------

    @staticmethod
    def _ticket_result(ticket: Mapping[str, Any], recipient: Optional[str]) -> PushResult:
        if ticket.get("status") == "ok":
            return PushResult(True, ticket_id=ticket.get("id"))
        code = (ticket.get("details") or {}).get("error")
        kind = classify(code)
        log.warning("Push ticket for %s rejected (%s): %s", recipient or "?", kind.value, ticket.get("message"))
        return PushResult(
            False,
            error=ticket.get("message") or code or "push rejected",
            error_kind=kind,
            should_remove_token=kind is PushErrorKind.DEVICE_NOT_REGISTERED,
        )


__all__ = [
    "PushErrorKind",
    "PushTransportError",
    "PushResult",
    "BatchResult",
    "PushTransport",
    "ExpoPushTransport",
    "PushDispatcher",
    "build_yo_message",
    "is_expo_push_token",
    "classify",
    "chunked",
]
