from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set

import aiosqlite

from .proto import iso, utc_now

log = logging.getLogger("yoping.store")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@dataclass
class UserRecord:
    username: str
    delivery_token: Optional[str] = None
    total_yos_received: int = 0
    is_online: bool = False
    last_seen: Optional[datetime] = None
    friends: Set[str] = field(default_factory=set)
    blocked: Set[str] = field(default_factory=set)


class UserStore(Protocol):
    """User / relationship records, addressed by username."""

    async def find_by_identity(self, identity: str) -> Optional[UserRecord]: ...

    async def is_friend(self, identity: str, other: str) -> bool:
        """True if `other` is in `identity`'s friend list."""
        ...

    async def is_blocked_by(self, identity: str, other: str) -> bool:
        """True if `identity` is in `other`'s block list."""
        ...

    async def set_online(self, identity: str, online: bool, last_seen: datetime) -> None: ...

    async def set_delivery_token(self, identity: str, token: Optional[str]) -> None: ...

    async def clear_delivery_token(self, identity: str, expected: Optional[str] = None) -> bool:
        """Drop the token only while it still equals `expected` (any token if None)."""
        ...

    async def increment_received_counter(self, identity: str, sender: str) -> int: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryUserStore:
    """Dict-backed store used for tests and `db_path: ":memory:"` dev runs."""

    def __init__(self) -> None:
        self.users: Dict[str, UserRecord] = {}
        self.history: Dict[str, List[tuple[str, datetime]]] = {}

    def _ensure(self, identity: str) -> UserRecord:
        user = self.users.get(identity)
        if user is None:
            user = UserRecord(username=identity)
            self.users[identity] = user
        return user

    async def add_user(self, identity: str, *, token: Optional[str] = None) -> UserRecord:
        user = self._ensure(identity)
        if token is not None:
            user.delivery_token = token
        return user

    async def add_friend(self, identity: str, other: str) -> None:
        self._ensure(identity).friends.add(other)
        self._ensure(other).friends.add(identity)

    async def block(self, identity: str, other: str) -> None:
        """`identity` blocks `other`. Friend lists are left untouched."""
        self._ensure(identity).blocked.add(other)

    async def find_by_identity(self, identity: str) -> Optional[UserRecord]:
        return self.users.get(identity)

    async def is_friend(self, identity: str, other: str) -> bool:
        user = self.users.get(identity)
        return bool(user and other in user.friends)

    async def is_blocked_by(self, identity: str, other: str) -> bool:
        user = self.users.get(other)
        return bool(user and identity in user.blocked)

    async def set_online(self, identity: str, online: bool, last_seen: datetime) -> None:
        user = self._ensure(identity)
        user.is_online = online
        user.last_seen = last_seen

    async def set_delivery_token(self, identity: str, token: Optional[str]) -> None:
        user = self.users.get(identity)
        if user is not None:
            user.delivery_token = token

    async def clear_delivery_token(self, identity: str, expected: Optional[str] = None) -> bool:
        user = self.users.get(identity)
        if user is None or user.delivery_token is None:
            return False
        if expected is not None and user.delivery_token != expected:
            return False
        user.delivery_token = None
        return True

    async def increment_received_counter(self, identity: str, sender: str) -> int:
        user = self._ensure(identity)
        user.total_yos_received += 1
        self.history.setdefault(identity, []).append((sender, utc_now()))
        return user.total_yos_received

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------

class SQLiteUserStore:
    """aiosqlite-backed store. Call `init()` before use."""

    def __init__(self, path: str = "yoping.db") -> None:
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("store not initialised; call init() first")
        return self._db

    async def init(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
        await self._db.commit()
        log.info("Opened user store at %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _ensure(self, identity: str) -> None:
        await self.db.execute(
            "INSERT OR IGNORE INTO users(username, created_at) VALUES(?, ?)",
            (identity, iso(utc_now())),
        )

    async def add_user(self, identity: str, *, token: Optional[str] = None) -> None:
        async with self._write_lock:
            await self._ensure(identity)
            if token is not None:
                await self.db.execute("UPDATE users SET delivery_token=? WHERE username=?", (token, identity))
            await self.db.commit()

    async def add_friend(self, identity: str, other: str) -> None:
        async with self._write_lock:
            await self._ensure(identity)
            await self._ensure(other)
            await self.db.executemany(
                "INSERT OR IGNORE INTO friends(username, friend) VALUES(?, ?)",
                [(identity, other), (other, identity)],
            )
            await self.db.commit()

    async def block(self, identity: str, other: str) -> None:
        async with self._write_lock:
            await self._ensure(identity)
            await self.db.execute("INSERT OR IGNORE INTO blocks(username, blocked) VALUES(?, ?)", (identity, other))
            await self.db.commit()

    async def find_by_identity(self, identity: str) -> Optional[UserRecord]:
        async with self.db.execute("SELECT * FROM users WHERE username=?", (identity,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        async with self.db.execute("SELECT friend FROM friends WHERE username=?", (identity,)) as cur:
            friends = {r["friend"] for r in await cur.fetchall()}
        async with self.db.execute("SELECT blocked FROM blocks WHERE username=?", (identity,)) as cur:
            blocked = {r["blocked"] for r in await cur.fetchall()}
        last_seen = row["last_seen"]
        return UserRecord(
            username=row["username"],
            delivery_token=row["delivery_token"],
            total_yos_received=row["total_yos_received"],
            is_online=bool(row["is_online"]),
            last_seen=datetime.fromisoformat(last_seen.replace("Z", "+00:00")) if last_seen else None,
            friends=friends,
            blocked=blocked,
        )

    async def is_friend(self, identity: str, other: str) -> bool:
        async with self.db.execute(
            "SELECT 1 FROM friends WHERE username=? AND friend=?", (identity, other)
        ) as cur:
            return await cur.fetchone() is not None

    async def is_blocked_by(self, identity: str, other: str) -> bool:
        async with self.db.execute(
            "SELECT 1 FROM blocks WHERE username=? AND blocked=?", (other, identity)
        ) as cur:
            return await cur.fetchone() is not None

    async def set_online(self, identity: str, online: bool, last_seen: datetime) -> None:
        async with self._write_lock:
            await self._ensure(identity)
            await self.db.execute(
                "UPDATE users SET is_online=?, last_seen=? WHERE username=?",
                (int(online), iso(last_seen), identity),
            )
            await self.db.commit()

    async def set_delivery_token(self, identity: str, token: Optional[str]) -> None:
        async with self._write_lock:
            await self.db.execute("UPDATE users SET delivery_token=? WHERE username=?", (token, identity))
            await self.db.commit()

    async def clear_delivery_token(self, identity: str, expected: Optional[str] = None) -> bool:
        async with self._write_lock:
            if expected is None:
                sql, params = "UPDATE users SET delivery_token=NULL WHERE username=? AND delivery_token IS NOT NULL", (identity,)
            else:
                sql, params = "UPDATE users SET delivery_token=NULL WHERE username=? AND delivery_token=?", (identity, expected)
            async with self.db.execute(sql, params) as cur:
                changed = cur.rowcount > 0
            await self.db.commit()
            return changed

    async def increment_received_counter(self, identity: str, sender: str) -> int:
        async with self._write_lock:
            now = iso(utc_now())
            async with self.db.execute(
                "INSERT INTO users(username, created_at, total_yos_received) VALUES(?, ?, 1) "
                "ON CONFLICT(username) DO UPDATE SET total_yos_received = total_yos_received + 1 "
                "RETURNING total_yos_received",
                (identity, now),
            ) as cur:
                row = await cur.fetchone()
            await self.db.execute(
                "INSERT INTO yos_received(recipient, sender, ts) VALUES(?, ?, ?)", (identity, sender, now)
            )
            await self.db.commit()
            return int(row["total_yos_received"])


__all__ = ["UserRecord", "UserStore", "MemoryUserStore", "SQLiteUserStore", "SCHEMA_PATH"]
