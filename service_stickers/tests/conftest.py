"""
Shared fixtures for Stickers service tests.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Set, Tuple

import fakeredis
import pytest

from shared.errors import AlreadyOwnedError, StoreUnavailableError
from service_stickers.app.cache.sticker_cache import StickerCache
from service_stickers.app.entitlements.background import BackgroundTaskRunner
from service_stickers.app.entitlements.models import Sticker, StickerSet
from service_stickers.app.entitlements.synchronizer import StickerEntitlementSynchronizer
from service_stickers.app.persistence.postgres import StoredMessage, WalletLogEntry

CLOCK_START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_sticker_set(sticker_set_id: int, sticker_ids=(), price: int = 10, name: str = None) -> StickerSet:
    """Build a sticker set with the given sticker ids."""
    return StickerSet(
        id=sticker_set_id,
        name=name or f"set-{sticker_set_id}",
        author="author",
        price=price,
        stickers=tuple(
            Sticker(id=sticker_id, sticker_set_id=sticker_set_id, name=f"sticker-{sticker_id}")
            for sticker_id in sticker_ids
        )
    )


class InMemoryStoreData:
    """Tables of the in-memory store."""

    def __init__(self):
        self.sticker_sets: Dict[int, StickerSet] = {}
        self.ownership: Set[Tuple[int, int]] = set()
        self.wallets: Dict[int, int] = {}
        self.wallet_logs: List[WalletLogEntry] = []
        self.room_users: Set[Tuple[int, int]] = set()
        self.messages: List[StoredMessage] = []
        self.ticks = 0

    def now(self) -> datetime:
        """Store clock; one second passes per row written."""
        self.ticks += 1
        return CLOCK_START + timedelta(seconds=self.ticks)

    def snapshot(self) -> dict:
        return copy.deepcopy(self.__dict__)

    def restore(self, state: dict) -> None:
        self.__dict__.update(state)


class InMemoryStoreSession:
    """Same operations as StickerStoreSession, over InMemoryStoreData."""

    def __init__(self, persistence: "InMemoryPersistence"):
        self.persistence = persistence
        self.data = persistence.data

    async def get_sticker_set(self, sticker_set_id):
        return self.data.sticker_sets.get(sticker_set_id)

    async def list_owned_sticker_sets(self, user_id):
        self.persistence.list_calls += 1
        return [
            self.data.sticker_sets[set_id]
            for owner, set_id in sorted(self.data.ownership)
            if owner == user_id
        ]

    async def ownership_exists(self, user_id, sticker_set_id):
        return (user_id, sticker_set_id) in self.data.ownership

    async def record_ownership(self, user_id, sticker_set_id):
        if (user_id, sticker_set_id) in self.data.ownership:
            raise AlreadyOwnedError(user_id, sticker_set_id)
        self.data.ownership.add((user_id, sticker_set_id))

    async def debit(self, user_id, amount):
        balance = self.data.wallets.get(user_id)
        if balance is None or balance < amount:
            return False
        self.data.wallets[user_id] = balance - amount
        return True

    async def credit(self, user_id, amount):
        self.data.wallets[user_id] = self.data.wallets.get(user_id, 0) + amount
        return self.data.wallets[user_id]

    async def get_balance(self, user_id):
        return self.data.wallets.get(user_id)

    async def write_wallet_log(self, user_id, entry_type, amount, detail):
        entry = WalletLogEntry(
            id=len(self.data.wallet_logs) + 1,
            user_id=user_id,
            type=entry_type,
            money=amount,
            detail=detail,
            created_at=self.data.now()
        )
        self.data.wallet_logs.append(entry)
        return entry.id

    async def list_wallet_logs(self, user_id, since, limit):
        entries = [e for e in self.data.wallet_logs if e.user_id == user_id and e.created_at >= since]
        return entries[:limit]

    async def user_in_room(self, room_id, user_id):
        return (room_id, user_id) in self.data.room_users

    async def add_message(self, room_id, user_id, content):
        message = StoredMessage(
            id=len(self.data.messages) + 1,
            room_id=room_id,
            user_id=user_id,
            content=content,
            created_at=self.data.now()
        )
        self.data.messages.append(message)
        return message

    async def fetch_messages(self, room_id, cursor, size):
        in_room = [m for m in self.data.messages if m.room_id == room_id]
        if size > 0:
            return [m for m in in_room if m.created_at > cursor][:size]
        if size < 0:
            older = [m for m in in_room if m.created_at < cursor]
            return list(reversed(older))[:-size]
        return []


class InMemoryPersistence:
    """Store double with PostgreSQLPersistence's session/transaction API."""

    def __init__(self):
        self.data = InMemoryStoreData()
        self.fail = False
        self.list_calls = 0

    async def start(self):
        pass

    async def stop(self):
        pass

    async def health_check(self):
        return not self.fail

    def _check_available(self):
        if self.fail:
            raise StoreUnavailableError(details={"error": "connection refused"})

    @asynccontextmanager
    async def session(self):
        self._check_available()
        yield InMemoryStoreSession(self)

    @asynccontextmanager
    async def transaction(self):
        self._check_available()
        state = self.data.snapshot()
        try:
            yield InMemoryStoreSession(self)
        except BaseException:
            self.data.restore(state)
            raise

    # test helpers

    def add_sticker_set(self, sticker_set: StickerSet) -> StickerSet:
        self.data.sticker_sets[sticker_set.id] = sticker_set
        return sticker_set

    def grant(self, user_id: int, sticker_set: StickerSet) -> None:
        self.add_sticker_set(sticker_set)
        self.data.ownership.add((user_id, sticker_set.id))

    def join_room(self, room_id: int, user_id: int) -> None:
        self.data.room_users.add((room_id, user_id))


class BoundedPersistence(InMemoryPersistence):
    """InMemoryPersistence whose sessions share a fixed number of connections.

    Like asyncpg's pool, a session waits until a connection is free, so a
    caller that opens a second session while holding one can starve.
    """

    def __init__(self, pool_size: int):
        super().__init__()
        self.connections = asyncio.Semaphore(pool_size)

    @asynccontextmanager
    async def session(self):
        async with self.connections:
            async with super().session() as store:
                yield store

    @asynccontextmanager
    async def transaction(self):
        async with self.connections:
            async with super().transaction() as store:
                yield store


@pytest.fixture
def redis_server():
    """Isolated fake Redis server."""
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(redis_server):
    """Async client on the fake server."""
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def sticker_cache(fake_redis):
    """StickerCache over fake Redis."""
    return StickerCache("redis://localhost:6379/0", ttl_seconds=600, redis_client=fake_redis)


@pytest.fixture
def persistence():
    """In-memory store."""
    return InMemoryPersistence()


@pytest.fixture
def background():
    """Background runner for cache rebuilds."""
    return BackgroundTaskRunner(concurrency=2)


@pytest.fixture
def synchronizer(sticker_cache, persistence, background):
    """Synchronizer wired to fake Redis and the in-memory store."""
    return StickerEntitlementSynchronizer(sticker_cache, persistence, background)
