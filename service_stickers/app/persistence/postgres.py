"""
PostgreSQL persistence layer for the Stickers Service.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import StoreUnavailableError, AlreadyOwnedError
from ..entitlements.models import Sticker, StickerSet

STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

WALLET_LOG_CHARGE = 0
WALLET_LOG_COST = 1


@dataclass(frozen=True)
class StoredMessage:
    """A persisted chat message."""
    id: int
    room_id: int
    user_id: int
    content: str
    created_at: datetime


@dataclass(frozen=True)
class WalletLogEntry:
    """One row of the wallet ledger."""
    id: int
    user_id: int
    type: int
    money: int
    detail: str
    created_at: datetime


class StickerStoreSession:
    """Store operations bound to one connection (and its transaction, if any)."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def get_sticker_set(self, sticker_set_id: int) -> Optional[StickerSet]:
        """Load a sticker set with its stickers, or None if it does not exist."""
        row = await self.conn.fetchrow("""
            SELECT id, name, author, price FROM sticker_sets WHERE id = $1
        """, sticker_set_id)
        if not row:
            return None

        sticker_rows = await self.conn.fetch("""
            SELECT id, sticker_set_id, name FROM stickers
            WHERE sticker_set_id = $1
            ORDER BY id
        """, sticker_set_id)

        return StickerSet(
            id=row['id'],
            name=row['name'],
            author=row['author'],
            price=row['price'],
            stickers=tuple(
                Sticker(id=s['id'], sticker_set_id=s['sticker_set_id'], name=s['name'])
                for s in sticker_rows
            )
        )

    async def list_owned_sticker_sets(self, user_id: int) -> List[StickerSet]:
        """Return every sticker set the user owns, stickers included."""
        rows = await self.conn.fetch("""
            SELECT s.id, s.name, s.author, s.price,
                   COALESCE(
                       json_agg(json_build_object('id', k.id, 'name', k.name) ORDER BY k.id)
                           FILTER (WHERE k.id IS NOT NULL),
                       '[]'
                   ) AS stickers
            FROM sticker_sets s
            JOIN sticker_set_user_mappings m ON m.sticker_set_id = s.id
            LEFT JOIN stickers k ON k.sticker_set_id = s.id
            WHERE m.user_id = $1
            GROUP BY s.id
            ORDER BY s.id
        """, user_id)

        return [self._row_to_sticker_set(row) for row in rows]

    async def ownership_exists(self, user_id: int, sticker_set_id: int) -> bool:
        """Check whether the user already owns the sticker set."""
        found = await self.conn.fetchval("""
            SELECT 1 FROM sticker_set_user_mappings
            WHERE user_id = $1 AND sticker_set_id = $2
        """, user_id, sticker_set_id)
        return found is not None

    async def record_ownership(self, user_id: int, sticker_set_id: int) -> None:
        """Bind the sticker set to the user."""
        try:
            await self.conn.execute("""
                INSERT INTO sticker_set_user_mappings (user_id, sticker_set_id)
                VALUES ($1, $2)
            """, user_id, sticker_set_id)
        except asyncpg.UniqueViolationError as e:
            raise AlreadyOwnedError(user_id, sticker_set_id) from e

    async def debit(self, user_id: int, amount: int) -> bool:
        """Take money from the wallet; False when the balance does not cover it."""
        balance = await self.conn.fetchval("""
            UPDATE wallets SET money = money - $2, updated_at = NOW()
            WHERE user_id = $1 AND money >= $2
            RETURNING money
        """, user_id, amount)
        return balance is not None

    async def credit(self, user_id: int, amount: int) -> int:
        """Add money to the wallet, creating it on first use. Returns the new balance."""
        return await self.conn.fetchval("""
            INSERT INTO wallets (user_id, money) VALUES ($1, $2)
            ON CONFLICT (user_id)
            DO UPDATE SET money = wallets.money + EXCLUDED.money, updated_at = NOW()
            RETURNING money
        """, user_id, amount)

    async def get_balance(self, user_id: int) -> Optional[int]:
        """Current balance, or None when the user has never charged a wallet."""
        return await self.conn.fetchval("SELECT money FROM wallets WHERE user_id = $1", user_id)

    async def write_wallet_log(self, user_id: int, entry_type: int, amount: int, detail: str) -> int:
        """Append a wallet ledger entry and return its id."""
        return await self.conn.fetchval("""
            INSERT INTO wallet_logs (user_id, type, money, detail)
            VALUES ($1, $2, $3, $4)
            RETURNING id
        """, user_id, entry_type, amount, detail)

    async def list_wallet_logs(self, user_id: int, since: datetime, limit: int) -> List[WalletLogEntry]:
        """Ledger entries created at or after ``since``, oldest first."""
        rows = await self.conn.fetch("""
            SELECT id, user_id, type, money, detail, created_at FROM wallet_logs
            WHERE user_id = $1 AND created_at >= $2
            ORDER BY created_at, id
            LIMIT $3
        """, user_id, since, limit)
        return [
            WalletLogEntry(
                id=row['id'],
                user_id=row['user_id'],
                type=row['type'],
                money=row['money'],
                detail=row['detail'] or "",
                created_at=row['created_at']
            )
            for row in rows
        ]

    async def user_in_room(self, room_id: int, user_id: int) -> bool:
        found = await self.conn.fetchval("""
            SELECT 1 FROM room_users WHERE room_id = $1 AND user_id = $2
        """, room_id, user_id)
        return found is not None

    async def add_message(self, room_id: int, user_id: int, content: str) -> StoredMessage:
        row = await self.conn.fetchrow("""
            INSERT INTO messages (room_id, user_id, content)
            VALUES ($1, $2, $3)
            RETURNING id, room_id, user_id, content, created_at
        """, room_id, user_id, content)
        return self._row_to_message(row)

    async def fetch_messages(self, room_id: int, cursor: datetime, size: int) -> List[StoredMessage]:
        """Page through a room's messages from ``cursor``.

        A positive ``size`` reads forward (newer than the cursor, oldest
        first); a negative one reads backward (older than the cursor,
        newest first).
        """
        if size == 0:
            return []
        if size > 0:
            query = """
                SELECT id, room_id, user_id, content, created_at FROM messages
                WHERE room_id = $1 AND created_at > $2
                ORDER BY created_at, id
                LIMIT $3
            """
        else:
            query = """
                SELECT id, room_id, user_id, content, created_at FROM messages
                WHERE room_id = $1 AND created_at < $2
                ORDER BY created_at DESC, id DESC
                LIMIT $3
            """
        rows = await self.conn.fetch(query, room_id, cursor, abs(size))
        return [self._row_to_message(row) for row in rows]

    def _row_to_message(self, row) -> StoredMessage:
        return StoredMessage(
            id=row['id'],
            room_id=row['room_id'],
            user_id=row['user_id'],
            content=row['content'],
            created_at=row['created_at']
        )

    def _row_to_sticker_set(self, row) -> StickerSet:
        """Convert an aggregated database row to a StickerSet."""
        stickers = row['stickers']
        if isinstance(stickers, str):
            stickers = json.loads(stickers)
        return StickerSet(
            id=row['id'],
            name=row['name'],
            author=row['author'],
            price=row['price'],
            stickers=tuple(
                Sticker(id=s['id'], sticker_set_id=row['id'], name=s['name'])
                for s in stickers
            )
        )


class PostgreSQLPersistence:
    """PostgreSQL-backed entitlement store."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30.0
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("stickers.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started")

        except STORE_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise StoreUnavailableError(f"postgres start failed: {e}") from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS sticker_sets (
                    id BIGSERIAL PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    author VARCHAR(255) NOT NULL,
                    price BIGINT NOT NULL CHECK (price >= 0 AND price <= 4294967295),
                    folder_path TEXT,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS stickers (
                    id BIGSERIAL PRIMARY KEY,
                    sticker_set_id BIGINT NOT NULL REFERENCES sticker_sets(id),
                    name VARCHAR(255) NOT NULL,
                    filename TEXT,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS sticker_set_user_mappings (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL,
                    sticker_set_id BIGINT NOT NULL REFERENCES sticker_sets(id),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    UNIQUE (user_id, sticker_set_id)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS wallets (
                    user_id BIGINT PRIMARY KEY,
                    money BIGINT NOT NULL DEFAULT 0 CHECK (money >= 0),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS wallet_logs (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL,
                    type SMALLINT NOT NULL,
                    money BIGINT NOT NULL,
                    detail TEXT,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS room_users (
                    room_id BIGINT NOT NULL,
                    user_id BIGINT NOT NULL,
                    PRIMARY KEY (room_id, user_id)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id BIGSERIAL PRIMARY KEY,
                    room_id BIGINT NOT NULL,
                    user_id BIGINT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_stickers_set ON stickers(sticker_set_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sticker_user_mappings_user ON sticker_set_user_mappings(user_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_wallet_logs_user ON wallet_logs(user_id, created_at);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, created_at);
            """)

    def _pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreUnavailableError("postgres persistence not started")
        return self.pool

    @asynccontextmanager
    async def session(self) -> AsyncIterator[StickerStoreSession]:
        """Autocommit session on a pooled connection."""
        try:
            async with self._pool().acquire() as conn:
                yield StickerStoreSession(conn)
        except STORE_ERRORS as e:
            self.logger.error("Store operation failed", error=str(e))
            raise StoreUnavailableError(details={"error": str(e)}) from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StickerStoreSession]:
        """Session inside one transaction; any exception rolls it back."""
        try:
            async with self._pool().acquire() as conn:
                async with conn.transaction():
                    yield StickerStoreSession(conn)
        except STORE_ERRORS as e:
            self.logger.error("Store transaction failed", error=str(e))
            raise StoreUnavailableError(details={"error": str(e)}) from e

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self._pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (StoreUnavailableError,) + STORE_ERRORS:
            return False
