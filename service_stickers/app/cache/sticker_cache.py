"""
Redis caching layer for per-user sticker entitlements.

Two independent key families are kept per user:

- ``sticker::user:{user_id}`` is a hash with one field per owned sticker
  set (field = set id, value = ``StickerSetCacheInfo`` JSON).
- ``sticker::user:{user_id}::StickerSetId:{set_id}`` is a set of the
  sticker ids owned in that set, used for membership checks without
  decoding the whole snapshot.

Redis offers no atomicity across the two families, so the cache is only
eventually consistent with the store; callers rebuild from the store on a
miss or on any error raised here.
"""

import asyncio
from typing import Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError, WatchError
from opentelemetry import trace

from shared.logging import get_logger
from shared.errors import CacheUnavailableError, CacheCorruptError
from ..entitlements.models import EntitlementSnapshot, StickerSetCacheInfo

tracer = trace.get_tracer(__name__)

CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

DEFAULT_TTL_SECONDS = 3600


def _is_wrong_type(exc: Exception) -> bool:
    return isinstance(exc, ResponseError) and str(exc).startswith("WRONGTYPE")


class StickerCache:
    """Redis cache of which stickers each user owns."""

    KEY_PREFIX = "sticker::user:"

    def __init__(
        self,
        redis_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        socket_timeout: float = 5.0,
        redis_client: Optional[redis.Redis] = None
    ):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.socket_timeout = socket_timeout
        self.logger = get_logger("stickers.cache.redis")
        self.redis: Optional[redis.Redis] = redis_client

    async def start(self):
        """Start the Redis cache.

        An unreachable Redis does not fail startup: the client connects
        lazily and readers fall back to the store until it is back.
        """
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30
            )
        try:
            await self.redis.ping()
            self.logger.info("Redis cache started", ttl_seconds=self.ttl_seconds)
        except CACHE_ERRORS as e:
            self.logger.warning("Redis unreachable at startup; serving from the store", error=str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise CacheUnavailableError("redis cache not started")
        return self.redis

    def _infos_key(self, user_id: int) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    def _id_set_prefix(self, user_id: int) -> str:
        return f"{self.KEY_PREFIX}{user_id}::StickerSetId:"

    def _id_set_key(self, user_id: int, sticker_set_id: int) -> str:
        return f"{self._id_set_prefix(user_id)}{sticker_set_id}"

    async def get_all(self, user_id: int) -> Optional[EntitlementSnapshot]:
        """Return the user's cached snapshot, or None if no snapshot key exists.

        Raises CacheUnavailableError when Redis fails and CacheCorruptError
        when the stored data cannot be decoded. A successful read extends
        the snapshot TTL.
        """
        client = self._client()
        key = self._infos_key(user_id)
        try:
            raw = await client.hgetall(key)
        except CACHE_ERRORS as e:
            if _is_wrong_type(e):
                raise CacheCorruptError("snapshot key holds the wrong type", {"key": key}) from e
            raise CacheUnavailableError(f"redis HGETALL failed: {e}", {"key": key}) from e

        if not raw:
            return None

        snapshot = self._decode_snapshot(key, raw)

        try:
            await client.expire(key, self.ttl_seconds)
        except CACHE_ERRORS as e:
            raise CacheUnavailableError(f"redis EXPIRE failed: {e}", {"key": key}) from e

        return snapshot

    def _decode_snapshot(self, key: str, raw: Dict[str, str]) -> EntitlementSnapshot:
        snapshot: EntitlementSnapshot = {}
        for field, payload in raw.items():
            if not field.isascii() or not field.isdigit():
                raise CacheCorruptError("invalid sticker set id field", {"key": key, "field": field})
            try:
                info = StickerSetCacheInfo.model_validate_json(payload)
            except ValueError as e:
                raise CacheCorruptError(
                    "sticker set payload does not decode",
                    {"key": key, "field": field, "error": str(e)}
                ) from e
            if info.id != int(field):
                raise CacheCorruptError("sticker set id mismatch", {"key": key, "field": field})
            snapshot[info.id] = info
        return snapshot

    async def insert_incremental(self, user_id: int, info: StickerSetCacheInfo) -> bool:
        """Merge one sticker set into an existing snapshot.

        Returns False without writing anything when the user has no
        snapshot key; the next read then rebuilds from the store.
        """
        client = self._client()
        key = self._infos_key(user_id)

        with tracer.start_as_current_span("StickerCache.insert_incremental"):
            try:
                # The existence check and the field write see the same hash.
                async with client.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    if not await pipe.exists(key):
                        return False
                    pipe.multi()
                    pipe.hset(key, str(info.id), info.model_dump_json())
                    pipe.expire(key, self.ttl_seconds)
                    await pipe.execute()
            except WatchError:
                self.logger.info(
                    "Snapshot changed during incremental insert; skipped",
                    user_id=user_id,
                    sticker_set_id=info.id
                )
                return False
            except CACHE_ERRORS as e:
                raise CacheUnavailableError(f"redis incremental insert failed: {e}", {"key": key}) from e

            await self._write_id_sets(user_id, [info])

        self.logger.debug("Inserted sticker set into snapshot", user_id=user_id, sticker_set_id=info.id)
        return True

    async def store_all(self, user_id: int, infos: EntitlementSnapshot) -> None:
        """Replace the user's snapshot and the membership sets of every given set."""
        if not infos:
            # Redis cannot hold an empty hash; the user stays a cache miss.
            self.logger.debug("No sticker sets to cache", user_id=user_id)
            return

        client = self._client()
        key = self._infos_key(user_id)

        with tracer.start_as_current_span("StickerCache.store_all"):
            # Membership sets go first so a visible hash implies its sets.
            await self._write_id_sets(user_id, infos.values())
            try:
                pipe = client.pipeline(transaction=False)
                pipe.delete(key)
                pipe.hset(key, mapping={str(info.id): info.model_dump_json() for info in infos.values()})
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
            except CACHE_ERRORS as e:
                raise CacheUnavailableError(f"redis HSET failed: {e}", {"key": key}) from e

        self.logger.debug("Stored sticker snapshot", user_id=user_id, sticker_sets=len(infos))

    async def _write_id_sets(self, user_id: int, infos) -> None:
        client = self._client()
        try:
            pipe = client.pipeline(transaction=False)
            for info in infos:
                set_key = self._id_set_key(user_id, info.id)
                pipe.delete(set_key)
                if info.stickers:
                    pipe.sadd(set_key, *info.stickers.keys())
                    pipe.expire(set_key, self.ttl_seconds)
            await pipe.execute()
        except CACHE_ERRORS as e:
            raise CacheUnavailableError(f"redis SADD failed: {e}", {"user_id": user_id}) from e

    async def check_membership(self, user_id: int, sticker_set_id: int, sticker_id: int) -> bool:
        """Check a sticker against the membership set, extending its TTL."""
        client = self._client()
        set_key = self._id_set_key(user_id, sticker_set_id)
        try:
            is_member = await client.sismember(set_key, sticker_id)
            await client.expire(set_key, self.ttl_seconds)
        except CACHE_ERRORS as e:
            if _is_wrong_type(e):
                raise CacheCorruptError("membership key holds the wrong type", {"key": set_key}) from e
            raise CacheUnavailableError(f"redis SISMEMBER failed: {e}", {"key": set_key}) from e
        return bool(is_member)

    async def invalidate_all(self, user_id: int, include_orphans: bool = False) -> int:
        """Delete the user's snapshot and the membership keys it names.

        With ``include_orphans`` the keyspace is also scanned for membership
        keys the snapshot no longer names (left behind by a torn write or a
        corrupt snapshot). Returns how many keys were removed.
        """
        client = self._client()
        key = self._infos_key(user_id)
        keys: Set[str] = {key}

        with tracer.start_as_current_span("StickerCache.invalidate_all"):
            try:
                try:
                    fields = await client.hkeys(key)
                except ResponseError as e:
                    if not _is_wrong_type(e):
                        raise
                    fields = []
                for field in fields:
                    if field.isascii() and field.isdigit():
                        keys.add(self._id_set_key(user_id, int(field)))

                if include_orphans:
                    pattern = f"{self._id_set_prefix(user_id)}*"
                    async for set_key in client.scan_iter(match=pattern, count=100):
                        keys.add(set_key)

                deleted = await client.delete(*keys)
            except CACHE_ERRORS as e:
                raise CacheUnavailableError(f"redis invalidation failed: {e}", {"key": key}) from e

        if deleted:
            self.logger.info("Invalidated sticker cache", user_id=user_id, count=deleted)
        return deleted

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self._client().ping()
            return True
        except (CacheUnavailableError,) + CACHE_ERRORS:
            return False
