"""
Cache-aside synchronization between the sticker cache and the store.

Read path: serve the Redis snapshot when present; otherwise clear whatever
is cached for the user, answer from PostgreSQL and rebuild the cache in a
detached background task. Write path: merge a freshly purchased set into an
existing snapshot, best-effort.

The store is the only source of truth. A purchase's incremental insert can
be overwritten by a rebuild that read the store before the purchase
committed; the snapshot then lacks the new set until the next miss, which
only ever hides an entitlement and never grants one.
"""

import time
from typing import List, Optional

from opentelemetry import trace

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import CacheCorruptError, CacheUnavailableError
from ..cache.sticker_cache import StickerCache
from ..persistence.postgres import PostgreSQLPersistence
from .background import BackgroundTaskRunner
from .models import EntitlementSnapshot, StickerSet, StickerSetCacheInfo, build_snapshot

tracer = trace.get_tracer(__name__)


class StickerEntitlementSynchronizer:
    """Keeps the per-user sticker cache in step with the store."""

    def __init__(
        self,
        cache: StickerCache,
        persistence: PostgreSQLPersistence,
        background: BackgroundTaskRunner,
        metrics: Optional[MetricsCollector] = None
    ):
        self.cache = cache
        self.persistence = persistence
        self.background = background
        self.metrics = metrics
        self.logger = get_logger("stickers.synchronizer")

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)

    async def get_entitlements(self, user_id: int) -> EntitlementSnapshot:
        """Return the user's owned sticker sets keyed by set id.

        Cache problems are never raised from here; store failures are
        (StoreUnavailableError).
        """
        start = time.perf_counter()
        with tracer.start_as_current_span("StickerEntitlementSynchronizer.get_entitlements") as span:
            span.set_attribute("user_id", user_id)
            corrupt = False
            try:
                snapshot = await self.cache.get_all(user_id)
                if snapshot is not None:
                    self._count("sticker_cache_reads_total", result="hit")
                    self._observe("cache", start)
                    return snapshot
                self._count("sticker_cache_reads_total", result="miss")
            except CacheCorruptError as e:
                self.logger.warning("Sticker cache corrupt", user_id=user_id, error=e.message, details=e.details)
                self._count("sticker_cache_reads_total", result="corrupt")
                corrupt = True
            except CacheUnavailableError as e:
                self.logger.error("Sticker cache read failed", user_id=user_id, error=e.message)
                self._count("sticker_cache_reads_total", result="error")

            span.set_attribute("cache_hit", False)
            await self._clear_torn_state(user_id, include_orphans=corrupt)

            async with self.persistence.session() as store:
                sticker_sets = await store.list_owned_sticker_sets(user_id)

            snapshot = build_snapshot(sticker_sets)
            if snapshot:
                self._schedule_rebuild(user_id, snapshot)
            self._observe("store", start)
            return snapshot

    async def list_sticker_sets(self, user_id: int) -> List[StickerSetCacheInfo]:
        """Owned sticker catalog ordered by set id."""
        snapshot = await self.get_entitlements(user_id)
        return [snapshot[k] for k in sorted(snapshot)]

    async def _clear_torn_state(self, user_id: int, include_orphans: bool) -> None:
        try:
            await self.cache.invalidate_all(user_id, include_orphans=include_orphans)
        except CacheUnavailableError as e:
            self.logger.error("Sticker cache invalidation failed", user_id=user_id, error=e.message)
            self._count("sticker_cache_write_failures_total", operation="invalidate_all")

    def _schedule_rebuild(self, user_id: int, snapshot: EntitlementSnapshot) -> None:
        async def rebuild():
            try:
                await self.cache.store_all(user_id, snapshot)
            except CacheUnavailableError:
                self._count("sticker_cache_write_failures_total", operation="store_all")
                raise

        self.background.submit(f"sticker-cache-rebuild:{user_id}", rebuild)

    def _observe(self, source: str, start: float) -> None:
        if self.metrics:
            self.metrics.get_metric("entitlement_read_duration_seconds").labels(
                source=source
            ).observe(time.perf_counter() - start)

    async def record_purchase(self, user_id: int, sticker_set: StickerSet) -> None:
        """Merge a committed purchase into the user's snapshot, if one is cached.

        Never raises: the store already holds the purchase and the next miss
        rebuilds the cache from it.
        """
        info = StickerSetCacheInfo.from_sticker_set(sticker_set)
        with tracer.start_as_current_span("StickerEntitlementSynchronizer.record_purchase"):
            try:
                inserted = await self.cache.insert_incremental(user_id, info)
            except CacheUnavailableError as e:
                self.logger.error(
                    "Sticker cache incremental insert failed",
                    user_id=user_id,
                    sticker_set_id=sticker_set.id,
                    error=e.message
                )
                self._count("sticker_cache_write_failures_total", operation="insert_incremental")
                return

        if not inserted:
            self.logger.debug("No cached snapshot to update", user_id=user_id, sticker_set_id=sticker_set.id)

    async def is_sticker_owned(self, user_id: int, sticker_set_id: int, sticker_id: int) -> bool:
        """Check one sticker, trusting a positive membership answer from the cache.

        A negative answer may only mean the membership set is not cached,
        so it is confirmed against the read path.
        """
        try:
            if await self.cache.check_membership(user_id, sticker_set_id, sticker_id):
                return True
        except (CacheUnavailableError, CacheCorruptError) as e:
            self.logger.warning("Sticker membership check failed", user_id=user_id, error=e.message)

        snapshot = await self.get_entitlements(user_id)
        info = snapshot.get(sticker_set_id)
        return info is not None and info.owns(sticker_id)
