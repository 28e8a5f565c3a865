"""
Sticker set purchase workflow.
"""

import json
from typing import Optional

from opentelemetry import trace

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import (
    AlreadyOwnedError, ChatRoomException, InsufficientFundsError, StickerSetNotFoundError
)
from ..persistence.postgres import PostgreSQLPersistence, WALLET_LOG_COST
from .models import StickerSet
from .synchronizer import StickerEntitlementSynchronizer

tracer = trace.get_tracer(__name__)


class StickerPurchaseWorkflow:
    """Charges the buyer, records ownership, then updates the cache."""

    def __init__(
        self,
        persistence: PostgreSQLPersistence,
        synchronizer: StickerEntitlementSynchronizer,
        metrics: Optional[MetricsCollector] = None
    ):
        self.persistence = persistence
        self.synchronizer = synchronizer
        self.metrics = metrics
        self.logger = get_logger("stickers.purchase")

    async def purchase(self, user_id: int, sticker_set_id: int) -> StickerSet:
        """Buy a sticker set for the user.

        Either the whole store transaction commits (money taken, ownership
        and ledger written) or nothing does. The cache update afterwards is
        best-effort.

        Raises:
            StickerSetNotFoundError: the set does not exist.
            InsufficientFundsError: the wallet cannot cover the price.
            AlreadyOwnedError: the user already owns the set.
            StoreUnavailableError: the store failed.
        """
        self.logger.info("Start sticker set purchase", user_id=user_id, sticker_set_id=sticker_set_id)

        with tracer.start_as_current_span("StickerPurchaseWorkflow.purchase") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("sticker_set_id", sticker_set_id)
            try:
                sticker_set = await self._purchase_in_store(user_id, sticker_set_id)
            except ChatRoomException as e:
                self._record(e.code.lower())
                raise

        self._record("completed")
        self.logger.info(
            "Sticker set purchased",
            user_id=user_id,
            sticker_set_id=sticker_set.id,
            price=sticker_set.price
        )

        await self.synchronizer.record_purchase(user_id, sticker_set)
        return sticker_set

    async def _purchase_in_store(self, user_id: int, sticker_set_id: int) -> StickerSet:
        async with self.persistence.transaction() as store:
            sticker_set = await store.get_sticker_set(sticker_set_id)
            if sticker_set is None:
                raise StickerSetNotFoundError(sticker_set_id)

            if not await store.debit(user_id, sticker_set.price):
                raise InsufficientFundsError(user_id, sticker_set.price)

            # Checked on the transaction's connection; the unique constraint
            # on the mapping table rejects a concurrent duplicate.
            if await store.ownership_exists(user_id, sticker_set_id):
                raise AlreadyOwnedError(user_id, sticker_set_id)

            await store.record_ownership(user_id, sticker_set_id)

            detail = json.dumps({
                "item": "sticker",
                "id": sticker_set.id,
                "name": sticker_set.name,
                "price": sticker_set.price
            })
            await store.write_wallet_log(user_id, WALLET_LOG_COST, sticker_set.price, detail)

        return sticker_set

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("sticker_purchases_total", outcome=outcome)
