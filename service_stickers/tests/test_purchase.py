"""
Unit tests for the sticker set purchase workflow.
"""

import json

import pytest

from shared.errors import (
    AlreadyOwnedError, InsufficientFundsError, StickerSetNotFoundError, StoreUnavailableError
)
from shared.metrics import MetricsCollector
from service_stickers.app.entitlements.purchase import StickerPurchaseWorkflow
from service_stickers.app.persistence.postgres import WALLET_LOG_COST

from .conftest import make_sticker_set

USER_ID = 5


class TestStickerPurchaseWorkflow:
    """Test cases for StickerPurchaseWorkflow."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("stickers")

    @pytest.fixture
    def workflow(self, persistence, synchronizer, metrics):
        """Workflow over a store holding set 60 (price 10) and a wallet of 100."""
        persistence.add_sticker_set(make_sticker_set(60, [5, 6], price=10, name="cats"))
        persistence.data.wallets[USER_ID] = 100
        return StickerPurchaseWorkflow(persistence, synchronizer, metrics=metrics)

    @pytest.mark.asyncio
    async def test_purchase_success(self, workflow, persistence, metrics):
        """Money, ownership and ledger change together."""
        sticker_set = await workflow.purchase(USER_ID, 60)

        assert sticker_set.id == 60
        assert persistence.data.wallets[USER_ID] == 90
        assert (USER_ID, 60) in persistence.data.ownership
        assert len(persistence.data.wallet_logs) == 1
        log = persistence.data.wallet_logs[0]
        assert log.type == WALLET_LOG_COST
        assert log.money == 10
        assert json.loads(log.detail) == {"item": "sticker", "id": 60, "name": "cats", "price": 10}
        assert metrics.get_sample_value("sticker_purchases_total", {"outcome": "completed"}) == 1

    @pytest.mark.asyncio
    async def test_purchase_updates_warm_cache(self, workflow, synchronizer, persistence, background):
        """A warm snapshot gains the new set without a rebuild."""
        persistence.grant(USER_ID, make_sticker_set(42, [7]))
        await synchronizer.get_entitlements(USER_ID)
        await background.drain()

        await workflow.purchase(USER_ID, 60)

        assert await synchronizer.cache.check_membership(USER_ID, 60, 6) is True
        snapshot = await synchronizer.get_entitlements(USER_ID)
        assert set(snapshot) == {42, 60}
        assert persistence.list_calls == 1

    @pytest.mark.asyncio
    async def test_purchase_cold_cache_stays_cold(self, workflow, synchronizer):
        """Without a snapshot, the next read rebuilds from the store."""
        await workflow.purchase(USER_ID, 60)

        assert await synchronizer.cache.get_all(USER_ID) is None
        assert 60 in await synchronizer.get_entitlements(USER_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("warm", [False, True])
    async def test_insufficient_funds_leaves_no_trace(self, workflow, synchronizer, persistence, background, metrics, warm):
        """A failed purchase changes neither store nor cache."""
        persistence.data.wallets[USER_ID] = 5
        persistence.grant(USER_ID, make_sticker_set(42, [7]))
        if warm:
            await synchronizer.get_entitlements(USER_ID)
            await background.drain()
        cached_before = await synchronizer.cache.get_all(USER_ID)

        with pytest.raises(InsufficientFundsError):
            await workflow.purchase(USER_ID, 60)

        assert persistence.data.wallets[USER_ID] == 5
        assert (USER_ID, 60) not in persistence.data.ownership
        assert persistence.data.wallet_logs == []
        assert await synchronizer.cache.get_all(USER_ID) == cached_before
        assert await synchronizer.cache.check_membership(USER_ID, 60, 5) is False
        assert metrics.get_sample_value("sticker_purchases_total", {"outcome": "insufficient_funds"}) == 1

    @pytest.mark.asyncio
    async def test_missing_wallet_is_insufficient(self, workflow, persistence):
        """A user without a wallet cannot pay."""
        del persistence.data.wallets[USER_ID]

        with pytest.raises(InsufficientFundsError):
            await workflow.purchase(USER_ID, 60)

    @pytest.mark.asyncio
    async def test_sticker_set_not_found(self, workflow, persistence):
        """Unknown sets are rejected before any money moves."""
        with pytest.raises(StickerSetNotFoundError):
            await workflow.purchase(USER_ID, 999)

        assert persistence.data.wallets[USER_ID] == 100

    @pytest.mark.asyncio
    async def test_already_owned_rolls_back_debit(self, workflow, persistence, metrics):
        """Buying a set twice charges once."""
        await workflow.purchase(USER_ID, 60)

        with pytest.raises(AlreadyOwnedError):
            await workflow.purchase(USER_ID, 60)

        assert persistence.data.wallets[USER_ID] == 90
        assert len(persistence.data.wallet_logs) == 1
        assert metrics.get_sample_value("sticker_purchases_total", {"outcome": "sticker_already_owned"}) == 1

    @pytest.mark.asyncio
    async def test_cache_failure_does_not_fail_purchase(self, workflow, persistence, redis_server):
        """The purchase is complete once the store commits."""
        redis_server.connected = False

        sticker_set = await workflow.purchase(USER_ID, 60)

        assert sticker_set.id == 60
        assert (USER_ID, 60) in persistence.data.ownership

    @pytest.mark.asyncio
    async def test_store_down(self, workflow, persistence):
        """Store outages reach the caller."""
        persistence.fail = True

        with pytest.raises(StoreUnavailableError):
            await workflow.purchase(USER_ID, 60)
