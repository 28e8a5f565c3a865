"""
Wallet balance, charging and ledger reads.
"""

import json
from datetime import datetime, timezone
from typing import List, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import ChargeAmountError, ChatRoomException, WalletNotFoundError
from ..persistence.postgres import PostgreSQLPersistence, WalletLogEntry, WALLET_LOG_CHARGE

tracer = trace.get_tracer(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class WalletStateResponse(BaseModel):
    """Response model for the wallet balance."""
    money: int


class ChargeRequest(BaseModel):
    """Request model for charging the wallet."""
    money: int = Field(..., description="Amount to add")


class ChargeResponse(BaseModel):
    """Response model for a completed charge."""
    ok: bool = True
    money: int
    min_amount: int
    max_amount: int


class WalletLogInfo(BaseModel):
    """Ledger entry as returned by the API."""
    id: int
    type: int
    money: int
    detail: str
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: WalletLogEntry) -> "WalletLogInfo":
        return cls(
            id=entry.id,
            type=entry.type,
            money=entry.money,
            detail=entry.detail,
            created_at=entry.created_at
        )


class WalletLogResponse(BaseModel):
    """A page of ledger entries."""
    entries: List[WalletLogInfo]
    next_time_cursor: datetime


class WalletService:
    """Wallet operations for the authenticated user."""

    def __init__(
        self,
        persistence: PostgreSQLPersistence,
        min_charge: int = 1,
        max_charge: int = 1000,
        metrics: Optional[MetricsCollector] = None
    ):
        self.persistence = persistence
        self.min_charge = min_charge
        self.max_charge = max_charge
        self.metrics = metrics
        self.logger = get_logger("stickers.wallet")

    async def get_balance(self, user_id: int) -> int:
        """Current balance; WalletNotFoundError if the user never charged."""
        async with self.persistence.session() as store:
            balance = await store.get_balance(user_id)
        if balance is None:
            raise WalletNotFoundError(user_id)
        return balance

    async def charge(self, user_id: int, amount: int) -> int:
        """Add money to the wallet and record it in the ledger. Returns the new balance."""
        with tracer.start_as_current_span("WalletService.charge") as span:
            span.set_attribute("user_id", user_id)
            try:
                if not self.min_charge <= amount <= self.max_charge:
                    raise ChargeAmountError(user_id, amount, self.min_charge, self.max_charge)

                async with self.persistence.transaction() as store:
                    balance = await store.credit(user_id, amount)
                    detail = json.dumps({"item": "charge", "money": amount})
                    await store.write_wallet_log(user_id, WALLET_LOG_CHARGE, amount, detail)
            except ChatRoomException as e:
                self._record(e.code.lower())
                raise

        self._record("completed")
        self.logger.info("Wallet charged", user_id=user_id, amount=amount, balance=balance)
        return balance

    async def get_logs(
        self,
        user_id: int,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> WalletLogResponse:
        """Ledger entries from ``since`` (oldest first) and the cursor for the next page."""
        cursor = since or EPOCH
        async with self.persistence.session() as store:
            entries = await store.list_wallet_logs(user_id, cursor, limit)

        next_cursor = entries[-1].created_at if entries else cursor
        return WalletLogResponse(
            entries=[WalletLogInfo.from_entry(entry) for entry in entries],
            next_time_cursor=next_cursor
        )

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("wallet_charges_total", outcome=outcome)
