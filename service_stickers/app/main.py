"""
Stickers service for the ChatRoom backend.
"""

from datetime import datetime
from typing import Dict, Optional

from fastapi import Depends, Header, Query

from shared.base_service import BaseService
from shared.errors import AuthenticationError, StickerSetNotFoundError
from shared.logging import set_user_context

from .cache.sticker_cache import StickerCache
from .persistence.postgres import PostgreSQLPersistence
from .entitlements.background import BackgroundTaskRunner
from .entitlements.synchronizer import StickerEntitlementSynchronizer
from .entitlements.content_filter import StickerContentFilter
from .entitlements.purchase import StickerPurchaseWorkflow
from .entitlements.models import (
    BuyStickerSetRequest, BuyStickerSetResponse, StickerSetInfo, StickerSetListResponse, STORE_ID_MAX
)
from .messages.service import (
    AddMessageRequest, MAX_PAGE_SIZE, MessagePageResponse, MessageResponse, MessageService
)
from .wallet.service import (
    ChargeRequest, ChargeResponse, WalletLogResponse, WalletService, WalletStateResponse
)

USER_ID_HEADER = "X-User-Id"


async def current_user_id(x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER)) -> int:
    """User id put on the request by the session middleware."""
    if x_user_id is None or not x_user_id.isascii() or not x_user_id.isdigit():
        raise AuthenticationError("missing or invalid user id")
    user_id = int(x_user_id)
    if user_id > STORE_ID_MAX:
        raise AuthenticationError("missing or invalid user id")
    set_user_context(user_id)
    return user_id


class StickerService(BaseService):
    """Stickers service implementation."""

    def __init__(
        self,
        cache: Optional[StickerCache] = None,
        persistence: Optional[PostgreSQLPersistence] = None
    ):
        super().__init__("stickers", 8020)

        self.cache = cache or StickerCache(
            self.config.redis_url,
            ttl_seconds=self.config.sticker_cache_ttl_seconds,
            socket_timeout=self.config.redis_socket_timeout
        )
        self.persistence = persistence or PostgreSQLPersistence(
            self.config.postgres_dsn,
            min_size=self.config.postgres_pool_min_size,
            max_size=self.config.postgres_pool_max_size,
            command_timeout=self.config.postgres_command_timeout
        )
        self.background = BackgroundTaskRunner(self.config.cache_warm_concurrency, metrics=self.metrics)
        self.synchronizer = StickerEntitlementSynchronizer(
            self.cache, self.persistence, self.background, metrics=self.metrics
        )
        self.content_filter = StickerContentFilter(self.synchronizer, metrics=self.metrics)
        self.purchase_workflow = StickerPurchaseWorkflow(
            self.persistence, self.synchronizer, metrics=self.metrics
        )
        self.message_service = MessageService(self.persistence, self.content_filter)
        self.wallet_service = WalletService(
            self.persistence,
            min_charge=self.config.wallet_min_charge,
            max_charge=self.config.wallet_max_charge,
            metrics=self.metrics
        )

        self._setup_sticker_routes()
        self._setup_message_routes()
        self._setup_wallet_routes()

    def _setup_sticker_routes(self):
        """Set up sticker-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "stickers",
                "message": "ChatRoom - Stickers Service",
                "version": "1.0.0",
                "capabilities": ["sticker_catalog", "sticker_purchase", "message_filter", "wallet"]
            }

        @self.app.get("/sticker/info", response_model=StickerSetInfo)
        async def get_sticker_set_info(
            sticker_set_id: int = Query(..., ge=0, le=STORE_ID_MAX, description="Sticker set ID")
        ):
            """Get one sticker set from the store."""
            async with self.persistence.session() as store:
                sticker_set = await store.get_sticker_set(sticker_set_id)
            if sticker_set is None:
                raise StickerSetNotFoundError(sticker_set_id)
            return StickerSetInfo.from_sticker_set(sticker_set)

        @self.app.get("/sticker/list", response_model=StickerSetListResponse)
        async def list_owned_sticker_sets(user_id: int = Depends(current_user_id)):
            """List the sticker sets the user owns."""
            infos = await self.synchronizer.list_sticker_sets(user_id)
            return StickerSetListResponse(
                sticker_sets=[StickerSetInfo.from_cache_info(info) for info in infos]
            )

        @self.app.get("/sticker/check")
        async def check_sticker_available(
            sticker_set_id: int = Query(..., ge=0, le=STORE_ID_MAX),
            sticker_id: int = Query(..., ge=0, le=STORE_ID_MAX),
            user_id: int = Depends(current_user_id)
        ):
            """Whether the user may send one sticker."""
            owned = await self.synchronizer.is_sticker_owned(user_id, sticker_set_id, sticker_id)
            return {"ok": owned}

        @self.app.put("/sticker/buy", response_model=BuyStickerSetResponse)
        async def buy_sticker_set(
            request: BuyStickerSetRequest,
            user_id: int = Depends(current_user_id)
        ):
            """Buy a sticker set."""
            sticker_set = await self.purchase_workflow.purchase(user_id, request.sticker_set_id)
            return BuyStickerSetResponse(sticker_set=StickerSetInfo.from_sticker_set(sticker_set))

    def _setup_message_routes(self):
        """Set up message routes."""

        @self.app.post("/message/add", response_model=MessageResponse)
        async def add_message(
            request: AddMessageRequest,
            user_id: int = Depends(current_user_id)
        ):
            """Post a chat message; unowned sticker references are removed."""
            message = await self.message_service.add_message(user_id, request.room_id, request.content)
            return MessageResponse.from_stored(message)

        @self.app.get("/message", response_model=MessagePageResponse)
        async def fetch_messages(
            room_id: int = Query(..., ge=0, le=STORE_ID_MAX),
            time_cursor: Optional[datetime] = Query(None, description="Page boundary; defaults to now"),
            message_size: int = Query(100, ge=-MAX_PAGE_SIZE, le=MAX_PAGE_SIZE),
            user_id: int = Depends(current_user_id)
        ):
            """Page through a room; negative sizes read backward from the cursor."""
            return await self.message_service.fetch_messages(user_id, room_id, time_cursor, message_size)

    def _setup_wallet_routes(self):
        """Set up wallet routes."""

        @self.app.get("/wallet", response_model=WalletStateResponse)
        async def get_wallet_state(user_id: int = Depends(current_user_id)):
            """Current wallet balance."""
            return WalletStateResponse(money=await self.wallet_service.get_balance(user_id))

        @self.app.post("/wallet", response_model=ChargeResponse)
        async def charge_wallet(request: ChargeRequest, user_id: int = Depends(current_user_id)):
            """Add money to the wallet."""
            balance = await self.wallet_service.charge(user_id, request.money)
            return ChargeResponse(
                money=balance,
                min_amount=self.wallet_service.min_charge,
                max_amount=self.wallet_service.max_charge
            )

        @self.app.get("/wallet/log", response_model=WalletLogResponse)
        async def get_wallet_log(
            time_cursor: Optional[datetime] = Query(None, description="Oldest entry time to return"),
            size: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
            user_id: int = Depends(current_user_id)
        ):
            """Wallet ledger, oldest first."""
            return await self.wallet_service.get_logs(user_id, time_cursor, size)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check stickers service dependencies."""
        return {
            "redis": "ok" if await self.cache.health_check() else "error",
            "postgres": "ok" if await self.persistence.health_check() else "error",
        }

    async def start(self):
        """Start stickers service components."""
        await self.persistence.start()
        await self.cache.start()
        self.logger.info("Stickers service started")

    async def stop(self):
        """Stop stickers service components."""
        await self.background.close()
        await self.cache.stop()
        await self.persistence.stop()
        self.logger.info("Stickers service stopped")


def create_app():
    """Create stickers service application."""
    service = StickerService()
    return service.app


if __name__ == "__main__":
    service = StickerService()
    service.run()
