"""
Chat message posting and paging.
"""

from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import List, Optional

from shared.logging import get_logger
from shared.errors import UserNotInRoomError
from ..entitlements.content_filter import StickerContentFilter
from ..entitlements.models import STORE_ID_MAX
from ..persistence.postgres import PostgreSQLPersistence, StoredMessage

MAX_PAGE_SIZE = 1000


class AddMessageRequest(BaseModel):
    """Request model for posting a message."""
    room_id: int = Field(..., ge=0, le=STORE_ID_MAX, description="Room ID")
    content: str = Field(..., description="Message text")


class MessageResponse(BaseModel):
    """Response model for a stored message."""
    id: int
    room_id: int
    user_id: int
    content: str
    created_at: datetime

    @classmethod
    def from_stored(cls, message: StoredMessage) -> "MessageResponse":
        return cls(
            id=message.id,
            room_id=message.room_id,
            user_id=message.user_id,
            content=message.content,
            created_at=message.created_at
        )


class MessagePageResponse(BaseModel):
    """A page of room messages."""
    messages: List[MessageResponse]
    next_time_cursor: datetime


class MessageService:
    """Stores chat messages after stripping unowned sticker references."""

    def __init__(self, persistence: PostgreSQLPersistence, content_filter: StickerContentFilter):
        self.persistence = persistence
        self.content_filter = content_filter
        self.logger = get_logger("stickers.messages")

    async def _check_member(self, user_id: int, room_id: int) -> None:
        async with self.persistence.session() as store:
            in_room = await store.user_in_room(room_id, user_id)
        if not in_room:
            raise UserNotInRoomError(user_id, room_id)

    async def add_message(self, user_id: int, room_id: int, content: str) -> StoredMessage:
        """Sanitize and store a message.

        The entitlement lookup behind ``sanitize`` may need a store
        connection of its own, so it runs while no connection is held.
        Membership is checked again inside the write transaction.
        """
        await self._check_member(user_id, room_id)

        clean_content = await self.content_filter.sanitize(user_id, content)

        async with self.persistence.transaction() as store:
            if not await store.user_in_room(room_id, user_id):
                raise UserNotInRoomError(user_id, room_id)
            message = await store.add_message(room_id, user_id, clean_content)

        self.logger.info("Message added", user_id=user_id, room_id=room_id, message_id=message.id)
        return message

    async def fetch_messages(
        self,
        user_id: int,
        room_id: int,
        time_cursor: Optional[datetime] = None,
        size: int = 100
    ) -> MessagePageResponse:
        """Page through a room's messages; see ``StickerStoreSession.fetch_messages``."""
        cursor = time_cursor or datetime.now(timezone.utc)
        async with self.persistence.session() as store:
            if not await store.user_in_room(room_id, user_id):
                raise UserNotInRoomError(user_id, room_id)
            messages = await store.fetch_messages(room_id, cursor, size)

        return MessagePageResponse(
            messages=[MessageResponse.from_stored(m) for m in messages],
            next_time_cursor=messages[-1].created_at if messages else cursor
        )
