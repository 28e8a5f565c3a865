"""
Unit tests for message posting and paging.
"""

import asyncio
from datetime import timedelta

import pytest

from shared.errors import UserNotInRoomError
from service_stickers.app.entitlements.content_filter import StickerContentFilter
from service_stickers.app.entitlements.synchronizer import StickerEntitlementSynchronizer
from service_stickers.app.messages.service import MessageService

from .conftest import BoundedPersistence, CLOCK_START, make_sticker_set

USER_ID = 3
ROOM_ID = 30


def build_service(sticker_cache, persistence, background) -> MessageService:
    synchronizer = StickerEntitlementSynchronizer(sticker_cache, persistence, background)
    return MessageService(persistence, StickerContentFilter(synchronizer))


class TestMessageService:
    """Test cases for MessageService."""

    @pytest.fixture
    def service(self, sticker_cache, persistence, background):
        persistence.grant(USER_ID, make_sticker_set(42, [7]))
        persistence.join_room(ROOM_ID, USER_ID)
        return build_service(sticker_cache, persistence, background)

    @pytest.mark.asyncio
    async def test_add_message_sanitizes(self, service, persistence):
        """Unowned sticker tokens are blanked before the row is written."""
        message = await service.add_message(USER_ID, ROOM_ID, "hi sticker::42::7 sticker::60::5")

        assert message.content == "hi sticker::42::7 "
        assert persistence.data.messages == [message]

    @pytest.mark.asyncio
    async def test_add_message_not_in_room(self, service, persistence):
        """Non-members cannot post, and the entitlement read is skipped."""
        with pytest.raises(UserNotInRoomError):
            await service.add_message(USER_ID, ROOM_ID + 1, "hello sticker::42::7")

        assert persistence.data.messages == []
        assert persistence.list_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_posts_with_small_pool(self, sticker_cache, background):
        """Cold-cache posts never need two store connections at once."""
        persistence = BoundedPersistence(pool_size=2)
        for user_id in (1, 2):
            persistence.grant(user_id, make_sticker_set(40 + user_id, [7]))
            persistence.join_room(ROOM_ID, user_id)
        service = build_service(sticker_cache, persistence, background)

        messages = await asyncio.wait_for(
            asyncio.gather(
                service.add_message(1, ROOM_ID, "sticker::41::7"),
                service.add_message(2, ROOM_ID, "sticker::42::7"),
            ),
            timeout=2
        )
        await background.drain()

        assert [m.content for m in messages] == ["sticker::41::7", "sticker::42::7"]

    @pytest.mark.asyncio
    async def test_single_connection_pool(self, sticker_cache, background):
        """A pool of one connection is enough to post a message."""
        persistence = BoundedPersistence(pool_size=1)
        persistence.grant(USER_ID, make_sticker_set(42, [7]))
        persistence.join_room(ROOM_ID, USER_ID)
        service = build_service(sticker_cache, persistence, background)

        message = await asyncio.wait_for(service.add_message(USER_ID, ROOM_ID, "sticker::42::7"), timeout=2)
        await background.drain()

        assert message.content == "sticker::42::7"

    @pytest.mark.asyncio
    async def test_fetch_forward_and_backward(self, service):
        """Positive sizes read newer messages, negative sizes older ones."""
        posted = [await service.add_message(USER_ID, ROOM_ID, f"m{i}") for i in range(4)]

        forward = await service.fetch_messages(USER_ID, ROOM_ID, CLOCK_START, size=2)
        assert [m.content for m in forward.messages] == ["m0", "m1"]
        assert forward.next_time_cursor == posted[1].created_at

        rest = await service.fetch_messages(USER_ID, ROOM_ID, forward.next_time_cursor, size=10)
        assert [m.content for m in rest.messages] == ["m2", "m3"]

        backward = await service.fetch_messages(USER_ID, ROOM_ID, posted[3].created_at, size=-2)
        assert [m.content for m in backward.messages] == ["m2", "m1"]
        assert backward.next_time_cursor == posted[1].created_at

    @pytest.mark.asyncio
    async def test_fetch_defaults_to_latest(self, service):
        """Without a cursor a backward page ends at the newest message."""
        for i in range(3):
            await service.add_message(USER_ID, ROOM_ID, f"m{i}")

        page = await service.fetch_messages(USER_ID, ROOM_ID, size=-1)

        assert [m.content for m in page.messages] == ["m2"]

    @pytest.mark.asyncio
    async def test_fetch_empty_page_keeps_cursor(self, service):
        """An empty page hands back the cursor it was given."""
        cursor = CLOCK_START + timedelta(days=1)

        page = await service.fetch_messages(USER_ID, ROOM_ID, cursor, size=0)

        assert page.messages == []
        assert page.next_time_cursor == cursor

    @pytest.mark.asyncio
    async def test_fetch_is_scoped_to_room(self, service, persistence):
        """Messages of other rooms are not returned."""
        persistence.join_room(ROOM_ID + 1, USER_ID)
        await service.add_message(USER_ID, ROOM_ID + 1, "elsewhere")
        await service.add_message(USER_ID, ROOM_ID, "here")

        page = await service.fetch_messages(USER_ID, ROOM_ID, CLOCK_START, size=10)

        assert [m.content for m in page.messages] == ["here"]

    @pytest.mark.asyncio
    async def test_fetch_not_in_room(self, service):
        with pytest.raises(UserNotInRoomError):
            await service.fetch_messages(USER_ID, ROOM_ID + 1, CLOCK_START)
