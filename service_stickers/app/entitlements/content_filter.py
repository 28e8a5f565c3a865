"""
Sticker reference filtering for outgoing chat messages.
"""

import re
from typing import List, Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import UINT64_MAX
from .synchronizer import StickerEntitlementSynchronizer

STICKER_TOKEN_PREFIX = "sticker"
TOKEN_SEPARATOR = " "
FIELD_SEPARATOR = "::"

_UNSIGNED = re.compile(r"[0-9]+")


def _parse_unsigned(value: str) -> Optional[int]:
    if not _UNSIGNED.fullmatch(value):
        return None
    number = int(value)
    return number if number <= UINT64_MAX else None


def parse_sticker_token(token: str) -> Optional[Tuple[int, int]]:
    """Return (sticker_set_id, sticker_id) for a ``sticker::<set>::<sticker>`` token."""
    parts = token.split(FIELD_SEPARATOR)
    if len(parts) != 3 or parts[0] != STICKER_TOKEN_PREFIX:
        return None

    sticker_set_id = _parse_unsigned(parts[1])
    sticker_id = _parse_unsigned(parts[2])
    if sticker_set_id is None or sticker_id is None:
        return None
    return sticker_set_id, sticker_id


class StickerContentFilter:
    """Strips references to stickers the sender does not own."""

    def __init__(self, synchronizer: StickerEntitlementSynchronizer, metrics: Optional[MetricsCollector] = None):
        self.synchronizer = synchronizer
        self.metrics = metrics
        self.logger = get_logger("stickers.content_filter")

    async def sanitize(self, user_id: int, raw_text: str) -> str:
        """Blank every well-formed sticker token the user does not own.

        Tokens are separated by single spaces and joined back the same way,
        so a removed token leaves its surrounding spaces in place. Malformed
        tokens are left alone.
        """
        tokens = raw_text.split(TOKEN_SEPARATOR)
        candidates: List[Tuple[int, int, int]] = []
        for index, token in enumerate(tokens):
            parsed = parse_sticker_token(token)
            if parsed is not None:
                candidates.append((index, *parsed))

        if not candidates:
            return raw_text

        snapshot = await self.synchronizer.get_entitlements(user_id)

        stripped = 0
        for index, sticker_set_id, sticker_id in candidates:
            info = snapshot.get(sticker_set_id)
            if info is None or not info.owns(sticker_id):
                tokens[index] = ""
                stripped += 1

        if stripped:
            self.logger.info("Stripped unowned stickers", user_id=user_id, count=stripped)
            if self.metrics:
                self.metrics.increment_counter("stickers_stripped_total", amount=stripped)

        return TOKEN_SEPARATOR.join(tokens)
