"""
Sticker data models for the Stickers Service.
"""

from typing import Dict, Iterable, List, Tuple
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

UINT32_MAX = 2 ** 32 - 1
UINT64_MAX = 2 ** 64 - 1
# Ids are stored in BIGINT columns
STORE_ID_MAX = 2 ** 63 - 1


@dataclass(frozen=True)
class Sticker:
    """A single sticker inside a sticker set."""
    id: int
    sticker_set_id: int
    name: str


@dataclass(frozen=True)
class StickerSet:
    """Sticker set as stored in the relational store."""
    id: int
    name: str
    author: str
    price: int
    stickers: Tuple[Sticker, ...] = field(default_factory=tuple)


class StickerCacheInfo(BaseModel):
    """Cached view of a sticker."""
    id: int = Field(..., ge=0, le=UINT64_MAX)
    name: str


class StickerSetCacheInfo(BaseModel):
    """Cached view of an owned sticker set, stored as one hash field."""
    id: int = Field(..., ge=0, le=UINT64_MAX)
    name: str
    author: str
    price: int = Field(..., ge=0, le=UINT32_MAX)
    stickers: Dict[int, StickerCacheInfo] = Field(default_factory=dict)

    @classmethod
    def from_sticker_set(cls, sticker_set: StickerSet) -> "StickerSetCacheInfo":
        return cls(
            id=sticker_set.id,
            name=sticker_set.name,
            author=sticker_set.author,
            price=sticker_set.price,
            stickers={
                s.id: StickerCacheInfo(id=s.id, name=s.name)
                for s in sticker_set.stickers
            }
        )

    def owns(self, sticker_id: int) -> bool:
        return sticker_id in self.stickers


# user snapshot: sticker set id -> cached set
EntitlementSnapshot = Dict[int, StickerSetCacheInfo]


def build_snapshot(sticker_sets: Iterable[StickerSet]) -> EntitlementSnapshot:
    """Build an entitlement snapshot from store rows."""
    return {s.id: StickerSetCacheInfo.from_sticker_set(s) for s in sticker_sets}


class StickerInfo(BaseModel):
    """Sticker as returned by the API."""
    id: int
    name: str


class StickerSetInfo(BaseModel):
    """Sticker set as returned by the API."""
    id: int
    name: str
    author: str
    price: int
    stickers: List[StickerInfo] = Field(default_factory=list)

    @classmethod
    def from_sticker_set(cls, sticker_set: StickerSet) -> "StickerSetInfo":
        return cls(
            id=sticker_set.id,
            name=sticker_set.name,
            author=sticker_set.author,
            price=sticker_set.price,
            stickers=[StickerInfo(id=s.id, name=s.name) for s in sticker_set.stickers]
        )

    @classmethod
    def from_cache_info(cls, info: StickerSetCacheInfo) -> "StickerSetInfo":
        return cls(
            id=info.id,
            name=info.name,
            author=info.author,
            price=info.price,
            stickers=[
                StickerInfo(id=s.id, name=s.name)
                for s in sorted(info.stickers.values(), key=lambda s: s.id)
            ]
        )


class StickerSetListResponse(BaseModel):
    """Response model for the owned sticker catalog."""
    sticker_sets: List[StickerSetInfo]


class BuyStickerSetRequest(BaseModel):
    """Request model for buying a sticker set."""
    sticker_set_id: int = Field(..., ge=0, le=STORE_ID_MAX, description="Sticker set ID")


class BuyStickerSetResponse(BaseModel):
    """Response model for a completed purchase."""
    sticker_set: StickerSetInfo
