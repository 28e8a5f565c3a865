"""
Sticker entitlement package.

Modules of interest:
- models: Sticker/StickerSet domain types, cache and API models.
- synchronizer: Cache-aside reads and best-effort cache writes.
- content_filter: Strips unowned ``sticker::<set>::<sticker>`` tokens.
- purchase: Transactional purchase followed by a cache update.
- background: Detached task runner for cache rebuilds.
"""
