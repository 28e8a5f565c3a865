"""
Stickers Service package for the ChatRoom backend.

This package owns the per-user sticker entitlement view used on the chat
message hot path. It provides:

- app.main: API surface for the sticker catalog, purchases, messages and health.
- app.cache: Redis-backed per-user entitlement snapshots and membership sets.
- app.persistence: PostgreSQL store (sticker sets, ownership, wallet, messages).
- app.entitlements: Cache-aside synchronizer, message sticker filter and
  purchase workflow.
- app.messages: Message posting on top of the sticker filter.

Guidelines:
- The service is stateless; rely on external cache/DB.
- PostgreSQL is the source of truth. Cache trouble must never fail a read;
  store trouble always does.
"""
