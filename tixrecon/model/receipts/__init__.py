# model/receipts/__init__.py
"""
Raw webhook payload archive, kept for forensic replay.

Two interchangeable backends with the same async API:
    archive(order_id, payload, signature_valid) -> receipt id
    mark_processed(receipt_id, disposition, processed)
    recent(limit) -> list of dicts
"""
from typing import Optional

import redis.asyncio as redis

from ...infra.sql import Database
from ._redis import RedisReceiptStore
from ._sql import SqlReceiptStore

ReceiptStore = SqlReceiptStore | RedisReceiptStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *, db: Optional[Database] = None,
              r: Optional[redis.Redis] = None) -> ReceiptStore:
    if backend == "sql":
        if db is None:
            raise RuntimeError("ReceiptStore(sql) requires db=Database")
        return SqlReceiptStore(db)
    if backend == "redis":
        if r is None:
            raise RuntimeError("ReceiptStore(redis) requires r=redis.Redis")
        return RedisReceiptStore(r)
    raise RuntimeError(f"unknown receipt backend {backend!r}")


__all__ = [
    "ReceiptStore", "SqlReceiptStore", "RedisReceiptStore", "new_store",
]
