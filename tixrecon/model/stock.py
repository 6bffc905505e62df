# model/stock.py
"""
Per-category ticket inventory.

- decrement: atomic "decrement if sufficient", never below zero
- increment: atomic, capped at total_stock
- commit_for_transaction / release_for_transaction: the same arithmetic,
  but preceded by a claim on the transaction's `stock_committed` flag inside
  the same DB transaction, so a given transaction moves stock at most once
  no matter how many reconciliation paths reach it.

All arithmetic happens in SQL; no read-modify-write in Python.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStockError, StockNotFoundError
from ..helpers import now_ts
from ..infra.sql import Database
from ..status import Status
from .transactions import Transaction


@dataclass(frozen=True)
class Stock:
    category_id: str
    price: int
    total_stock: int
    remaining_stock: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "category_id": self.category_id,
            "price": self.price,
            "total": self.total_stock,
            "remaining": self.remaining_stock,
            "sold_out": self.remaining_stock <= 0,
        }


# UN-GATED internal function
async def _decrement(db: AsyncSession, category_id: str, qty: int) -> None:
    result = await db.execute(text("""
        UPDATE ticket_stocks
        SET remaining_stock = remaining_stock - :q,
            updated_at = :now
        WHERE category_id = :c AND remaining_stock >= :q
    """), {"c": category_id, "q": qty, "now": now_ts()})
    if result.rowcount == 1:
        return
    remaining = (await db.execute(
        text("SELECT remaining_stock FROM ticket_stocks "
             "WHERE category_id = :c"),
        {"c": category_id},
    )).scalar_one_or_none()
    if remaining is None:
        raise StockNotFoundError(category_id)
    raise InsufficientStockError(category_id, qty, int(remaining))


# UN-GATED internal function
async def _increment(db: AsyncSession, category_id: str, qty: int) -> bool:
    result = await db.execute(text("""
        UPDATE ticket_stocks
        SET remaining_stock = CASE
                WHEN remaining_stock + :q > total_stock THEN total_stock
                ELSE remaining_stock + :q
            END,
            updated_at = :now
        WHERE category_id = :c
    """), {"c": category_id, "q": qty, "now": now_ts()})
    return result.rowcount == 1


class StockLedger:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def seed(
        self, category_id: str, total: int, price: int = 0
    ) -> None:
        """Create or reset a category to `total` remaining (operator use)."""
        if total < 0:
            raise ValueError("total must not be negative")
        async with self.db.begin() as s:
            await s.execute(text("""
                INSERT INTO ticket_stocks(
                    category_id, price, total_stock, remaining_stock,
                    updated_at)
                VALUES (:c, :p, :t, :t, :now)
                ON CONFLICT (category_id) DO UPDATE SET
                    price = EXCLUDED.price,
                    total_stock = EXCLUDED.total_stock,
                    remaining_stock = EXCLUDED.remaining_stock,
                    updated_at = EXCLUDED.updated_at
            """), {"c": category_id, "p": price, "t": total, "now": now_ts()})

    async def get(self, category_id: str) -> Optional[Stock]:
        async with self.db.begin() as s:
            row = (await s.execute(text("""
                SELECT category_id, price, total_stock, remaining_stock
                FROM ticket_stocks WHERE category_id = :c
            """), {"c": category_id})).mappings().first()
        return Stock(**row) if row else None

    async def inventory(self) -> List[Stock]:
        async with self.db.begin() as s:
            rows = (await s.execute(text("""
                SELECT category_id, price, total_stock, remaining_stock
                FROM ticket_stocks ORDER BY category_id
            """))).mappings().all()
        return [Stock(**r) for r in rows]

    async def decrement(self, category_id: str, qty: int) -> None:
        async with self.db.begin() as s:
            await _decrement(s, category_id, qty)

    async def increment(self, category_id: str, qty: int) -> bool:
        async with self.db.begin() as s:
            return await _increment(s, category_id, qty)

    async def commit_for_transaction(self, txn: Transaction) -> bool:
        """
        Decrement stock by txn.quantity, once per transaction.

        Returns False if the claim was already taken (someone else did it).
        Raises StockError if the decrement can't happen; the claim is rolled
        back with it so the repair sweep will try again.
        """
        async with self.db.begin() as s:
            claimed = await s.execute(text("""
                UPDATE transactions
                SET stock_committed = :yes, updated_at = :now
                WHERE id = :id AND status = :paid AND stock_committed = :no
            """), {
                "id": txn.id, "paid": Status.PAID.value,
                "yes": True, "no": False, "now": now_ts(),
            })
            if claimed.rowcount != 1:
                return False
            await _decrement(s, txn.category_id, txn.quantity)
        return True

    async def release_for_transaction(
        self, txn: Transaction, qty: int
    ) -> bool:
        """Give `qty` units back, only if this transaction ever took any."""
        if qty <= 0:
            return False
        async with self.db.begin() as s:
            claimed = await s.execute(text("""
                UPDATE transactions
                SET stock_committed = :no, updated_at = :now
                WHERE id = :id AND stock_committed = :yes
            """), {"id": txn.id, "yes": True, "no": False, "now": now_ts()})
            if claimed.rowcount != 1:
                return False
            await _increment(s, txn.category_id, qty)
        return True
