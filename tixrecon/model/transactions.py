# model/transactions.py
"""
Transaction store.

Every status write is a single UPDATE guarded by the status the caller last
observed (optimistic lock). A writer that lost the race gets `False` back and
must re-read before deciding anything else.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text

from ..helpers import now_ts, to_iso
from ..infra.sql import Database
from ..status import Status
from .db import TransactionRow

_COLUMNS = """
    id, order_id, category_id, quantity, amount, currency,
    customer_name, customer_email, customer_phone, status,
    created_at, updated_at, paid_at, expired_at,
    gateway_status, fraud_status, payment_type,
    stock_committed, tickets_issued
"""


@dataclass(frozen=True)
class Transaction:
    id: int
    order_id: str
    category_id: str
    quantity: int
    amount: int
    currency: str
    customer_name: str
    customer_email: str
    customer_phone: str
    status: Status
    created_at: float
    updated_at: float
    paid_at: Optional[float] = None
    expired_at: Optional[float] = None
    gateway_status: Optional[str] = None
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    stock_committed: bool = False
    tickets_issued: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Transaction:
        return cls(
            id=int(row["id"]),
            order_id=row["order_id"],
            category_id=row["category_id"],
            quantity=int(row["quantity"]),
            amount=int(row["amount"]),
            currency=row["currency"],
            customer_name=row["customer_name"] or "",
            customer_email=row["customer_email"],
            customer_phone=row["customer_phone"] or "",
            status=Status(row["status"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            paid_at=row["paid_at"],
            expired_at=row["expired_at"],
            gateway_status=row["gateway_status"],
            fraud_status=row["fraud_status"],
            payment_type=row["payment_type"],
            # sqlite hands booleans back as 0/1
            stock_committed=bool(row["stock_committed"]),
            tickets_issued=bool(row["tickets_issued"]),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status.value,
            "category_id": self.category_id,
            "quantity": self.quantity,
            "amount": self.amount,
            "currency": self.currency,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "payment_type": self.payment_type or "",
            "created_at": to_iso(self.created_at),
            "paid_at": to_iso(self.paid_at),
            "expired_at": to_iso(self.expired_at),
        }


class TransactionStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(
        self,
        *,
        order_id: str,
        category_id: str,
        quantity: int,
        amount: int,
        customer_email: str,
        customer_name: str = "",
        customer_phone: str = "",
        currency: str = "idr",
        created_at: Optional[float] = None,
    ) -> Transaction:
        """Insert a new transaction in `pending`. Nothing else creates rows."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        ts = now_ts() if created_at is None else created_at
        async with self.db.begin() as s:
            s.add(TransactionRow(
                order_id=order_id,
                category_id=category_id,
                quantity=quantity,
                amount=amount,
                currency=currency,
                customer_name=customer_name,
                customer_email=customer_email,
                customer_phone=customer_phone,
                status=Status.PENDING.value,
                created_at=ts,
                updated_at=ts,
                stock_committed=False,
                tickets_issued=False,
            ))
        txn = await self.fetch_by_order_id(order_id)
        if txn is None:
            raise RuntimeError(f"transaction {order_id} missing after insert")
        return txn

    async def fetch_by_order_id(self, order_id: str) -> Optional[Transaction]:
        async with self.db.begin() as s:
            row = (await s.execute(
                text(f"SELECT {_COLUMNS} FROM transactions "
                     "WHERE order_id = :oid"),
                {"oid": order_id},
            )).mappings().first()
        return Transaction.from_row(row) if row else None

    async def conditional_update(
        self,
        txn_id: int,
        expected: Status,
        new: Status,
        *,
        gateway_status: Optional[str] = None,
        fraud_status: Optional[str] = None,
        payment_type: Optional[str] = None,
    ) -> bool:
        """
        Move `txn_id` from `expected` to `new` in one statement.
        Returns True iff this call changed the row. paid_at / expired_at
        are only ever set once.
        """
        now = now_ts()
        async with self.db.begin() as s:
            result = await s.execute(text("""
                UPDATE transactions
                SET status = :new,
                    updated_at = :now,
                    paid_at = COALESCE(paid_at, :paid_at),
                    expired_at = COALESCE(expired_at, :expired_at),
                    gateway_status = COALESCE(:gateway_status, gateway_status),
                    fraud_status = COALESCE(:fraud_status, fraud_status),
                    payment_type = COALESCE(:payment_type, payment_type)
                WHERE id = :id AND status = :expected
            """), {
                "id": txn_id,
                "expected": Status(expected).value,
                "new": Status(new).value,
                "now": now,
                "paid_at": now if new == Status.PAID else None,
                "expired_at": now if new == Status.EXPIRED else None,
                "gateway_status": gateway_status,
                "fraud_status": fraud_status,
                "payment_type": payment_type,
            })
        return result.rowcount == 1

    async def list_stale_pending(
        self, created_before: float, limit: int
    ) -> List[Transaction]:
        # oldest first, so a backlog drains in arrival order
        async with self.db.begin() as s:
            rows = (await s.execute(text(f"""
                SELECT {_COLUMNS} FROM transactions
                WHERE status = :pending AND created_at < :cutoff
                ORDER BY created_at ASC
                LIMIT :lim
            """), {
                "pending": Status.PENDING.value,
                "cutoff": created_before,
                "lim": max(1, int(limit)),
            })).mappings().all()
        return [Transaction.from_row(r) for r in rows]

    async def list_unfulfilled_paid(
        self, paid_before: float, limit: int
    ) -> List[Transaction]:
        """Paid transactions whose stock commit or ticket issue is missing."""
        async with self.db.begin() as s:
            rows = (await s.execute(text(f"""
                SELECT {_COLUMNS} FROM transactions
                WHERE status = :paid
                  AND (stock_committed = :no OR tickets_issued = :no)
                  AND paid_at < :cutoff
                ORDER BY paid_at ASC
                LIMIT :lim
            """), {
                "paid": Status.PAID.value,
                "no": False,
                "cutoff": paid_before,
                "lim": max(1, int(limit)),
            })).mappings().all()
        return [Transaction.from_row(r) for r in rows]

    async def list_recent(self, limit: int = 200) -> List[Transaction]:
        async with self.db.begin() as s:
            rows = (await s.execute(text(f"""
                SELECT {_COLUMNS} FROM transactions
                ORDER BY created_at DESC
                LIMIT :lim
            """), {"lim": max(1, min(int(limit), 500))})).mappings().all()
        return [Transaction.from_row(r) for r in rows]
