from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from ..helpers import now_ts, to_iso
from ..infra.sql import Database
from ..status import Status
from .db import TicketRow
from .transactions import Transaction

T_ACTIVE = "active"
T_USED = "used"
T_CANCELLED = "cancelled"


@dataclass(frozen=True)
class Ticket:
    id: int
    code: str
    transaction_id: int
    status: str
    activated_at: Optional[float]
    cancelled_at: Optional[float]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ticket_code": self.code,
            "status": self.status,
            "activated_at": to_iso(self.activated_at),
        }


class TicketIssuer:
    def __init__(self, db: Database, prefix: str = "TCK") -> None:
        self.db = db
        self.prefix = prefix

    def generate_code(self) -> str:
        # 64 bits from the OS CSPRNG, printed as TCK-XXXX-XXXX-XXXX-XXXX
        raw = secrets.token_hex(8).upper()
        groups = [raw[i:i + 4] for i in range(0, len(raw), 4)]
        return "-".join([self.prefix, *groups])

    async def issue(self, txn: Transaction) -> List[str]:
        """
        Create txn.quantity active tickets, once per transaction.
        Returns the new codes, or [] when they were issued already.
        """
        now = now_ts()
        async with self.db.begin() as s:
            claimed = await s.execute(text("""
                UPDATE transactions
                SET tickets_issued = :yes, updated_at = :now
                WHERE id = :id AND status = :paid AND tickets_issued = :no
            """), {
                "id": txn.id, "paid": Status.PAID.value,
                "yes": True, "no": False, "now": now,
            })
            if claimed.rowcount != 1:
                return []
            codes = [self.generate_code() for _ in range(txn.quantity)]
            s.add_all([
                TicketRow(
                    code=code,
                    transaction_id=txn.id,
                    status=T_ACTIVE,
                    created_at=now,
                    activated_at=now,
                )
                for code in codes
            ])
        return codes

    async def cancel(self, txn_id: int) -> int:
        """Cancel every active ticket of a transaction; returns how many."""
        async with self.db.begin() as s:
            result = await s.execute(text("""
                UPDATE tickets
                SET status = :cancelled, cancelled_at = :now
                WHERE transaction_id = :tid AND status = :active
            """), {
                "tid": txn_id, "active": T_ACTIVE,
                "cancelled": T_CANCELLED, "now": now_ts(),
            })
        return int(result.rowcount)

    async def list_for_transaction(self, txn_id: int) -> List[Ticket]:
        async with self.db.begin() as s:
            rows = (await s.execute(text("""
                SELECT id, code, transaction_id, status, activated_at,
                       cancelled_at
                FROM tickets WHERE transaction_id = :tid ORDER BY id
            """), {"tid": txn_id})).mappings().all()
        return [Ticket(**r) for r in rows]
