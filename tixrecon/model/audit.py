"""Append-only audit trail of status changes. There is no update or delete."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text

from ..helpers import now_ts, to_iso
from ..infra.sql import Database
from .db import AuditRow


@dataclass(frozen=True)
class AuditEntry:
    id: int
    actor: str
    action: str
    transaction_id: int
    order_id: str
    old_status: Optional[str]
    new_status: Optional[str]
    reason: str
    metadata: Optional[Dict[str, Any]]
    created_at: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "order_id": self.order_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "reason": self.reason,
            "metadata": self.metadata,
            "created_at": to_iso(self.created_at),
        }


class AuditLog:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def append(
        self,
        *,
        actor: str,
        action: str,
        transaction_id: int,
        order_id: str,
        old_status: Optional[str],
        new_status: Optional[str],
        reason: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> int:
        row = AuditRow(
            actor=actor,
            action=action,
            transaction_id=transaction_id,
            order_id=order_id,
            old_status=old_status,
            new_status=new_status,
            reason=reason,
            meta=(
                json.dumps(dict(metadata), default=str)
                if metadata is not None else None
            ),
            created_at=now_ts(),
        )
        async with self.db.begin() as s:
            s.add(row)
            await s.flush()
            return int(row.id)

    async def recent(
        self, limit: int = 100, order_id: Optional[str] = None
    ) -> List[AuditEntry]:
        params: Dict[str, Any] = {"lim": max(1, min(int(limit), 500))}
        where = ""
        if order_id is not None:
            where = "WHERE order_id = :oid"
            params["oid"] = order_id
        async with self.db.begin() as s:
            rows = (await s.execute(text(f"""
                SELECT id, actor, action, transaction_id, order_id,
                       old_status, new_status, reason,
                       metadata AS meta, created_at
                FROM audit_logs {where}
                ORDER BY id DESC
                LIMIT :lim
            """), params)).mappings().all()
        return [
            AuditEntry(
                id=r["id"],
                actor=r["actor"],
                action=r["action"],
                transaction_id=r["transaction_id"],
                order_id=r["order_id"],
                old_status=r["old_status"],
                new_status=r["new_status"],
                reason=r["reason"],
                metadata=json.loads(r["meta"]) if r["meta"] else None,
                created_at=r["created_at"],
            )
            for r in rows
        ]
