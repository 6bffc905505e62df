from __future__ import annotations
import json
from typing import Any, Dict, List, Mapping

from sqlalchemy import text

from ...helpers import now_ts, to_iso
from ...infra.sql import Database
from ..db import WebhookReceiptRow


class SqlReceiptStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def archive(
        self, order_id: str, payload: Mapping[str, Any], signature_valid: bool
    ) -> str:
        row = WebhookReceiptRow(
            order_id=order_id or None,
            payload=json.dumps(dict(payload), default=str),
            signature_valid=signature_valid,
            processed=False,
            created_at=now_ts(),
        )
        async with self.db.begin() as s:
            s.add(row)
            await s.flush()
            return str(row.id)

    async def mark_processed(
        self, receipt_id: str, disposition: str, processed: bool
    ) -> None:
        # only the handling marker is ever written after insert
        async with self.db.begin() as s:
            await s.execute(text("""
                UPDATE webhook_receipts
                SET processed = :p, disposition = :d
                WHERE id = :id AND disposition IS NULL
            """), {"id": int(receipt_id), "p": processed, "d": disposition})

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.db.begin() as s:
            rows = (await s.execute(text("""
                SELECT id, order_id, payload, signature_valid, processed,
                       disposition, created_at
                FROM webhook_receipts
                ORDER BY id DESC
                LIMIT :lim
            """), {"lim": max(1, min(int(limit), 500))})).mappings().all()
        return [
            {
                "id": str(r["id"]),
                "order_id": r["order_id"] or "",
                "payload": json.loads(r["payload"]),
                "signature_valid": bool(r["signature_valid"]),
                "processed": bool(r["processed"]),
                "disposition": r["disposition"],
                "created_at": to_iso(r["created_at"]),
            }
            for r in rows
        ]
