from __future__ import annotations
import json
from typing import Any, Dict, List, Mapping

import redis.asyncio as redis

from ...helpers import now_ts, to_iso


# ---- keys
def k_receipt(rid: str) -> str: return f"receipt:{rid}"


RECEIPT_SEQ = "receipts:seq"
RECEIPT_INDEX = "receipts"


class RedisReceiptStore:
    def __init__(self, r: redis.Redis) -> None:
        # expects a client created with decode_responses=True
        self.r = r

    async def archive(
        self, order_id: str, payload: Mapping[str, Any], signature_valid: bool
    ) -> str:
        rid = str(await self.r.incr(RECEIPT_SEQ))
        created = now_ts()
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_receipt(rid), mapping={
            "order_id": order_id or "",
            "payload": json.dumps(dict(payload), default=str),
            "signature_valid": "1" if signature_valid else "0",
            "processed": "0",
            "created_at": str(created),
        })
        pipe.zadd(RECEIPT_INDEX, {rid: created})
        await pipe.execute()
        return rid

    async def mark_processed(
        self, receipt_id: str, disposition: str, processed: bool
    ) -> None:
        # only the handling marker is ever written after archive; HSETNX
        # makes the first mark win
        key = k_receipt(receipt_id)
        if not await self.r.hsetnx(key, "disposition", disposition):
            return
        await self.r.hset(key, "processed", "1" if processed else "0")

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        rids = await self.r.zrevrange(RECEIPT_INDEX, 0, max(0, limit - 1))
        pipe = self.r.pipeline()
        for rid in rids:
            pipe.hgetall(k_receipt(rid))
        rows = await pipe.execute()

        items = []
        for rid, h in zip(rids, rows):
            if not h:
                continue
            try:
                created = float(h.get("created_at", "0"))
            except ValueError:
                created = 0.0
            items.append({
                "id": rid,
                "order_id": h.get("order_id", ""),
                "payload": json.loads(h.get("payload") or "{}"),
                "signature_valid": h.get("signature_valid") == "1",
                "processed": h.get("processed") == "1",
                "disposition": h.get("disposition") or None,
                "created_at": to_iso(created),
            })
        return items
