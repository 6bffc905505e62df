from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import quote
import hashlib
import hmac

import httpx

from .errors import GatewayUnavailable


# ----------------------------
# Notification shape
# ----------------------------
@dataclass(frozen=True)
class GatewayNotification:
    """
    One view of a transaction as the gateway reports it, whether pushed to
    the webhook or pulled from the status API. Both carry the same fields.
    """
    order_id: str
    transaction_status: str
    status_code: str = ""
    gross_amount: str = ""
    signature_key: str = ""
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_time: Optional[str] = None
    settlement_time: Optional[str] = None
    raw: Mapping[str, Any] = field(
        default_factory=dict, compare=False, repr=False
    )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> GatewayNotification:
        # tolerant on purpose: a malformed notification must still be
        # archivable, it just won't verify
        def s(key: str) -> str:
            v = payload.get(key)
            return "" if v is None else str(v)

        def opt(key: str) -> Optional[str]:
            v = payload.get(key)
            return None if v is None or v == "" else str(v)

        return cls(
            order_id=s("order_id"),
            transaction_status=s("transaction_status"),
            status_code=s("status_code"),
            gross_amount=s("gross_amount"),
            signature_key=s("signature_key"),
            fraud_status=opt("fraud_status"),
            payment_type=opt("payment_type"),
            transaction_id=opt("transaction_id"),
            transaction_time=opt("transaction_time"),
            settlement_time=opt("settlement_time"),
            raw=dict(payload),
        )


# ----------------------------
# Signature
# ----------------------------
def compute_signature(
    order_id: str, status_code: str, gross_amount: str, server_key: str
) -> str:
    # SHA512(order_id + status_code + gross_amount + server_key), hex
    payload = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode()).hexdigest()


def verify_signature(
    order_id: str,
    status_code: str,
    gross_amount: str,
    signature: str,
    server_key: str,
) -> bool:
    if not server_key or not signature:
        return False
    expected = compute_signature(
        order_id, status_code, gross_amount, server_key
    )
    return hmac.compare_digest(expected.encode(), signature.encode())


def verify_notification(n: GatewayNotification, server_key: str) -> bool:
    return verify_signature(
        n.order_id, n.status_code, n.gross_amount, n.signature_key,
        server_key,
    )


# ----------------------------
# Status query interface
# ----------------------------
class PaymentGateway(ABC):
    @abstractmethod
    async def fetch_status(self, order_id: str) -> GatewayNotification:
        """Pull the gateway's current view. Raises GatewayUnavailable."""
        ...


class HttpGateway(PaymentGateway):
    """Status API client: GET {base}/v2/{order_id}/status, basic auth."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str,
        server_key: str,
        timeout: float = 5.0,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.server_key = server_key
        self.timeout = timeout

    def status_url(self, order_id: str) -> str:
        return f"{self.base_url}/v2/{quote(order_id, safe='')}/status"

    async def fetch_status(self, order_id: str) -> GatewayNotification:
        if not self.server_key:
            raise GatewayUnavailable("gateway server key not configured")
        try:
            r = await self.http.get(
                self.status_url(order_id),
                auth=(self.server_key, ""),
                headers={"accept": "application/json"},
                timeout=self.timeout,
            )
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayUnavailable(
                f"status query for {order_id} failed: {e}"
            ) from e

        if not isinstance(body, dict):
            raise GatewayUnavailable(
                f"status query for {order_id}: unexpected body"
            )
        # the API answers HTTP 200 with status_code "404" for unknown orders
        if str(body.get("status_code", "")) == "404" \
                or not body.get("transaction_status"):
            raise GatewayUnavailable(
                f"gateway has no transaction status for {order_id}"
            )
        return GatewayNotification.from_payload(body)
