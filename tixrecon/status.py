"""
The five-state transaction model, the gateway vocabulary mapping and the
legal transition graph.

    pending --> paid --> refunded
       |
       +------> expired | failed | refunded

Everything here is pure.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class Status(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL = frozenset({
    Status.PAID, Status.EXPIRED, Status.FAILED, Status.REFUNDED
})

# statuses whose arrival cancels whatever tickets a transaction holds
CANCELLING = frozenset({Status.REFUNDED, Status.FAILED, Status.EXPIRED})

# gateway transaction_status -> internal status (capture is fraud dependent)
_GATEWAY_STATUS = {
    "settlement": Status.PAID,
    "pending": Status.PENDING,
    "deny": Status.FAILED,
    "cancel": Status.FAILED,
    "expire": Status.EXPIRED,
    "refund": Status.REFUNDED,
    "partial_refund": Status.REFUNDED,
}

_CAPTURE_FRAUD_STATUS = {
    "accept": Status.PAID,
    "challenge": Status.PENDING,
}


def is_known_gateway_status(gateway_status: Optional[str]) -> bool:
    return gateway_status == "capture" or gateway_status in _GATEWAY_STATUS


def map_gateway_status(
    gateway_status: Optional[str], fraud_status: Optional[str] = None
) -> Status:
    """
    Translate the gateway's transaction/fraud status pair.

    Unknown gateway statuses fall back to PENDING so they can never push a
    transaction into a terminal state; callers should check
    is_known_gateway_status() to alert on them.
    """
    if gateway_status == "capture":
        return _CAPTURE_FRAUD_STATUS.get(fraud_status or "", Status.FAILED)
    return _GATEWAY_STATUS.get(gateway_status or "", Status.PENDING)


def is_valid_transition(current: Status, target: Status) -> bool:
    if current == target:
        # idempotent re-delivery
        return True
    if current not in TERMINAL:
        return True
    # the one edge out of a terminal state
    return current == Status.PAID and target == Status.REFUNDED
