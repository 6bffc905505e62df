"""
Shared fixtures for the reconciliation tests.

Every test gets its own SQLite file under tmp_path. Async code is driven
with asyncio.run() from plain test functions, and the harness is opened
inside that loop so the engine and its pool never cross event loops:

    def test_something(make_harness):
        async def scenario():
            async with make_harness() as h:
                ...
        asyncio.run(scenario())
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

import pytest

from tixrecon.config import Settings
from tixrecon.errors import GatewayUnavailable
from tixrecon.gateway import (
    GatewayNotification, PaymentGateway, compute_signature
)
from tixrecon.helpers import new_order_id, now_ts
from tixrecon.infra.sql import Database, make_database
from tixrecon.model.audit import AuditLog
from tixrecon.model.db import Base
from tixrecon.model.receipts import SqlReceiptStore
from tixrecon.model.stock import StockLedger
from tixrecon.model.tickets import T_ACTIVE, TicketIssuer
from tixrecon.model.transactions import Transaction, TransactionStore
from tixrecon.reconcile import Reconciler

SERVER_KEY = "SB-Mid-server-test-0123456789"
CATEGORY = "VIP"
CATEGORY_TOTAL = 100
UNIT_PRICE = 100_000


def notification(
    order_id: str,
    transaction_status: str,
    *,
    fraud_status: Optional[str] = None,
    gross_amount: str = "200000.00",
    status_code: str = "200",
    server_key: str = SERVER_KEY,
    payment_type: str = "bank_transfer",
) -> dict:
    """A gateway notification body signed the way the gateway signs it."""
    payload = {
        "order_id": order_id,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "transaction_status": transaction_status,
        "payment_type": payment_type,
        "transaction_id": f"gw-{order_id}",
        "transaction_time": "2026-10-18 10:00:00",
        "currency": "IDR",
        "signature_key": compute_signature(
            order_id, status_code, gross_amount, server_key
        ),
    }
    if fraud_status is not None:
        payload["fraud_status"] = fraud_status
    return payload


class FakeGateway(PaymentGateway):
    def __init__(self) -> None:
        self.views: Dict[str, dict] = {}
        self.down: set = set()
        self.delay: Dict[str, float] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def report(self, order_id: str, transaction_status: str,
               fraud_status: Optional[str] = None) -> None:
        self.views[order_id] = notification(
            order_id, transaction_status, fraud_status=fraud_status
        )

    async def fetch_status(self, order_id: str) -> GatewayNotification:
        self.calls.append(order_id)
        if order_id in self.delay:
            await asyncio.sleep(self.delay[order_id])
        if order_id in self.errors:
            raise self.errors[order_id]
        if order_id in self.down or order_id not in self.views:
            raise GatewayUnavailable(f"no answer for {order_id}")
        return GatewayNotification.from_payload(self.views[order_id])


@dataclass
class Harness:
    settings: Settings
    db: Database
    gateway: FakeGateway
    transactions: TransactionStore
    stock: StockLedger
    tickets: TicketIssuer
    audit: AuditLog
    receipts: SqlReceiptStore
    rec: Reconciler

    async def order(
        self,
        quantity: int = 2,
        *,
        category_id: str = CATEGORY,
        age_seconds: float = 0.0,
    ) -> Transaction:
        return await self.transactions.create(
            order_id=new_order_id(category_id),
            category_id=category_id,
            quantity=quantity,
            amount=UNIT_PRICE * quantity,
            customer_email="fan@example.com",
            customer_name="Test Fan",
            created_at=now_ts() - age_seconds,
        )

    async def reload(self, txn: Transaction) -> Transaction:
        fresh = await self.transactions.fetch_by_order_id(txn.order_id)
        assert fresh is not None
        return fresh

    async def remaining(self, category_id: str = CATEGORY) -> int:
        stock = await self.stock.get(category_id)
        assert stock is not None
        return stock.remaining_stock

    async def active_tickets(self, txn: Transaction) -> list:
        return [
            t for t in await self.tickets.list_for_transaction(txn.id)
            if t.status == T_ACTIVE
        ]


@asynccontextmanager
async def open_harness(tmp_path, **overrides):
    opts = dict(
        database_url=f"sqlite:///{tmp_path / 'recon.db'}",
        gateway_server_key=SERVER_KEY,
        cron_secret="cron-test-secret",
    )
    opts.update(overrides)
    settings = Settings(**opts)
    db = make_database(settings.database_url)
    await db.create_all(Base.metadata)
    gateway = FakeGateway()
    transactions = TransactionStore(db)
    stock = StockLedger(db)
    tickets = TicketIssuer(db, prefix=settings.ticket_prefix)
    audit = AuditLog(db)
    receipts = SqlReceiptStore(db)
    rec = Reconciler(
        settings=settings,
        gateway=gateway,
        transactions=transactions,
        stock=stock,
        tickets=tickets,
        audit=audit,
        receipts=receipts,
    )
    await stock.seed(CATEGORY, CATEGORY_TOTAL, price=UNIT_PRICE)
    try:
        yield Harness(
            settings=settings, db=db, gateway=gateway,
            transactions=transactions, stock=stock, tickets=tickets,
            audit=audit, receipts=receipts, rec=rec,
        )
    finally:
        await db.dispose()


@pytest.fixture
def make_harness(tmp_path):
    def factory(**overrides):
        return open_harness(tmp_path, **overrides)
    return factory


@pytest.fixture
def notify():
    return notification


@pytest.fixture
def fake_gateway():
    return FakeGateway()
