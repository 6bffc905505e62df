#!/usr/bin/env python3
"""
TixRecon operator CLI

  tixrecon init-db
  tixrecon seed-stock VIP 500 --price 750000
  tixrecon sweep                  # one sweep + repair pass, JSON report
  tixrecon serve --port 8000

Configuration comes from the same environment variables as the server
(DATABASE_URL, GATEWAY_SERVER_KEY, GATEWAY_BASE_URL, ...).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

import httpx
import uvicorn

from .config import Settings
from .gateway import HttpGateway
from .infra.logs import configure_logging
from .infra.sql import make_database
from .model.audit import AuditLog
from .model.db import Base
from .model.stock import StockLedger
from .model.tickets import TicketIssuer
from .model.transactions import TransactionStore
from .reconcile import Reconciler


async def _init_db(settings: Settings) -> None:
    db = make_database(settings.database_url)
    try:
        await db.create_all(Base.metadata)
    finally:
        await db.dispose()
    print("✅ tables present / created")


async def _seed_stock(
    settings: Settings, category_id: str, total: int, price: int
) -> None:
    db = make_database(settings.database_url)
    try:
        await db.create_all(Base.metadata)
        ledger = StockLedger(db)
        await ledger.seed(category_id, total, price=price)
        stock = await ledger.get(category_id)
    finally:
        await db.dispose()
    print(json.dumps(stock.as_dict() if stock else {}))


async def _sweep(settings: Settings) -> int:
    db = make_database(settings.database_url)
    try:
        await db.create_all(Base.metadata)
        async with httpx.AsyncClient(timeout=settings.gateway_timeout) as http:
            # receipts are only written by the webhook; not needed here
            rec = Reconciler(
                settings=settings,
                gateway=HttpGateway(
                    http,
                    base_url=settings.gateway_base_url,
                    server_key=settings.gateway_server_key,
                    timeout=settings.gateway_timeout,
                ),
                transactions=TransactionStore(db),
                stock=StockLedger(db),
                tickets=TicketIssuer(db, prefix=settings.ticket_prefix),
                audit=AuditLog(db),
            )
            report = await rec.sweep()
    finally:
        await db.dispose()
    print(json.dumps(report.as_dict(), indent=2))
    return 1 if report.errors or report.repair_errors else 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="tixrecon",
        description="Ticket transaction reconciliation engine",
    )
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create database tables")

    seed = sub.add_parser("seed-stock", help="create or reset a category")
    seed.add_argument("category_id")
    seed.add_argument("total", type=int)
    seed.add_argument("--price", type=int, default=0,
                      help="unit price in minor units")

    sub.add_parser("sweep", help="run one reconciliation sweep")

    serve = sub.add_parser("serve", help="run the HTTP server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "init-db":
        asyncio.run(_init_db(settings))
        return 0
    if args.command == "seed-stock":
        if args.total < 0:
            print("total must not be negative", file=sys.stderr)
            return 2
        asyncio.run(_seed_stock(settings, args.category_id, args.total,
                                args.price))
        return 0
    if args.command == "sweep":
        return asyncio.run(_sweep(settings))
    if args.command == "serve":
        uvicorn.run("tixrecon.server:create_app", factory=True,
                    host=args.host, port=args.port)
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
