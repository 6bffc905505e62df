"""
Tests for `tixrecon/reconcile.py`.

Covers:
- webhook push: first delivery, redelivery, tampered payloads, refunds
- concurrent writers on one transaction (exactly one set of side effects)
- sweep: stale pending transactions, partial gateway failure, timeouts,
  unmapped gateway statuses, repair of unfulfilled paid transactions
- manual recheck and administrative override results and audit trail
"""

from __future__ import annotations

import asyncio

from tixrecon.reconcile import Disposition, Source
from tixrecon.status import Status

OVERRIDE_REASON = "confirmed bank transfer screenshot"


# ----------------------------
# Webhook
# ----------------------------
def test_webhook_settlement_pays_and_fulfils(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            t1 = await h.order(quantity=2)
            outcome = await h.rec.handle_notification(
                notify(t1.order_id, "settlement")
            )
            assert outcome.disposition == Disposition.OK
            assert len(outcome.tickets) == 2

            fresh = await h.reload(t1)
            assert fresh.status == Status.PAID
            assert fresh.paid_at is not None
            assert fresh.stock_committed and fresh.tickets_issued
            assert fresh.gateway_status == "settlement"
            assert await h.remaining() == 98
            assert len(await h.active_tickets(t1)) == 2

            [entry] = await h.audit.recent(order_id=t1.order_id)
            assert entry.actor == "system:webhook"
            assert entry.action == "webhook"
            assert (entry.old_status, entry.new_status) == ("pending", "paid")
            assert entry.metadata["transaction_status"] == "settlement"

    asyncio.run(scenario())


def test_webhook_redelivery_changes_nothing(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            t1 = await h.order(quantity=2)
            payload = notify(t1.order_id, "settlement")
            await h.rec.handle_notification(payload)

            again = await h.rec.handle_notification(payload)
            assert again.disposition == Disposition.ALREADY_PROCESSED
            assert (await h.reload(t1)).status == Status.PAID
            assert await h.remaining() == 98
            assert len(await h.active_tickets(t1)) == 2
            assert len(await h.audit.recent(order_id=t1.order_id)) == 1

    asyncio.run(scenario())


def test_webhook_delivered_many_times_is_idempotent(make_harness,
                                                    notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order(quantity=3)
            payload = notify(txn.order_id, "settlement",
                             gross_amount="300000.00")
            for _ in range(3):
                await h.rec.handle_notification(payload)
            outcomes = await asyncio.gather(
                *(h.rec.handle_notification(payload) for _ in range(5))
            )
            assert all(o.disposition == Disposition.ALREADY_PROCESSED
                       for o in outcomes)
            assert await h.remaining() == 97
            assert len(await h.tickets.list_for_transaction(txn.id)) == 3

    asyncio.run(scenario())


def test_concurrent_paid_writers_apply_once(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order(quantity=2)
            h.gateway.report(txn.order_id, "settlement")
            outcomes = await asyncio.gather(
                h.rec.handle_notification(notify(txn.order_id, "settlement")),
                h.rec.handle_notification(notify(txn.order_id, "settlement")),
                h.rec.reconcile(txn.order_id, Status.PAID,
                                source=Source.SWEEP),
                h.rec.recheck(txn.order_id),
            )
            pushed, pushed_again, swept, rechecked = outcomes
            winners = [o for o in (pushed, pushed_again, swept)
                       if o.disposition == Disposition.OK]
            if rechecked.message.startswith("Status updated"):
                winners.append(rechecked)
            assert len(winners) == 1
            assert (await h.reload(txn)).status == Status.PAID
            assert await h.remaining() == 98
            assert len(await h.tickets.list_for_transaction(txn.id)) == 2
            # exactly one status change was recorded
            entries = await h.audit.recent(order_id=txn.order_id)
            assert [(e.old_status, e.new_status) for e in entries] == [
                ("pending", "paid")
            ]

    asyncio.run(scenario())


def test_conflicting_writers_settle_on_one_state(make_harness,
                                                 notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order(quantity=2)
            paid, expired = await asyncio.gather(
                h.rec.handle_notification(notify(txn.order_id, "settlement")),
                h.rec.handle_notification(notify(txn.order_id, "expire")),
            )
            dispositions = {paid.disposition, expired.disposition}
            assert dispositions == {Disposition.OK, Disposition.NO_TRANSITION}

            fresh = await h.reload(txn)
            if fresh.status == Status.PAID:
                assert await h.remaining() == 98
                assert len(await h.active_tickets(txn)) == 2
            else:
                assert fresh.status == Status.EXPIRED
                assert await h.remaining() == 100
                assert await h.tickets.list_for_transaction(txn.id) == []

    asyncio.run(scenario())


def test_tampered_amount_is_rejected_without_mutation(make_harness,
                                                      notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order(quantity=2)
            payload = notify(txn.order_id, "settlement")
            payload["gross_amount"] = "200000.01"

            outcome = await h.rec.handle_notification(payload)
            assert outcome.disposition == Disposition.INVALID_SIGNATURE

            fresh = await h.reload(txn)
            assert fresh.status == Status.PENDING
            assert fresh.updated_at == txn.updated_at
            assert await h.remaining() == 100
            assert await h.tickets.list_for_transaction(txn.id) == []
            assert await h.audit.recent(order_id=txn.order_id) == []

            [receipt] = await h.receipts.recent()
            assert receipt["order_id"] == txn.order_id
            assert receipt["signature_valid"] is False
            assert receipt["processed"] is False
            assert receipt["disposition"] == "invalid_signature"

    asyncio.run(scenario())


def test_webhook_without_server_key_rejects_everything(make_harness,
                                                       notify) -> None:
    async def scenario():
        async with make_harness(gateway_server_key="") as h:
            txn = await h.order()
            outcome = await h.rec.handle_notification(
                notify(txn.order_id, "settlement")
            )
            assert outcome.disposition == Disposition.INVALID_SIGNATURE
            assert (await h.reload(txn)).status == Status.PENDING

    asyncio.run(scenario())


def test_webhook_for_unknown_order(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            outcome = await h.rec.handle_notification(
                notify("ORD-VIP-DOESNOTEXIST", "settlement")
            )
            assert outcome.disposition == Disposition.TRANSACTION_NOT_FOUND
            [receipt] = await h.receipts.recent()
            assert receipt["signature_valid"] is True
            assert receipt["disposition"] == "transaction_not_found"

    asyncio.run(scenario())


def test_webhook_empty_payload_does_not_raise(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            outcome = await h.rec.handle_notification({})
            assert outcome.disposition == Disposition.INVALID_SIGNATURE

    asyncio.run(scenario())


def test_paid_transaction_cannot_go_backwards(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            await h.rec.handle_notification(notify(txn.order_id, "settlement"))
            for status in ("pending", "expire", "deny"):
                outcome = await h.rec.handle_notification(
                    notify(txn.order_id, status)
                )
                assert outcome.disposition == Disposition.NO_TRANSITION
            assert (await h.reload(txn)).status == Status.PAID
            assert await h.remaining() == 98

    asyncio.run(scenario())


def test_fraud_challenge_keeps_pending(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            outcome = await h.rec.handle_notification(
                notify(txn.order_id, "capture", fraud_status="challenge")
            )
            assert outcome.disposition == Disposition.ALREADY_PROCESSED
            assert (await h.reload(txn)).status == Status.PENDING

            outcome = await h.rec.handle_notification(
                notify(txn.order_id, "capture", fraud_status="accept")
            )
            assert outcome.disposition == Disposition.OK
            fresh = await h.reload(txn)
            assert fresh.status == Status.PAID
            assert fresh.fraud_status == "accept"

    asyncio.run(scenario())


def test_refund_cancels_tickets_and_restores_stock(make_harness,
                                                   notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order(quantity=2)
            await h.rec.handle_notification(notify(txn.order_id, "settlement"))
            assert await h.remaining() == 98

            outcome = await h.rec.handle_notification(
                notify(txn.order_id, "refund")
            )
            assert outcome.disposition == Disposition.OK
            fresh = await h.reload(txn)
            assert fresh.status == Status.REFUNDED
            assert not fresh.stock_committed
            assert await h.remaining() == 100
            assert await h.active_tickets(txn) == []

            # a refunded order stays refunded
            outcome = await h.rec.handle_notification(
                notify(txn.order_id, "settlement")
            )
            assert outcome.disposition == Disposition.NO_TRANSITION
            assert await h.remaining() == 100

    asyncio.run(scenario())


def test_refund_restores_stock_when_tickets_were_never_issued(
        make_harness, notify, monkeypatch) -> None:
    async def scenario():
        async with make_harness() as h:
            async def broken_issue(txn):
                raise RuntimeError("ticket service down")

            monkeypatch.setattr(h.tickets, "issue", broken_issue)
            txn = await h.order(quantity=2)
            await h.rec.handle_notification(notify(txn.order_id, "settlement"))
            fresh = await h.reload(txn)
            assert fresh.status == Status.PAID
            assert fresh.stock_committed and not fresh.tickets_issued
            assert await h.remaining() == 98

            outcome = await h.rec.handle_notification(
                notify(txn.order_id, "refund")
            )
            assert outcome.disposition == Disposition.OK
            fresh = await h.reload(txn)
            assert fresh.status == Status.REFUNDED
            assert not fresh.stock_committed
            assert await h.remaining() == 100

            # nothing left to give back
            await h.rec.sweep()
            assert await h.remaining() == 100

    asyncio.run(scenario())


def test_expiry_of_pending_touches_no_stock(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order(quantity=2)
            await h.rec.handle_notification(notify(txn.order_id, "expire"))
            fresh = await h.reload(txn)
            assert fresh.status == Status.EXPIRED
            assert fresh.expired_at is not None
            assert await h.remaining() == 100

    asyncio.run(scenario())


def test_stock_failure_does_not_roll_back_payment(make_harness,
                                                  notify) -> None:
    async def scenario():
        async with make_harness(repair_grace_seconds=0) as h:
            await h.stock.seed("GA", 1, price=50_000)
            txn = await h.order(quantity=2, category_id="GA")
            outcome = await h.rec.handle_notification(
                notify(txn.order_id, "settlement")
            )
            assert outcome.disposition == Disposition.OK

            fresh = await h.reload(txn)
            assert fresh.status == Status.PAID
            assert not fresh.stock_committed
            assert fresh.tickets_issued
            assert (await h.stock.get("GA")).remaining_stock == 1

            # operator restocks, the repair pass finishes the job
            await h.stock.seed("GA", 10, price=50_000)
            report = await h.rec.repair()
            assert report.repaired == 1
            assert report.repair_errors == 0
            assert (await h.stock.get("GA")).remaining_stock == 8
            assert (await h.reload(txn)).stock_committed
            assert len(await h.tickets.list_for_transaction(txn.id)) == 2

            report = await h.rec.repair()
            assert report.repaired == 0
            assert (await h.stock.get("GA")).remaining_stock == 8

            actions = [e.action for e in
                       await h.audit.recent(order_id=txn.order_id)]
            assert actions == ["repair", "webhook"]

    asyncio.run(scenario())


def test_repair_waits_for_grace_period(make_harness, notify) -> None:
    async def scenario():
        async with make_harness(repair_grace_seconds=300) as h:
            await h.stock.seed("GA", 0)
            txn = await h.order(quantity=1, category_id="GA")
            await h.rec.handle_notification(notify(txn.order_id, "settlement"))
            report = await h.rec.repair()
            assert report.repaired == 0
            assert report.repair_errors == 0

    asyncio.run(scenario())


# ----------------------------
# Sweep
# ----------------------------
def test_sweep_expires_stale_pending(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            t2 = await h.order(quantity=2, age_seconds=35 * 60)
            fresh_order = await h.order(age_seconds=60)
            h.gateway.report(t2.order_id, "expire")
            h.gateway.report(fresh_order.order_id, "expire")

            report = await h.rec.sweep()
            assert (report.processed, report.updated, report.errors) == (
                1, 1, 0)
            assert h.gateway.calls == [t2.order_id]

            expired = await h.reload(t2)
            assert expired.status == Status.EXPIRED
            assert expired.expired_at is not None
            assert await h.remaining() == 100
            assert await h.tickets.list_for_transaction(t2.id) == []
            assert (await h.reload(fresh_order)).status == Status.PENDING

            [entry] = await h.audit.recent(order_id=t2.order_id)
            assert entry.actor == "system:sweep"
            assert entry.action == "sweep"

    asyncio.run(scenario())


def test_sweep_survives_partial_gateway_failure(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            paid = await h.order(quantity=2, age_seconds=3600)
            expired = await h.order(age_seconds=3600)
            broken = await h.order(age_seconds=3600)
            h.gateway.report(paid.order_id, "settlement")
            h.gateway.report(expired.order_id, "expire")
            h.gateway.down.add(broken.order_id)

            report = await h.rec.sweep()
            assert report.processed == 2
            assert report.updated == 2
            assert report.errors == 1
            assert any(broken.order_id in m for m in report.messages)

            assert (await h.reload(paid)).status == Status.PAID
            assert (await h.reload(expired)).status == Status.EXPIRED
            # no answer is not an answer
            assert (await h.reload(broken)).status == Status.PENDING
            assert await h.remaining() == 98

    asyncio.run(scenario())


def test_sweep_isolates_unexpected_gateway_errors(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            broken = await h.order(age_seconds=3600)
            paid = await h.order(quantity=2, age_seconds=3600)
            h.gateway.errors[broken.order_id] = RuntimeError("boom")
            h.gateway.report(paid.order_id, "settlement")

            report = await h.rec.sweep()
            assert report.errors == 1
            assert report.processed == 1
            assert report.updated == 1
            assert any(broken.order_id in m and "boom" in m
                       for m in report.messages)

            assert (await h.reload(broken)).status == Status.PENDING
            assert (await h.reload(paid)).status == Status.PAID
            assert await h.remaining() == 98

    asyncio.run(scenario())


def test_sweep_slow_gateway_counts_as_error(make_harness) -> None:
    async def scenario():
        async with make_harness(gateway_timeout=0.05) as h:
            slow = await h.order(age_seconds=3600)
            h.gateway.report(slow.order_id, "settlement")
            h.gateway.delay[slow.order_id] = 1.0

            report = await h.rec.sweep()
            assert report.errors == 1
            assert report.processed == 0
            assert (await h.reload(slow)).status == Status.PENDING

    asyncio.run(scenario())


def test_sweep_counts_unmapped_statuses(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            odd = await h.order(age_seconds=3600)
            h.gateway.report(odd.order_id, "authorize")

            report = await h.rec.sweep()
            assert report.unmapped == 1
            assert report.updated == 0
            assert report.errors == 0
            assert (await h.reload(odd)).status == Status.PENDING

    asyncio.run(scenario())


def test_sweep_batch_is_capped(make_harness) -> None:
    async def scenario():
        async with make_harness(sweep_batch_size=3,
                                sweep_concurrency=2) as h:
            orders = [await h.order(quantity=1, age_seconds=3600 + i)
                      for i in range(5)]
            for txn in orders:
                h.gateway.report(txn.order_id, "expire")

            report = await h.rec.sweep()
            assert report.processed == 3
            assert len(h.gateway.calls) == 3
            # oldest first
            assert set(h.gateway.calls) == {t.order_id for t in orders[2:]}

            report = await h.rec.sweep()
            assert report.processed == 2

    asyncio.run(scenario())


def test_sweep_with_nothing_to_do(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            report = await h.rec.sweep()
            assert report.as_dict() == {
                "processed": 0, "updated": 0, "errors": 0, "unmapped": 0,
                "repaired": 0, "repair_errors": 0, "messages": [],
            }

    asyncio.run(scenario())


# ----------------------------
# Manual recheck
# ----------------------------
def test_recheck_pulls_gateway_status(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order(quantity=2)
            h.gateway.report(txn.order_id, "settlement")

            result = await h.rec.recheck(txn.order_id)
            assert result.success
            assert result.new_status == "paid"
            assert result.message == "Status updated: pending -> paid."
            assert len(await h.active_tickets(txn)) == 2

            [entry] = await h.audit.recent(order_id=txn.order_id)
            assert entry.actor == "customer"
            assert entry.action == "recheck"

    asyncio.run(scenario())


def test_recheck_records_admin_identity(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            h.gateway.report(txn.order_id, "cancel")
            result = await h.rec.recheck(txn.order_id, actor="ops@example.com")
            assert result.success
            assert result.new_status == "failed"
            [entry] = await h.audit.recent(order_id=txn.order_id)
            assert entry.actor == "ops@example.com"

    asyncio.run(scenario())


def test_recheck_still_pending(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            h.gateway.report(txn.order_id, "pending")
            result = await h.rec.recheck(txn.order_id)
            assert result.success
            assert result.new_status == "pending"
            assert result.message == "Status already up to date: pending."

    asyncio.run(scenario())


def test_recheck_gateway_down_is_not_a_status(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            h.gateway.down.add(txn.order_id)
            result = await h.rec.recheck(txn.order_id)
            assert not result.success
            assert result.new_status == "pending"
            assert "unavailable" in result.message
            assert (await h.reload(txn)).status == Status.PENDING

    asyncio.run(scenario())


def test_recheck_skips_settled_transactions(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            await h.rec.handle_notification(notify(txn.order_id, "settlement"))
            result = await h.rec.recheck(txn.order_id)
            assert result.success
            assert result.new_status == "paid"
            assert h.gateway.calls == []

    asyncio.run(scenario())


def test_recheck_unknown_order(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            result = await h.rec.recheck("ORD-VIP-MISSING")
            assert not result.success
            assert result.message == "Transaction not found."

    asyncio.run(scenario())


# ----------------------------
# Override
# ----------------------------
def test_override_marks_paid_with_audit(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            t3 = await h.order(quantity=2)
            result = await h.rec.override(
                t3.order_id, actor="ops@example.com", reason=OVERRIDE_REASON
            )
            assert result.success
            assert result.new_status == "paid"
            assert (await h.reload(t3)).status == Status.PAID
            assert await h.remaining() == 98
            assert len(await h.active_tickets(t3)) == 2

            [entry] = await h.audit.recent(order_id=t3.order_id)
            assert entry.action == "override"
            assert entry.actor == "ops@example.com"
            assert (entry.old_status, entry.new_status) == ("pending", "paid")
            assert entry.reason == OVERRIDE_REASON
            assert entry.metadata == {"override": True}

            again = await h.rec.override(
                t3.order_id, actor="ops@example.com", reason=OVERRIDE_REASON
            )
            assert not again.success
            assert again.message == "Transaction is already paid."
            assert len(await h.audit.recent(order_id=t3.order_id)) == 1
            assert await h.remaining() == 98

    asyncio.run(scenario())


def test_override_requires_justification(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            result = await h.rec.override(txn.order_id, "ops", "   ok   ")
            assert not result.success
            assert "at least 10 characters" in result.message
            assert (await h.reload(txn)).status == Status.PENDING
            assert await h.audit.recent() == []

    asyncio.run(scenario())


def test_override_keeps_reason_verbatim(make_harness) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            reason = f"  {OVERRIDE_REASON}\n"
            result = await h.rec.override(txn.order_id, "ops", reason)
            assert result.success
            [entry] = await h.audit.recent(order_id=txn.order_id)
            assert entry.reason == reason

    asyncio.run(scenario())


def test_override_rejects_terminal_and_missing(make_harness, notify) -> None:
    async def scenario():
        async with make_harness() as h:
            txn = await h.order()
            await h.rec.handle_notification(notify(txn.order_id, "expire"))
            result = await h.rec.override(txn.order_id, "ops", OVERRIDE_REASON)
            assert not result.success
            assert result.new_status == "expired"
            assert (await h.reload(txn)).status == Status.EXPIRED

            result = await h.rec.override("ORD-VIP-MISSING", "ops",
                                          OVERRIDE_REASON)
            assert not result.success
            assert result.message == "Transaction not found."

    asyncio.run(scenario())
