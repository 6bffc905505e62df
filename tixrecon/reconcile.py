# tixrecon/reconcile.py
"""
Transaction status reconciliation.

Webhook pushes, manual rechecks, admin overrides and the periodic sweep all
end up in Reconciler.reconcile():

    gateway view -> mapped status -> validated transition
        -> conditional update -> stock / tickets -> audit

Exactly-once side effects come from two guards, not from dedup tables:
  1) the status write is conditional on the status we just read, so of two
     concurrent writers only one sees "applied";
  2) stock and tickets are each guarded by a claim flag on the transaction
     row, flipped in the same DB transaction as the effect.
Only the writer whose update applied runs the side-effect code at all; the
claims make the later repair pass safe to run next to it.

Automated entry points (webhook, sweep) never raise. Human-facing ones
(recheck, override) return an ActionResult.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .errors import GatewayUnavailable
from .gateway import (
    GatewayNotification, PaymentGateway, verify_notification
)
from .helpers import now_ts
from .infra.timings import timeit
from .model.audit import AuditLog
from .model.receipts import ReceiptStore
from .model.stock import StockLedger
from .model.tickets import TicketIssuer
from .model.transactions import Transaction, TransactionStore
from .status import (
    CANCELLING, Status, is_known_gateway_status, is_valid_transition,
    map_gateway_status,
)

log = logging.getLogger(__name__)

# re-reads after losing the optimistic lock before giving up
MAX_UPDATE_ATTEMPTS = 3


class Source(str, Enum):
    WEBHOOK = "webhook"
    RECHECK = "recheck"
    SWEEP = "sweep"
    OVERRIDE = "override"
    REPAIR = "repair"


DEFAULT_ACTOR = {
    Source.WEBHOOK: "system:webhook",
    Source.RECHECK: "customer",
    Source.SWEEP: "system:sweep",
    Source.OVERRIDE: "admin",
    Source.REPAIR: "system:sweep",
}


class Disposition(str, Enum):
    OK = "ok"
    INVALID_SIGNATURE = "invalid_signature"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    NO_TRANSITION = "no_transition"
    ALREADY_PROCESSED = "already_processed"
    UPDATE_FAILED = "update_failed"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    ERROR = "error"


# receipts with these dispositions count as handled
_HANDLED = frozenset({
    Disposition.OK, Disposition.ALREADY_PROCESSED, Disposition.NO_TRANSITION
})

_FAILED = frozenset({
    Disposition.UPDATE_FAILED, Disposition.GATEWAY_UNAVAILABLE,
    Disposition.ERROR,
})


@dataclass
class ReconcileOutcome:
    disposition: Disposition
    order_id: str
    old_status: Optional[Status] = None
    # target for rejected moves, stored status otherwise
    new_status: Optional[Status] = None
    applied: bool = False
    unmapped: bool = False
    message: str = ""
    tickets: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: str
    new_status: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "new_status": self.new_status,
        }


@dataclass
class SweepReport:
    processed: int = 0
    updated: int = 0
    errors: int = 0
    unmapped: int = 0
    repaired: int = 0
    repair_errors: int = 0
    messages: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Reconciler:
    def __init__(
        self,
        *,
        settings: Settings,
        gateway: PaymentGateway,
        transactions: TransactionStore,
        stock: StockLedger,
        tickets: TicketIssuer,
        audit: AuditLog,
        receipts: Optional[ReceiptStore] = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.transactions = transactions
        self.stock = stock
        self.tickets = tickets
        self.audit = audit
        self.receipts = receipts

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------
    async def reconcile(
        self,
        order_id: str,
        target: Status,
        *,
        source: Source,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        notification: Optional[GatewayNotification] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ReconcileOutcome:
        txn = await self.transactions.fetch_by_order_id(order_id)
        if txn is None:
            log.warning("[%s] transaction not found for order %s",
                        source.value, order_id)
            return ReconcileOutcome(
                Disposition.TRANSACTION_NOT_FOUND, order_id,
                message="transaction not found",
            )

        fields = {}
        if notification is not None:
            fields = {
                "gateway_status": notification.transaction_status or None,
                "fraud_status": notification.fraud_status,
                "payment_type": notification.payment_type,
            }

        for _ in range(MAX_UPDATE_ATTEMPTS):
            current = txn.status
            if current == target:
                return ReconcileOutcome(
                    Disposition.ALREADY_PROCESSED, order_id,
                    old_status=current, new_status=current,
                    message=f"status already {current.value}",
                )
            if not is_valid_transition(current, target):
                log.info("[%s] ignoring invalid transition %s -> %s "
                         "for order %s", source.value, current.value,
                         target.value, order_id)
                return ReconcileOutcome(
                    Disposition.NO_TRANSITION, order_id,
                    old_status=current, new_status=target,
                    message=f"invalid transition {current.value} -> "
                            f"{target.value}",
                )

            try:
                async with timeit("store.conditional_update"):
                    applied = await self.transactions.conditional_update(
                        txn.id, current, target, **fields
                    )
            except SQLAlchemyError:
                log.exception("[%s] failed to update transaction %s",
                              source.value, order_id)
                return ReconcileOutcome(
                    Disposition.UPDATE_FAILED, order_id,
                    old_status=current, new_status=target,
                    message="update failed",
                )

            if applied:
                return await self._after_transition(
                    txn, current, target, source=source, actor=actor,
                    reason=reason, notification=notification,
                    metadata=metadata,
                )

            # lost the race: defer to whatever the winner wrote
            log.info("[%s] lost update race on order %s (expected %s), "
                     "re-reading", source.value, order_id, current.value)
            reread = await self.transactions.fetch_by_order_id(order_id)
            if reread is None:
                break
            txn = reread

        log.error("[%s] giving up on order %s after %d update attempts",
                  source.value, order_id, MAX_UPDATE_ATTEMPTS)
        return ReconcileOutcome(
            Disposition.UPDATE_FAILED, order_id,
            old_status=txn.status, new_status=target,
            message="update failed",
        )

    async def _after_transition(
        self,
        txn: Transaction,
        old: Status,
        new: Status,
        *,
        source: Source,
        actor: Optional[str],
        reason: Optional[str],
        notification: Optional[GatewayNotification],
        metadata: Optional[Mapping[str, Any]],
    ) -> ReconcileOutcome:
        log.info("[%s] order %s: %s -> %s",
                 source.value, txn.order_id, old.value, new.value)

        codes: List[str] = []
        if new == Status.PAID:
            _, _, codes = await self._apply_paid_effects(txn, source)
        elif new in CANCELLING:
            await self._apply_cancel_effects(txn, source)

        if reason is None:
            reason = f"{source.value}: status {old.value} -> {new.value}"
            if notification is not None:
                reason += (f" (gateway status "
                           f"{notification.transaction_status or '?'})")
        if metadata is None and notification is not None:
            metadata = notification.raw
        await self._audit(
            txn, source=source, actor=actor, old=old, new=new,
            reason=reason, metadata=metadata,
        )
        return ReconcileOutcome(
            Disposition.OK, txn.order_id, old_status=old, new_status=new,
            applied=True, message=f"{old.value} -> {new.value}",
            tickets=codes,
        )

    async def _apply_paid_effects(
        self, txn: Transaction, source: Source
    ) -> Tuple[bool, bool, List[str]]:
        """
        Best effort. Failures are logged as inconsistencies and left for the
        repair pass; the paid status is never rolled back.
        Returns (clean, stock_moved, ticket_codes).
        """
        clean = True
        stock_moved = False
        codes: List[str] = []
        if not txn.stock_committed:
            try:
                async with timeit("stock.commit"):
                    stock_moved = await self.stock.commit_for_transaction(txn)
            except Exception:
                clean = False
                log.exception("[%s] reconciliation inconsistency: stock not "
                              "committed for paid order %s (category %s, "
                              "qty %d)", source.value, txn.order_id,
                              txn.category_id, txn.quantity)
        if not txn.tickets_issued:
            try:
                async with timeit("tickets.issue"):
                    codes = await self.tickets.issue(txn)
            except Exception:
                clean = False
                log.exception("[%s] reconciliation inconsistency: tickets "
                              "not issued for paid order %s",
                              source.value, txn.order_id)
        return clean, stock_moved, codes

    async def _apply_cancel_effects(
        self, txn: Transaction, source: Source
    ) -> None:
        try:
            cancelled = await self.tickets.cancel(txn.id)
            # guarded by the stock_committed claim: a no-op if stock never moved
            restored = await self.stock.release_for_transaction(
                txn, cancelled or txn.quantity
            )
            if cancelled or restored:
                log.info("[%s] order %s: %d tickets cancelled, stock %s",
                         source.value, txn.order_id, cancelled,
                         "restored" if restored else "untouched")
        except Exception:
            log.exception("[%s] reconciliation inconsistency: could not "
                          "cancel tickets for order %s",
                          source.value, txn.order_id)

    async def _audit(
        self,
        txn: Transaction,
        *,
        source: Source,
        actor: Optional[str],
        old: Optional[Status],
        new: Optional[Status],
        reason: str,
        metadata: Optional[Mapping[str, Any]],
    ) -> None:
        try:
            await self.audit.append(
                actor=actor or DEFAULT_ACTOR[source],
                action=source.value,
                transaction_id=txn.id,
                order_id=txn.order_id,
                old_status=old.value if old is not None else None,
                new_status=new.value if new is not None else None,
                reason=reason,
                metadata=metadata,
            )
        except Exception:
            log.exception("[%s] failed to write audit entry for order %s",
                          source.value, txn.order_id)

    async def _reconcile_view(
        self,
        n: GatewayNotification,
        source: Source,
        actor: Optional[str] = None,
    ) -> ReconcileOutcome:
        target = map_gateway_status(n.transaction_status, n.fraud_status)
        unmapped = not is_known_gateway_status(n.transaction_status)
        if unmapped:
            # falls back to pending; needs a human, not a silent retry loop
            log.warning("[%s] unmapped gateway status %r for order %s, "
                        "treating as pending", source.value,
                        n.transaction_status, n.order_id)
        outcome = await self.reconcile(
            n.order_id, target, source=source, actor=actor, notification=n,
        )
        outcome.unmapped = unmapped
        return outcome

    async def _query_gateway(self, order_id: str) -> GatewayNotification:
        try:
            async with timeit("gateway.status"):
                return await asyncio.wait_for(
                    self.gateway.fetch_status(order_id),
                    timeout=self.settings.gateway_timeout,
                )
        except asyncio.TimeoutError as e:
            raise GatewayUnavailable(
                f"status query for {order_id} timed out"
            ) from e

    # ------------------------------------------------------------------
    # Entry point: webhook (push)
    # ------------------------------------------------------------------
    async def handle_notification(
        self, payload: Mapping[str, Any]
    ) -> ReconcileOutcome:
        """Never raises; the caller always answers the gateway with 200."""
        order_id = str(payload.get("order_id") or "")
        try:
            n = GatewayNotification.from_payload(payload)
            valid = verify_notification(n, self.settings.gateway_server_key)
            receipt_id = await self._archive(n, valid)

            if not valid:
                log.warning("SECURITY: invalid webhook signature for order "
                            "%r (status %r, amount %r)", n.order_id,
                            n.transaction_status, n.gross_amount)
                outcome = ReconcileOutcome(
                    Disposition.INVALID_SIGNATURE, n.order_id,
                    message="invalid signature",
                )
            else:
                outcome = await self._reconcile_view(n, Source.WEBHOOK)

            await self._mark_receipt(receipt_id, outcome.disposition)
            return outcome
        except Exception:
            log.exception("[webhook] unhandled error for order %r", order_id)
            return ReconcileOutcome(
                Disposition.ERROR, order_id, message="internal error"
            )

    async def _archive(
        self, n: GatewayNotification, signature_valid: bool
    ) -> Optional[str]:
        if self.receipts is None:
            return None
        try:
            return await self.receipts.archive(
                n.order_id, n.raw, signature_valid
            )
        except Exception:
            log.exception("[webhook] could not archive payload for order %r",
                          n.order_id)
            return None

    async def _mark_receipt(
        self, receipt_id: Optional[str], disposition: Disposition
    ) -> None:
        if self.receipts is None or receipt_id is None:
            return
        try:
            await self.receipts.mark_processed(
                receipt_id, disposition.value, disposition in _HANDLED
            )
        except Exception:
            log.exception("[webhook] could not mark receipt %s", receipt_id)

    # ------------------------------------------------------------------
    # Entry point: manual recheck (pull, single)
    # ------------------------------------------------------------------
    async def recheck(
        self, order_id: str, actor: Optional[str] = None
    ) -> ActionResult:
        try:
            txn = await self.transactions.fetch_by_order_id(order_id)
            if txn is None:
                return ActionResult(False, "Transaction not found.")
            if txn.status != Status.PENDING:
                return ActionResult(
                    True,
                    f"Transaction is already {txn.status.value}; "
                    f"nothing to check.",
                    txn.status.value,
                )
            try:
                n = await self._query_gateway(order_id)
            except GatewayUnavailable as e:
                log.warning("[recheck] gateway unavailable for order %s: %s",
                            order_id, e)
                return ActionResult(
                    False,
                    "Payment gateway unavailable, please try again later.",
                    txn.status.value,
                )
            outcome = await self._reconcile_view(n, Source.RECHECK, actor)
            return _as_action_result(outcome)
        except Exception:
            log.exception("[recheck] unhandled error for order %s", order_id)
            return ActionResult(False, "Could not check the payment status.")

    # ------------------------------------------------------------------
    # Entry point: administrative override
    # ------------------------------------------------------------------
    async def override(
        self, order_id: str, actor: str, reason: str
    ) -> ActionResult:
        reason = reason or ""
        min_len = self.settings.override_min_reason
        if len(reason.strip()) < min_len:
            return ActionResult(
                False,
                f"A justification of at least {min_len} characters "
                f"is required.",
            )
        try:
            txn = await self.transactions.fetch_by_order_id(order_id)
            if txn is None:
                return ActionResult(False, "Transaction not found.")
            if txn.status == Status.PAID:
                return ActionResult(
                    False, "Transaction is already paid.", txn.status.value
                )
            if not is_valid_transition(txn.status, Status.PAID):
                return ActionResult(
                    False,
                    f"Cannot override a {txn.status.value} transaction.",
                    txn.status.value,
                )
            outcome = await self.reconcile(
                order_id, Status.PAID, source=Source.OVERRIDE, actor=actor,
                reason=reason, metadata={"override": True},
            )
        except Exception:
            log.exception("[override] unhandled error for order %s", order_id)
            return ActionResult(False, "Override failed.")

        if outcome.disposition == Disposition.OK:
            log.warning("[override] %s forced order %s to paid: %s",
                        actor, order_id, reason)
            return ActionResult(
                True, f"Transaction {order_id} marked as paid.",
                Status.PAID.value,
            )
        if outcome.disposition == Disposition.ALREADY_PROCESSED:
            # somebody else got there between our read and our write
            return ActionResult(
                False, "Transaction is already paid.", Status.PAID.value
            )
        return _as_action_result(outcome)

    # ------------------------------------------------------------------
    # Entry point: periodic sweep (pull, batch)
    # ------------------------------------------------------------------
    async def sweep(self) -> SweepReport:
        """Re-query stale pending transactions, then repair paid ones."""
        report = SweepReport()
        cutoff = now_ts() - self.settings.sweep_age_seconds
        try:
            batch = await self.transactions.list_stale_pending(
                cutoff, self.settings.sweep_batch_size
            )
        except Exception as e:
            log.exception("[sweep] could not load pending transactions")
            report.errors += 1
            report.messages.append(f"load failed: {e}")
            return report

        sem = asyncio.Semaphore(max(1, self.settings.sweep_concurrency))

        async def _one(txn: Transaction) -> ReconcileOutcome:
            async with sem:
                return await self._sweep_one(txn)

        outcomes = await asyncio.gather(*(_one(t) for t in batch))
        for outcome in outcomes:
            if outcome.disposition in _FAILED:
                report.errors += 1
                report.messages.append(
                    f"order {outcome.order_id}: {outcome.message}"
                )
                continue
            report.processed += 1
            if outcome.applied:
                report.updated += 1
            if outcome.unmapped:
                report.unmapped += 1

        await self.repair(report)
        log.info("[sweep] batch=%d processed=%d updated=%d errors=%d "
                 "unmapped=%d repaired=%d repair_errors=%d",
                 len(batch), report.processed, report.updated,
                 report.errors, report.unmapped, report.repaired,
                 report.repair_errors)
        return report

    async def _sweep_one(self, txn: Transaction) -> ReconcileOutcome:
        try:
            n = await self._query_gateway(txn.order_id)
        except GatewayUnavailable as e:
            log.warning("[sweep] gateway unavailable for order %s: %s",
                        txn.order_id, e)
            return ReconcileOutcome(
                Disposition.GATEWAY_UNAVAILABLE, txn.order_id,
                old_status=txn.status, message=str(e),
            )
        except Exception as e:
            log.exception("[sweep] error querying gateway for order %s",
                          txn.order_id)
            return ReconcileOutcome(
                Disposition.ERROR, txn.order_id, old_status=txn.status,
                message=str(e) or e.__class__.__name__,
            )
        try:
            return await self._reconcile_view(n, Source.SWEEP)
        except Exception as e:
            log.exception("[sweep] error reconciling order %s", txn.order_id)
            return ReconcileOutcome(
                Disposition.ERROR, txn.order_id, old_status=txn.status,
                message=str(e) or e.__class__.__name__,
            )

    async def repair(self, report: Optional[SweepReport] = None) -> SweepReport:
        """
        Finish side effects for paid transactions that missed them
        (stock not committed or tickets not issued).
        """
        report = report if report is not None else SweepReport()
        cutoff = now_ts() - self.settings.repair_grace_seconds
        try:
            rows = await self.transactions.list_unfulfilled_paid(
                cutoff, self.settings.sweep_batch_size
            )
        except Exception as e:
            log.exception("[repair] could not load unfulfilled transactions")
            report.repair_errors += 1
            report.messages.append(f"repair load failed: {e}")
            return report

        for txn in rows:
            clean, stock_moved, codes = await self._apply_paid_effects(
                txn, Source.REPAIR
            )
            if not clean:
                report.repair_errors += 1
                report.messages.append(f"order {txn.order_id}: repair failed")
            if stock_moved or codes:
                report.repaired += 1
                done = []
                if stock_moved:
                    done.append(f"stock -{txn.quantity}")
                if codes:
                    done.append(f"{len(codes)} tickets issued")
                await self._audit(
                    txn, source=Source.REPAIR, actor=None,
                    old=txn.status, new=txn.status,
                    reason="repair: " + ", ".join(done),
                    metadata={"stock_committed": stock_moved,
                              "tickets": len(codes)},
                )
        return report


def _as_action_result(outcome: ReconcileOutcome) -> ActionResult:
    d = outcome.disposition
    old = outcome.old_status.value if outcome.old_status else None
    new = outcome.new_status.value if outcome.new_status else None
    if d == Disposition.OK:
        return ActionResult(True, f"Status updated: {old} -> {new}.", new)
    if d == Disposition.ALREADY_PROCESSED:
        return ActionResult(True, f"Status already up to date: {new}.", new)
    if d == Disposition.NO_TRANSITION:
        return ActionResult(False, f"Invalid transition: {old} -> {new}.", old)
    if d == Disposition.TRANSACTION_NOT_FOUND:
        return ActionResult(False, "Transaction not found.")
    if d == Disposition.UPDATE_FAILED:
        return ActionResult(
            False, "Could not update the transaction, please retry.", old
        )
    return ActionResult(False, outcome.message or d.value, old)
