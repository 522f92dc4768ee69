#!/usr/bin/env python3
# POS checkout service: cart -> payment allocation -> local commit -> remote sync
import argparse
import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import money
from cart import Cart, LineRef, PriceResolver, Product, snapshot_from_lines
from payments import Allocation, allocate, change_due
from pos_store import (
    SCHEMA_PATH,
    SqliteCatalog,
    StatusEvent,
    Transaction,
    TransactionKind,
    TransactionRecorder,
    TransactionStatus,
    connect,
)
from sync_client import (
    PasswordGrantTokenProvider,
    RetryPolicy,
    StaticTokenProvider,
    SyncClient,
    SyncResult,
)
from sync_worker import InFlightGuard, resync_pending, sync_transaction

log = logging.getLogger("pos.service")

MSG_SYNCED = "saved and synced"
MSG_NOT_SYNCED = "saved, not yet synced"


class EmptyCart(money.PosError):
    pass


class CartInUse(money.PosError):
    """A parked sale can only be resumed into an empty cart."""


@dataclass(frozen=True)
class CheckoutResult:
    transaction: Transaction
    allocation: Allocation
    sync_result: Optional[SyncResult] = None

    @property
    def synced(self) -> bool:
        return self.transaction.status == TransactionStatus.SYNCED

    @property
    def sync_pending(self) -> bool:
        return not self.synced

    @property
    def message(self) -> str:
        return MSG_SYNCED if self.synced else MSG_NOT_SYNCED

    def as_dict(self) -> Dict[str, Any]:
        data = {
            "status": "success",
            "message": self.message,
            "synced": self.synced,
            "pay_status": self.allocation.status.value,
            "pending": money.to_decimal(self.allocation.pending_minor),
            "sale": self.transaction.as_dict(),
        }
        if self.sync_result is not None and not self.sync_result.ok:
            data["sync_error"] = self.sync_result.error
            data["reauth_required"] = self.sync_result.reauth_required
        return data


class PosService:
    """Owns the active cart and sequences a checkout.

    The cart belongs to one checkout session at a time; every cart operation
    and steps 1-3 of `checkout` run under the session lock. The remote sync
    runs after the lock is released so a new cart can be started meanwhile.
    """

    def __init__(
        self,
        recorder: TransactionRecorder,
        sync_client: Optional[SyncClient],
        price_resolver: PriceResolver,
        location_id: str = "",
        guard: Optional[InFlightGuard] = None,
    ):
        self.recorder = recorder
        self.sync_client = sync_client
        self.location_id = str(location_id or "")
        self.guard = guard or InFlightGuard()
        self.cart = Cart(price_resolver, self.location_id)
        self._lock = threading.RLock()
        self._stop = threading.Event()

    # ---------- cart ----------
    def add_or_increment(self, product: Product):
        with self._lock:
            return self.cart.add_or_increment(product)

    def set_quantity(self, ref: LineRef, quantity: Any):
        with self._lock:
            self.cart.set_quantity(ref, quantity)

    def remove_line(self, ref: LineRef):
        with self._lock:
            self.cart.remove(ref)

    def set_line_discount(self, ref: LineRef, amount_minor: int):
        with self._lock:
            self.cart.set_line_discount(ref, amount_minor)

    def set_discount(self, amount_minor: int):
        with self._lock:
            self.cart.set_discount(amount_minor)

    def set_shipping(self, amount_minor: int):
        with self._lock:
            self.cart.set_shipping(amount_minor)

    def set_order_tax(self, amount_minor: int):
        with self._lock:
            self.cart.set_order_tax(amount_minor)

    def cancel(self):
        """Abandon the current sale."""
        with self._lock:
            self.cart.clear()

    def cart_summary(self) -> Dict[str, Any]:
        with self._lock:
            c = self.cart
            return {
                "location_id": self.location_id,
                "lines": [
                    {
                        "product_id": l.product_id,
                        "variation_id": l.variation_id,
                        "name": l.name,
                        "unit_price": money.to_decimal(l.unit_price_minor),
                        "quantity": str(l.quantity),
                        "discount": money.to_decimal(l.discount_minor),
                        "tax": money.to_decimal(l.tax_minor),
                        "line_total": money.to_decimal(l.line_total),
                    }
                    for l in c.lines
                ],
                "items": str(c.item_count),
                "subtotal": money.to_decimal(c.subtotal),
                "discount": money.to_decimal(c.discount_minor),
                "shipping": money.to_decimal(c.shipping_minor),
                "order_tax": money.to_decimal(c.order_tax_minor),
                "total": money.to_decimal(c.total),
            }

    # ---------- checkout ----------
    def checkout(
        self,
        customer_id: Any,
        location_id: Any = None,
        proposed_payments: Optional[Iterable[Any]] = None,
        allow_partial: bool = False,
        cash_tendered_minor: Optional[int] = None,
        note: Optional[str] = None,
        sync: bool = True,
    ) -> CheckoutResult:
        """Commit the cart as a sale, then try once to mirror it remotely.

        Raises EmptyCart, AllocationError, InvalidAmount or LocalWriteFailure
        before anything is persisted. A failed sync never fails the checkout:
        the sale stays recorded locally as sync_failed.
        """
        location = str(location_id) if location_id not in (None, "") else self.location_id
        with self._lock:
            snap = self.cart.snapshot()
            if snap.is_empty:
                raise EmptyCart("Cart is empty")
            allocation = allocate(snap.total, proposed_payments or [], allow_partial=allow_partial)
            change = change_due(cash_tendered_minor, allocation.payments)
            txn = self.recorder.commit(snap, customer_id, location, allocation,
                                       change_return_minor=change, note=note)
            self.cart.clear()

        return self._sync_after_commit(txn, allocation, sync)

    def record_purchase(
        self,
        supplier_id: Any,
        lines: Iterable[Dict[str, Any]],
        proposed_payments: Optional[Iterable[Any]] = None,
        allow_partial: bool = True,
        location_id: Any = None,
        discount_minor: int = 0,
        shipping_minor: int = 0,
        order_tax_minor: int = 0,
        note: Optional[str] = None,
        sync: bool = True,
    ) -> CheckoutResult:
        """Record goods received from a supplier, then try once to mirror it remotely.

        Uses the same commit and sync path as a sale; the active cart is untouched.
        Purchases default to allowing a balance owed to the supplier.
        """
        location = str(location_id) if location_id not in (None, "") else self.location_id
        snap = snapshot_from_lines(lines, discount_minor, shipping_minor, order_tax_minor)
        if snap.is_empty:
            raise EmptyCart("Purchase has no lines")
        allocation = allocate(snap.total, proposed_payments or [], allow_partial=allow_partial)
        txn = self.recorder.commit(snap, supplier_id, location, allocation, note=note,
                                   kind=TransactionKind.PURCHASE)
        return self._sync_after_commit(txn, allocation, sync)

    def _sync_after_commit(self, txn: Transaction, allocation: Allocation, sync: bool) -> CheckoutResult:
        result = None
        if sync and self.sync_client is not None:
            try:
                result = sync_transaction(self.recorder, self.sync_client, self.guard, txn.local_id,
                                          cancel=self._stop)
            except Exception as exc:
                log.exception("Sync after commit failed for %s; left for resync", txn.local_id)
                try:
                    self.recorder.mark_sync_failed(txn.local_id, f"sync error: {exc}")
                except money.PosError:
                    log.warning("Could not flag %s as sync_failed", txn.local_id, exc_info=True)
        txn = self.recorder.require(txn.local_id)
        if txn.status != TransactionStatus.SYNCED:
            log.info("%s %s %s", txn.kind.value.capitalize(), txn.invoice_no, MSG_NOT_SYNCED)
        return CheckoutResult(transaction=txn, allocation=allocation, sync_result=result)

    # ---------- parked sales ----------
    def park(self, customer_id: Any = None, note: Optional[str] = None) -> Transaction:
        with self._lock:
            snap = self.cart.snapshot()
            if snap.is_empty:
                raise EmptyCart("Nothing to park")
            draft = self.recorder.save_draft(snap, customer_id, self.location_id, note)
            self.cart.clear()
            return draft

    def resume(self, local_id: str) -> Transaction:
        with self._lock:
            if self.cart.lines:
                raise CartInUse("Finish or cancel the current sale first")
            draft = self.recorder.require(local_id)
            self.recorder.delete_draft(local_id)
            self.cart.restore(draft.snapshot)
            return draft

    def parked(self) -> List[Transaction]:
        return self.recorder.list_by_status(TransactionStatus.DRAFT)

    # ---------- sync / status ----------
    def sync_now(self, local_id: str) -> Optional[SyncResult]:
        if self.sync_client is None:
            return None
        return sync_transaction(self.recorder, self.sync_client, self.guard, local_id, cancel=self._stop)

    def resync(self, limit: int = 20) -> Dict[str, int]:
        if self.sync_client is None:
            return {"synced": 0, "failed": 0, "skipped": 0}
        return resync_pending(self.recorder, self.sync_client, self.guard, limit=limit, cancel=self._stop)

    def shutdown(self):
        """Cancel retry waits of syncs in progress; they end as sync_failed and resync later."""
        self._stop.set()

    def transaction(self, local_id: str) -> Transaction:
        return self.recorder.require(local_id)

    def status_events(self, since_id: int = 0, local_id: Optional[str] = None) -> List[StatusEvent]:
        return self.recorder.status_events(since_id=since_id, local_id=local_id)


# ---------- wiring ----------
def build_sync_client(settings) -> Optional[SyncClient]:
    if not settings.api_base:
        return None
    if settings.has_password_grant:
        tokens = PasswordGrantTokenProvider(
            settings.login_url, settings.client_id, settings.client_secret,
            settings.username, settings.password, timeout=settings.request_timeout,
        )
    else:
        tokens = StaticTokenProvider(settings.api_token)
    policy = RetryPolicy(
        max_attempts=settings.sync_max_attempts,
        base_delay=settings.sync_base_delay,
        backoff=settings.sync_backoff,
        max_delay=settings.sync_max_delay,
    )
    return SyncClient(settings.api_base, tokens, api_path=settings.api_path, policy=policy,
                      timeout=settings.request_timeout)


def build_service(settings, conn: Optional[sqlite3.Connection] = None) -> PosService:
    if conn is None:
        conn = connect(settings.db_path, settings.schema_path or SCHEMA_PATH)
    recorder = TransactionRecorder(conn, till_id=settings.till_id)
    return PosService(recorder, build_sync_client(settings), SqliteCatalog(conn), settings.location_id)


def main():
    import config

    ap = argparse.ArgumentParser(description="POS transaction engine")
    ap.add_argument("--db", default=None, help="Path to SQLite DB (overrides POS_DB_PATH)")
    ap.add_argument("--status", action="store_true", help="Print sale counts per status")
    ap.add_argument("--push", action="store_true", help="Push unsynced sales once")
    ap.add_argument("--limit", type=int, default=20)
    ap.add_argument("--price", nargs=3, metavar=("PRODUCT", "VARIATION", "PRICE"),
                    help="Store a local price, e.g. --price 12 12 9.99")
    args = ap.parse_args()

    settings = config.Settings.from_env()
    config.configure_logging(settings.log_level)
    conn = connect(args.db or settings.db_path, settings.schema_path or SCHEMA_PATH)
    try:
        service = build_service(settings, conn)
        if args.price:
            pid, vid, price = args.price
            SqliteCatalog(conn).upsert_price(pid, vid, money.from_decimal(price), settings.location_id)
            print(f"Stored price {price} for {pid}/{vid}")
        if args.push:
            print(service.resync(limit=args.limit))
        if args.status:
            print(service.recorder.status_counts())
    finally:
        conn.close()


if __name__ == "__main__":
    main()
