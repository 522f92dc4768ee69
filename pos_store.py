#!/usr/bin/env python3
# POS local store: SQLite ledger for sales and purchases, status event log, local price list
import datetime as dt
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import money
from cart import CartSnapshot, LineItem
from payments import Allocation, PayStatus, Payment, PaymentMethod

log = logging.getLogger("pos.store")

SCHEMA_PATH = str(Path(__file__).with_name("schema.sql"))


class TransactionKind(str, Enum):
    SALE = "sale"
    PURCHASE = "purchase"


# Invoice number prefix per kind; purchases use it as the supplier ref_no.
_INVOICE_PREFIX = {TransactionKind.SALE: "POS", TransactionKind.PURCHASE: "PUR"}


class TransactionStatus(str, Enum):
    DRAFT = "draft"
    COMMITTED = "committed"
    SYNC_PENDING = "sync_pending"
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"


# Status updates allowed once a sale is committed. Synced is final.
_ALLOWED_FROM = {
    TransactionStatus.SYNC_PENDING: {TransactionStatus.COMMITTED, TransactionStatus.SYNC_PENDING, TransactionStatus.SYNC_FAILED},
    TransactionStatus.SYNCED: {TransactionStatus.COMMITTED, TransactionStatus.SYNC_PENDING, TransactionStatus.SYNC_FAILED},
    TransactionStatus.SYNC_FAILED: {TransactionStatus.COMMITTED, TransactionStatus.SYNC_PENDING, TransactionStatus.SYNC_FAILED},
}


class LocalWriteFailure(money.PosError):
    """The local store rejected a write; nothing was persisted."""


class TransactionNotFound(money.PosError, LookupError):
    pass


class ImmutableTransaction(money.PosError):
    """Attempt to delete or re-open a committed sale."""


class InvalidTransition(money.PosError):
    pass


class PriceNotFound(money.PosError, LookupError):
    pass


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0)


def iso(ts: dt.datetime) -> str:
    return ts.astimezone(dt.timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def parse_iso(raw: Optional[str]) -> Optional[dt.datetime]:
    if not raw:
        return None
    return dt.datetime.fromisoformat(raw.rstrip("Z")).replace(tzinfo=dt.timezone.utc)


def connect(db_path: str, schema_path: str = SCHEMA_PATH) -> sqlite3.Connection:
    """Open the store in autocommit mode; writers open their own BEGIN IMMEDIATE."""
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.isolation_level = None
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    init_db(conn, schema_path)
    return conn


def init_db(conn: sqlite3.Connection, schema_path: str = SCHEMA_PATH):
    with open(schema_path, "r", encoding="utf-8") as f:
        conn.executescript(f.read())
    _migrate(conn)


def _columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def _migrate(conn: sqlite3.Connection):
    """Bring stores created by earlier releases up to the current schema."""
    if "kind" not in _columns(conn, "sales"):
        log.info("Migrating sales: adding kind")
        conn.execute("ALTER TABLE sales ADD COLUMN kind TEXT NOT NULL DEFAULT 'sale'")
    if "remote_payment_id" not in _columns(conn, "payments"):
        log.info("Migrating payments: adding remote_payment_id")
        conn.execute("ALTER TABLE payments ADD COLUMN remote_payment_id TEXT")
    if "series" not in _columns(conn, "invoice_counters"):
        log.info("Migrating invoice_counters: location_id -> series")
        conn.execute("ALTER TABLE invoice_counters RENAME COLUMN location_id TO series")
        conn.execute("UPDATE invoice_counters SET series = 'POS' || series")


@dataclass(frozen=True)
class StatusEvent:
    id: int
    local_id: str
    status: TransactionStatus
    created_at: dt.datetime
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "local_id": self.local_id,
            "status": self.status.value,
            "created_utc": iso(self.created_at),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class Transaction:
    local_id: str
    status: TransactionStatus
    customer_id: Optional[str]
    location_id: Optional[str]
    created_at: dt.datetime
    snapshot: CartSnapshot
    payments: Tuple[Payment, ...] = ()
    invoice_no: Optional[str] = None
    remote_id: Optional[str] = None
    invoice_url: Optional[str] = None
    committed_at: Optional[dt.datetime] = None
    subtotal_minor: int = 0
    total_minor: int = 0
    paid_minor: int = 0
    pending_minor: int = 0
    change_return_minor: int = 0
    pay_status: Optional[PayStatus] = None
    sync_attempts: int = 0
    last_error: Optional[str] = None
    note: Optional[str] = None
    kind: TransactionKind = TransactionKind.SALE

    @property
    def lines(self) -> Tuple[LineItem, ...]:
        return self.snapshot.lines

    def as_dict(self) -> Dict[str, Any]:
        return {
            "local_id": self.local_id,
            "kind": self.kind.value,
            "invoice_no": self.invoice_no,
            "status": self.status.value,
            "remote_id": self.remote_id,
            "invoice_url": self.invoice_url,
            "customer_id": self.customer_id,
            "location_id": self.location_id,
            "created_utc": iso(self.created_at),
            "committed_utc": iso(self.committed_at) if self.committed_at else None,
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
                for l in self.lines
            ],
            "payments": [
                {"method": p.method.value, "amount": money.to_decimal(p.amount_minor), "note": p.note,
                 "remote_id": p.remote_id}
                for p in self.payments
            ],
            "subtotal": money.to_decimal(self.subtotal_minor),
            "discount": money.to_decimal(self.snapshot.discount_minor),
            "shipping": money.to_decimal(self.snapshot.shipping_minor),
            "order_tax": money.to_decimal(self.snapshot.order_tax_minor),
            "total": money.to_decimal(self.total_minor),
            "paid": money.to_decimal(self.paid_minor),
            "pending": money.to_decimal(self.pending_minor),
            "change_return": money.to_decimal(self.change_return_minor),
            "pay_status": self.pay_status.value if self.pay_status else None,
            "sync_attempts": self.sync_attempts,
            "last_error": self.last_error,
            "note": self.note,
        }


StatusListener = Callable[[StatusEvent], None]


class TransactionRecorder:
    """Sole writer of the sales tables.

    Every write runs inside one BEGIN IMMEDIATE transaction, so a sale is
    either fully queryable (header, lines, payments) or absent. `till_id`
    goes into invoice numbers so tills sharing a location never collide.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], dt.datetime] = utc_now, till_id: str = ""):
        self.conn = conn
        self.clock = clock
        self.till_id = str(till_id or "").strip()
        self._lock = threading.RLock()
        self._listeners: List[StatusListener] = []

    # ---------- listeners ----------
    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return _unsubscribe

    def _notify(self, events: Sequence[StatusEvent]):
        with self._lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    log.exception("Status listener failed for %s", event.local_id)

    # ---------- transactions ----------
    @contextmanager
    def _write(self) -> Iterator[List[StatusEvent]]:
        events: List[StatusEvent] = []
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise LocalWriteFailure(f"Could not open local transaction: {exc}") from exc
            try:
                yield events
                self.conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                raise LocalWriteFailure(str(exc)) from exc
            except BaseException:
                self._rollback()
                raise
        self._notify(events)

    def _rollback(self):
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error:
            log.warning("Rollback failed", exc_info=True)

    def _append_event(self, events: List[StatusEvent], local_id: str, status: TransactionStatus,
                      at: dt.datetime, detail: Optional[str] = None):
        cur = self.conn.execute(
            "INSERT INTO sale_status_events (local_id, status, created_utc, detail) VALUES (?,?,?,?)",
            (local_id, status.value, iso(at), detail),
        )
        events.append(StatusEvent(cur.lastrowid, local_id, status, at, detail))

    def _next_invoice_no(self, kind: TransactionKind, location_id: Optional[str], at: dt.datetime) -> str:
        series = f"{_INVOICE_PREFIX[kind]}{location_id or '0'}"
        if self.till_id:
            series += f"-{self.till_id}"
        day = at.strftime("%Y%m%d")
        self.conn.execute("""
            INSERT INTO invoice_counters (series, day, last_seq) VALUES (?,?,1)
            ON CONFLICT(series, day) DO UPDATE SET last_seq = invoice_counters.last_seq + 1
        """, (series, day))
        row = self.conn.execute(
            "SELECT last_seq FROM invoice_counters WHERE series=? AND day=?", (series, day)
        ).fetchone()
        return f"{series}-{day}-{int(row['last_seq']):04d}"

    def _insert_sale(self, local_id: str, snap: CartSnapshot, customer_id, location_id, created: dt.datetime,
                     status: TransactionStatus, invoice_no: Optional[str], allocation: Optional[Allocation],
                     change_return_minor: int, note: Optional[str], kind: TransactionKind = TransactionKind.SALE):
        paid = allocation.paid_minor if allocation else 0
        pending = allocation.pending_minor if allocation else snap.total
        pay_status = allocation.status.value if allocation else None
        committed = iso(created) if status == TransactionStatus.COMMITTED else None
        self.conn.execute("""
            INSERT INTO sales (local_id, kind, invoice_no, customer_id, location_id, created_utc, committed_utc,
                               subtotal, discount, shipping, order_tax, total, paid, pending, change_return,
                               pay_status, status, note)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            local_id, kind.value, invoice_no,
            None if customer_id is None else str(customer_id),
            None if location_id is None else str(location_id),
            iso(created), committed,
            snap.subtotal, snap.discount_minor, snap.shipping_minor, snap.order_tax_minor, snap.total,
            paid, pending, change_return_minor, pay_status, status.value, note,
        ))
        for idx, l in enumerate(snap.lines, start=1):
            self.conn.execute("""
                INSERT INTO sale_lines (local_id, line_no, product_id, variation_id, name, unit_price, quantity,
                                        discount, tax, line_total)
                VALUES (?,?,?,?,?,?,?,?,?,?)
            """, (local_id, idx, l.product_id, l.variation_id, l.name, l.unit_price_minor, str(l.quantity),
                  l.discount_minor, l.tax_minor, l.line_total))
        if allocation:
            for idx, p in enumerate(allocation.payments, start=1):
                self.conn.execute(
                    "INSERT INTO payments (local_id, seq, method, amount, note) VALUES (?,?,?,?,?)",
                    (local_id, idx, p.method.value, p.amount_minor, p.note),
                )

    def commit(self, snap: CartSnapshot, customer_id: Any, location_id: Any, allocation: Allocation,
               change_return_minor: int = 0, note: Optional[str] = None,
               kind: TransactionKind = TransactionKind.SALE) -> Transaction:
        """Durably record a completed sale (or supplier purchase). Returns it in `committed` status."""
        kind = TransactionKind(kind)
        if allocation.total_minor != snap.total:
            raise ValueError(
                f"Allocation total {allocation.total_minor} does not match cart total {snap.total}"
            )
        money.require_non_negative(change_return_minor, "change return")
        local_id = str(uuid.uuid4())
        created = self.clock()
        with self._write() as events:
            invoice_no = self._next_invoice_no(kind, location_id, created)
            self._insert_sale(local_id, snap, customer_id, location_id, created, TransactionStatus.COMMITTED,
                              invoice_no, allocation, change_return_minor, note, kind)
            self._append_event(events, local_id, TransactionStatus.COMMITTED, created, invoice_no)
        log.info("Committed %s %s (%s) total=%s pay_status=%s",
                 kind.value, local_id, invoice_no, money.to_decimal(snap.total), allocation.status.value)
        return self.require(local_id)

    def save_draft(self, snap: CartSnapshot, customer_id: Any = None, location_id: Any = None,
                   note: Optional[str] = None) -> Transaction:
        """Park an unfinished cart. Drafts carry no payments and no invoice number."""
        local_id = str(uuid.uuid4())
        created = self.clock()
        with self._write() as events:
            self._insert_sale(local_id, snap, customer_id, location_id, created, TransactionStatus.DRAFT,
                              None, None, 0, note)
            self._append_event(events, local_id, TransactionStatus.DRAFT, created, note)
        return self.require(local_id)

    def delete_draft(self, local_id: str):
        with self._write():
            row = self.conn.execute("SELECT status FROM sales WHERE local_id=?", (local_id,)).fetchone()
            if not row:
                raise TransactionNotFound(local_id)
            if row["status"] != TransactionStatus.DRAFT.value:
                raise ImmutableTransaction(f"Sale {local_id} is {row['status']}; only drafts can be deleted")
            self.conn.execute("DELETE FROM sales WHERE local_id=?", (local_id,))
            self.conn.execute("DELETE FROM sale_status_events WHERE local_id=?", (local_id,))

    def _transition(self, local_id: str, target: TransactionStatus, detail: Optional[str],
                    sets: str = "", params: Sequence[Any] = (),
                    also: Optional[Callable[[], None]] = None) -> Transaction:
        now = self.clock()
        with self._write() as events:
            row = self.conn.execute("SELECT status FROM sales WHERE local_id=?", (local_id,)).fetchone()
            if not row:
                raise TransactionNotFound(local_id)
            current = TransactionStatus(row["status"])
            if current not in _ALLOWED_FROM[target]:
                raise InvalidTransition(f"Sale {local_id}: {current.value} -> {target.value} not allowed")
            sql = "UPDATE sales SET status=?, last_sync_utc=?" + (", " + sets if sets else "") + " WHERE local_id=?"
            self.conn.execute(sql, (target.value, iso(now), *params, local_id))
            if also is not None:
                also()
            self._append_event(events, local_id, target, now, detail)
        return self.require(local_id)

    def mark_sync_pending(self, local_id: str) -> Transaction:
        return self._transition(local_id, TransactionStatus.SYNC_PENDING, None)

    def mark_synced(self, local_id: str, remote_id: Any, invoice_url: Optional[str] = None,
                    attempts: int = 0, payment_ids: Sequence[Any] = ()) -> Transaction:
        """Record the remote acceptance. `payment_ids` are the server's payment line ids,
        in the order the payments were sent; they are stored against the local rows."""
        remote = None if remote_id is None else str(remote_id)

        def _store_payment_ids():
            for seq, pid in enumerate(payment_ids, start=1):
                if pid in (None, ""):
                    continue
                self.conn.execute(
                    "UPDATE payments SET remote_payment_id=? WHERE local_id=? AND seq=?",
                    (str(pid), local_id, seq),
                )

        txn = self._transition(
            local_id, TransactionStatus.SYNCED, remote,
            "remote_id=?, invoice_url=COALESCE(?, invoice_url), sync_attempts=sync_attempts+?, last_error=NULL",
            (remote, invoice_url, attempts),
            also=_store_payment_ids,
        )
        log.info("Sale %s synced as remote %s", local_id, remote)
        return txn

    def mark_sync_failed(self, local_id: str, reason: str, attempts: int = 0) -> Transaction:
        txn = self._transition(
            local_id, TransactionStatus.SYNC_FAILED, reason,
            "sync_attempts=sync_attempts+?, last_error=?",
            (attempts, reason),
        )
        log.warning("Sale %s left unsynced after %d attempt(s): %s", local_id, attempts, reason)
        return txn

    # ---------- reads ----------
    def get(self, local_id: str) -> Optional[Transaction]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM sales WHERE local_id=?", (local_id,)).fetchone()
            if not row:
                return None
            lines = self.conn.execute(
                "SELECT * FROM sale_lines WHERE local_id=? ORDER BY line_no", (local_id,)
            ).fetchall()
            pays = self.conn.execute(
                "SELECT * FROM payments WHERE local_id=? ORDER BY seq", (local_id,)
            ).fetchall()
        return _row_to_transaction(row, lines, pays)

    def require(self, local_id: str) -> Transaction:
        txn = self.get(local_id)
        if txn is None:
            raise TransactionNotFound(local_id)
        return txn

    def list_by_status(self, *statuses: TransactionStatus, limit: Optional[int] = None) -> List[Transaction]:
        """Sales in the given statuses, oldest first."""
        if not statuses:
            return []
        marks = ",".join("?" for _ in statuses)
        sql = f"SELECT local_id FROM sales WHERE status IN ({marks}) ORDER BY created_utc ASC, rowid ASC"
        params: List[Any] = [TransactionStatus(s).value for s in statuses]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            ids = [r["local_id"] for r in self.conn.execute(sql, params).fetchall()]
        return [t for t in (self.get(i) for i in ids) if t is not None]

    def status_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TransactionStatus}
        with self._lock:
            for row in self.conn.execute("SELECT status, COUNT(*) AS c FROM sales GROUP BY status"):
                counts[row["status"]] = int(row["c"])
        return counts

    def status_events(self, since_id: int = 0, local_id: Optional[str] = None,
                      limit: int = 500) -> List[StatusEvent]:
        sql = "SELECT * FROM sale_status_events WHERE id > ?"
        params: List[Any] = [int(since_id)]
        if local_id:
            sql += " AND local_id = ?"
            params.append(local_id)
        sql += " ORDER BY id ASC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [
            StatusEvent(r["id"], r["local_id"], TransactionStatus(r["status"]), parse_iso(r["created_utc"]), r["detail"])
            for r in rows
        ]


def _row_to_transaction(row: sqlite3.Row, lines: Sequence[sqlite3.Row], pays: Sequence[sqlite3.Row]) -> Transaction:
    snap = CartSnapshot(
        lines=tuple(
            LineItem(
                product_id=l["product_id"],
                variation_id=l["variation_id"],
                name=l["name"] or "",
                unit_price_minor=int(l["unit_price"]),
                quantity=Decimal(l["quantity"]),
                discount_minor=int(l["discount"]),
                tax_minor=int(l["tax"]),
            )
            for l in lines
        ),
        discount_minor=int(row["discount"]),
        shipping_minor=int(row["shipping"]),
        order_tax_minor=int(row["order_tax"]),
    )
    payments = tuple(
        Payment(method=PaymentMethod(p["method"]), amount_minor=int(p["amount"]), note=p["note"],
                remote_id=p["remote_payment_id"])
        for p in pays
    )
    return Transaction(
        local_id=row["local_id"],
        status=TransactionStatus(row["status"]),
        customer_id=row["customer_id"],
        location_id=row["location_id"],
        created_at=parse_iso(row["created_utc"]),
        snapshot=snap,
        payments=payments,
        invoice_no=row["invoice_no"],
        remote_id=row["remote_id"],
        invoice_url=row["invoice_url"],
        committed_at=parse_iso(row["committed_utc"]),
        subtotal_minor=int(row["subtotal"]),
        total_minor=int(row["total"]),
        paid_minor=int(row["paid"]),
        pending_minor=int(row["pending"]),
        change_return_minor=int(row["change_return"]),
        pay_status=PayStatus(row["pay_status"]) if row["pay_status"] else None,
        sync_attempts=int(row["sync_attempts"]),
        last_error=row["last_error"],
        note=row["note"],
        kind=TransactionKind(row["kind"] or TransactionKind.SALE.value),
    )


# ---------- LOCAL PRICE LIST ----------
class SqliteCatalog:
    """Local price list satisfying the cart's price resolver contract."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def upsert_price(self, product_id: Any, variation_id: Any, price_minor: int,
                     location_id: Any = "", name: Optional[str] = None):
        money.require_non_negative(price_minor, "price")
        vid = variation_id if variation_id not in (None, "") else product_id
        self.conn.execute("""
            INSERT INTO item_prices (product_id, variation_id, location_id, name, price, modified_utc)
            VALUES (?,?,?,?,?,?)
            ON CONFLICT(product_id, variation_id, location_id) DO UPDATE SET
              name=COALESCE(excluded.name, item_prices.name),
              price=excluded.price,
              modified_utc=excluded.modified_utc
        """, (str(product_id), str(vid), str(location_id or ""), name, price_minor, iso(utc_now())))

    def name_of(self, product_id: str, variation_id: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT name FROM item_prices WHERE product_id=? AND variation_id=? AND name IS NOT NULL LIMIT 1",
            (str(product_id), str(variation_id)),
        ).fetchone()
        return row["name"] if row else None

    def resolve_price(self, product_id: str, variation_id: str, location_id: str) -> int:
        """Location-specific price first, then the store-wide ('') price."""
        row = self.conn.execute("""
            SELECT price FROM item_prices
            WHERE product_id=? AND variation_id=? AND location_id IN (?, '')
            ORDER BY CASE WHEN location_id = '' THEN 1 ELSE 0 END
            LIMIT 1
        """, (str(product_id), str(variation_id), str(location_id or ""))).fetchone()
        if not row:
            raise PriceNotFound(f"No price for {product_id}/{variation_id} at location {location_id!r}")
        return int(row["price"])

    __call__ = resolve_price
