"""
Local order persistence for the POS device.

Two stores share one contract:

- SqliteOrderStore: durable, survives restarts.
- MemoryOrderStore: ephemeral, for devices without a local database. Orders
  and outbox entries are lost when the process exits; callers can check
  `store.durable` and warn the operator.

`save_order` writes the order, its items, the payment and the `order.created`
outbox entry as one unit. Either everything is stored or nothing is.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Optional

from .logs import json_log
from .models import CartLine, OrderMeta, OrderSummary, OutboxEntry, PaymentIn, Totals

ORDER_CREATED = "order.created"

SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
  id TEXT PRIMARY KEY,
  tenant_id TEXT,
  outlet_id TEXT,
  opened_at TEXT NOT NULL,
  closed_at TEXT,
  status TEXT NOT NULL,
  total_cents INTEGER NOT NULL,
  vat_total_cents INTEGER NOT NULL,
  pager_number TEXT,
  staff TEXT
);
CREATE INDEX IF NOT EXISTS orders_opened_at_idx ON orders (opened_at);
CREATE TABLE IF NOT EXISTS order_items (
  id TEXT PRIMARY KEY,
  order_id TEXT NOT NULL,
  product_id TEXT,
  name TEXT NOT NULL DEFAULT '',
  kind TEXT NOT NULL,
  qty INTEGER NOT NULL,
  price_cents INTEGER NOT NULL,
  deposit_cents INTEGER NOT NULL,
  vat_rate TEXT NOT NULL,
  prep_status TEXT,
  FOREIGN KEY(order_id) REFERENCES orders(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS payments (
  id TEXT PRIMARY KEY,
  order_id TEXT NOT NULL,
  method TEXT NOT NULL,
  amount_cents INTEGER NOT NULL,
  provider TEXT,
  provider_tx_id TEXT,
  status TEXT NOT NULL,
  created_at TEXT NOT NULL,
  FOREIGN KEY(order_id) REFERENCES orders(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS outbox (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  order_id TEXT,
  payload TEXT NOT NULL,
  created_at TEXT NOT NULL,
  sent_at TEXT,
  status TEXT NOT NULL DEFAULT 'pending',
  attempt_count INTEGER NOT NULL DEFAULT 0,
  next_attempt_at TEXT,
  last_error TEXT
);
CREATE INDEX IF NOT EXISTS outbox_status_idx ON outbox (status, created_at);
"""


class OrderStoreError(RuntimeError):
    pass


def utcnow_iso() -> str:
    # Fixed precision so ISO strings compare correctly as text.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def build_order_records(
    lines: Iterable[CartLine],
    totals: Totals,
    payment: PaymentIn,
    meta: Optional[OrderMeta] = None,
    *,
    order_id: Optional[str] = None,
    now: Optional[str] = None,
) -> dict:
    """
    Everything one checkout writes: order row, item rows, payment row and the
    outbox event payload (the exact {order, items} body the server accepts).
    """
    meta = meta or OrderMeta()
    now = now or utcnow_iso()
    oid = order_id or new_id()
    order = {
        "id": oid,
        "tenant_id": meta.tenant_id,
        "outlet_id": meta.outlet_id,
        "opened_at": now,
        "closed_at": now,
        "status": "CLOSED",
        "total_cents": totals.grand_total_cents,
        "vat_total_cents": totals.vat_total_cents,
        "pager_number": meta.pager_number,
        "staff": meta.staff,
    }
    items = [
        {
            "id": new_id(),
            "order_id": oid,
            "product_id": l.product_id,
            "name": l.name,
            "kind": l.kind,
            "qty": l.qty,
            "price_cents": l.price_cents,
            "deposit_cents": l.deposit_cents,
            "vat_rate": str(l.vat_rate),
            "prep_status": l.prep_status,
        }
        for l in lines
    ]
    pay = {
        "id": new_id(),
        "order_id": oid,
        "method": payment.method,
        "amount_cents": payment.amount_cents,
        "provider": payment.provider,
        "provider_tx_id": payment.provider_tx_id,
        "status": payment.status or "captured",
        "created_at": now,
    }
    return {"order": order, "items": items, "payment": pay, "event": order_created_payload(order, items)}


def order_created_payload(order: dict, items: list[dict]) -> dict:
    wire_order = {k: order.get(k) for k in (
        "id", "tenant_id", "opened_at", "closed_at", "status",
        "total_cents", "vat_total_cents", "pager_number", "outlet_id",
    )}
    wire_items = [
        {
            "id": it["id"],
            "order_id": it["order_id"],
            "product_id": it.get("product_id"),
            "kind": it["kind"],
            "qty": it["qty"],
            "price_cents": it["price_cents"],
            "deposit_cents": it["deposit_cents"],
            "vat_rate": float(it["vat_rate"]),
            "prep_status": it.get("prep_status") or "QUEUED",
        }
        for it in items
    ]
    return {"order": wire_order, "items": wire_items}


class OrderStore(ABC):
    durable: bool = False

    def init_schema(self) -> None:
        pass

    @abstractmethod
    def save_order(
        self,
        lines: Iterable[CartLine],
        totals: Totals,
        payment: PaymentIn,
        meta: Optional[OrderMeta] = None,
    ) -> str:
        ...

    @abstractmethod
    def list_recent_orders(self, limit: int = 20) -> list[OrderSummary]:
        ...

    @abstractmethod
    def enqueue_outbox(self, event_type: str, payload: dict) -> str:
        ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def get_order_items(self, order_id: str) -> list[dict]:
        ...

    @abstractmethod
    def get_outbox_entry(self, entry_id: str) -> Optional[OutboxEntry]:
        ...

    @abstractmethod
    def list_due_outbox(self, limit: int = 10, now: Optional[str] = None) -> list[OutboxEntry]:
        ...

    @abstractmethod
    def list_unsent_outbox(self, limit: int = 100) -> list[OutboxEntry]:
        """Every entry without `sent_at` (including scheduled retries and dead ones), oldest first."""

    @abstractmethod
    def outbox_id_for_order(self, order_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def mark_outbox_sent(self, entry_id: str, sent_at: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    def mark_outbox_failed(self, entry_id: str, error: str, next_attempt_at: Optional[str], dead: bool = False) -> None:
        ...

    @abstractmethod
    def count_outbox_pending(self) -> int:
        ...


class SqliteOrderStore(OrderStore):
    durable = True

    def __init__(self, db_path: str):
        self.db_path = db_path
        # One writer at a time: checkout, the detached sync thread and the drain worker.
        self._lock = threading.Lock()

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self._lock, self._conn() as conn:
            conn.executescript(SCHEMA)
            # Databases created before outbox.order_id existed.
            cols = {r["name"] for r in conn.execute("PRAGMA table_info(outbox)").fetchall()}
            if "order_id" not in cols:
                conn.execute("ALTER TABLE outbox ADD COLUMN order_id TEXT")
            conn.execute("CREATE INDEX IF NOT EXISTS outbox_order_idx ON outbox (order_id)")

    def _insert_order(self, cur, o: dict) -> None:
        cur.execute(
            """
            INSERT INTO orders (id, tenant_id, outlet_id, opened_at, closed_at, status,
                                total_cents, vat_total_cents, pager_number, staff)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (o["id"], o["tenant_id"], o["outlet_id"], o["opened_at"], o["closed_at"], o["status"],
             o["total_cents"], o["vat_total_cents"], o["pager_number"], o["staff"]),
        )

    def _insert_items(self, cur, items: list[dict]) -> None:
        for it in items:
            cur.execute(
                """
                INSERT INTO order_items (id, order_id, product_id, name, kind, qty,
                                         price_cents, deposit_cents, vat_rate, prep_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (it["id"], it["order_id"], it["product_id"], it["name"], it["kind"], it["qty"],
                 it["price_cents"], it["deposit_cents"], it["vat_rate"], it["prep_status"]),
            )

    def _insert_payment(self, cur, p: dict) -> None:
        cur.execute(
            """
            INSERT INTO payments (id, order_id, method, amount_cents, provider, provider_tx_id, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (p["id"], p["order_id"], p["method"], p["amount_cents"], p["provider"],
             p["provider_tx_id"], p["status"], p["created_at"]),
        )

    def _insert_outbox(self, cur, event_type: str, payload: dict, created_at: str, order_id: Optional[str] = None) -> str:
        entry_id = new_id()
        cur.execute(
            """
            INSERT INTO outbox (id, type, order_id, payload, created_at, status, attempt_count)
            VALUES (?, ?, ?, ?, ?, 'pending', 0)
            """,
            (entry_id, event_type, order_id, json.dumps(payload), created_at),
        )
        return entry_id

    def save_order(self, lines, totals, payment, meta=None) -> str:
        rec = build_order_records(lines, totals, payment, meta)
        with self._lock, self._conn() as conn:
            cur = conn.cursor()
            self._insert_order(cur, rec["order"])
            self._insert_items(cur, rec["items"])
            self._insert_payment(cur, rec["payment"])
            self._insert_outbox(cur, ORDER_CREATED, rec["event"], rec["order"]["opened_at"], rec["order"]["id"])
        return rec["order"]["id"]

    def list_recent_orders(self, limit: int = 20) -> list[OrderSummary]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT id, opened_at, closed_at, status, total_cents, vat_total_cents, pager_number, outlet_id
                FROM orders
                ORDER BY opened_at DESC, rowid DESC
                LIMIT ?
                """,
                (max(0, int(limit)),),
            ).fetchall()
        return [OrderSummary(**dict(r)) for r in rows]

    def enqueue_outbox(self, event_type: str, payload: dict) -> str:
        with self._lock, self._conn() as conn:
            return self._insert_outbox(conn.cursor(), event_type, payload, utcnow_iso())

    def get_order(self, order_id: str) -> Optional[dict]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        return dict(row) if row else None

    def get_order_items(self, order_id: str) -> list[dict]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM order_items WHERE order_id = ? ORDER BY rowid", (order_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def _entry(self, row) -> OutboxEntry:
        data = dict(row)
        data["payload"] = json.loads(data["payload"] or "{}")
        return OutboxEntry(**data)

    def get_outbox_entry(self, entry_id: str) -> Optional[OutboxEntry]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM outbox WHERE id = ?", (entry_id,)).fetchone()
        return self._entry(row) if row else None

    def list_due_outbox(self, limit: int = 10, now: Optional[str] = None) -> list[OutboxEntry]:
        now = now or utcnow_iso()
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM outbox
                WHERE sent_at IS NULL
                  AND status IN ('pending', 'failed')
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (now, max(0, int(limit))),
            ).fetchall()
        return [self._entry(r) for r in rows]

    def list_unsent_outbox(self, limit: int = 100) -> list[OutboxEntry]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM outbox WHERE sent_at IS NULL ORDER BY created_at ASC, rowid ASC LIMIT ?",
                (max(0, int(limit)),),
            ).fetchall()
        return [self._entry(r) for r in rows]

    def outbox_id_for_order(self, order_id: str) -> Optional[str]:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT id FROM outbox
                WHERE order_id = ? AND type = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (order_id, ORDER_CREATED),
            ).fetchone()
        return row["id"] if row else None

    def mark_outbox_sent(self, entry_id: str, sent_at: Optional[str] = None) -> bool:
        with self._lock, self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE outbox
                SET sent_at = ?, status = 'sent', last_error = NULL, next_attempt_at = NULL
                WHERE id = ? AND sent_at IS NULL
                """,
                (sent_at or utcnow_iso(), entry_id),
            )
            return cur.rowcount > 0

    def mark_outbox_failed(self, entry_id: str, error: str, next_attempt_at: Optional[str], dead: bool = False) -> None:
        with self._lock, self._conn() as conn:
            conn.execute(
                """
                UPDATE outbox
                SET status = ?, attempt_count = attempt_count + 1, last_error = ?, next_attempt_at = ?
                WHERE id = ? AND sent_at IS NULL
                """,
                ("dead" if dead else "failed", (error or "")[:1000], next_attempt_at, entry_id),
            )

    def count_outbox_pending(self) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COUNT(1) FROM outbox WHERE sent_at IS NULL AND status IN ('pending', 'failed')"
            ).fetchone()
        return int(row[0] if row else 0)


class MemoryOrderStore(OrderStore):
    durable = False

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: list[dict] = []
        self._items: dict[str, list[dict]] = {}
        self._payments: dict[str, dict] = {}
        self._outbox: list[dict] = []
        self._outbox_by_order: dict[str, str] = {}

    def _new_outbox_row(self, event_type: str, payload: dict, created_at: str, order_id: Optional[str] = None) -> dict:
        return {
            "id": new_id(),
            "type": event_type,
            "order_id": order_id,
            # Copy through JSON like the durable store so later mutation of the
            # caller's dict can't change a queued event.
            "payload": json.loads(json.dumps(payload)),
            "created_at": created_at,
            "sent_at": None,
            "status": "pending",
            "attempt_count": 0,
            "next_attempt_at": None,
            "last_error": None,
        }

    def save_order(self, lines, totals, payment, meta=None) -> str:
        rec = build_order_records(lines, totals, payment, meta)
        oid = rec["order"]["id"]
        outbox_row = self._new_outbox_row(ORDER_CREATED, rec["event"], rec["order"]["opened_at"], oid)
        with self._lock:
            self._orders.insert(0, rec["order"])
            self._items[oid] = rec["items"]
            self._payments[oid] = rec["payment"]
            self._outbox.append(outbox_row)
            self._outbox_by_order[oid] = outbox_row["id"]
        return oid

    def list_recent_orders(self, limit: int = 20) -> list[OrderSummary]:
        with self._lock:
            ordered = sorted(self._orders, key=lambda o: o["opened_at"], reverse=True)
        return [
            OrderSummary(**{k: o[k] for k in OrderSummary.model_fields})
            for o in ordered[: max(0, int(limit))]
        ]

    def enqueue_outbox(self, event_type: str, payload: dict) -> str:
        row = self._new_outbox_row(event_type, payload, utcnow_iso())
        with self._lock:
            self._outbox.append(row)
        return row["id"]

    def get_order(self, order_id: str) -> Optional[dict]:
        with self._lock:
            for o in self._orders:
                if o["id"] == order_id:
                    return dict(o)
        return None

    def get_order_items(self, order_id: str) -> list[dict]:
        with self._lock:
            return [dict(it) for it in self._items.get(order_id, [])]

    def get_outbox_entry(self, entry_id: str) -> Optional[OutboxEntry]:
        with self._lock:
            for row in self._outbox:
                if row["id"] == entry_id:
                    return OutboxEntry(**row)
        return None

    def list_due_outbox(self, limit: int = 10, now: Optional[str] = None) -> list[OutboxEntry]:
        now = now or utcnow_iso()
        with self._lock:
            due = [
                OutboxEntry(**row)
                for row in self._outbox
                if row["sent_at"] is None
                and row["status"] in ("pending", "failed")
                and (row["next_attempt_at"] is None or row["next_attempt_at"] <= now)
            ]
        due.sort(key=lambda e: e.created_at)
        return due[: max(0, int(limit))]

    def list_unsent_outbox(self, limit: int = 100) -> list[OutboxEntry]:
        with self._lock:
            rows = [OutboxEntry(**row) for row in self._outbox if row["sent_at"] is None]
        rows.sort(key=lambda e: e.created_at)
        return rows[: max(0, int(limit))]

    def outbox_id_for_order(self, order_id: str) -> Optional[str]:
        with self._lock:
            return self._outbox_by_order.get(order_id)

    def mark_outbox_sent(self, entry_id: str, sent_at: Optional[str] = None) -> bool:
        with self._lock:
            for row in self._outbox:
                if row["id"] == entry_id and row["sent_at"] is None:
                    row.update(sent_at=sent_at or utcnow_iso(), status="sent", last_error=None, next_attempt_at=None)
                    return True
        return False

    def mark_outbox_failed(self, entry_id: str, error: str, next_attempt_at: Optional[str], dead: bool = False) -> None:
        with self._lock:
            for row in self._outbox:
                if row["id"] == entry_id and row["sent_at"] is None:
                    row.update(
                        status="dead" if dead else "failed",
                        attempt_count=row["attempt_count"] + 1,
                        last_error=(error or "")[:1000],
                        next_attempt_at=next_attempt_at,
                    )

    def count_outbox_pending(self) -> int:
        with self._lock:
            return sum(1 for r in self._outbox if r["sent_at"] is None and r["status"] in ("pending", "failed"))


def open_order_store(db_path: Optional[str]) -> OrderStore:
    """
    Durable store when a database path is configured. Devices without one get
    the ephemeral store; a configured database that fails to open is an error,
    never a silent downgrade.
    """
    path = (db_path or "").strip()
    if not path:
        json_log("warning", "store.ephemeral", reason="no db_path configured")
        return MemoryOrderStore()
    store = SqliteOrderStore(path)
    try:
        store.init_schema()
    except sqlite3.Error as exc:
        raise OrderStoreError(f"cannot open order store at {path}: {exc}") from exc
    return store
