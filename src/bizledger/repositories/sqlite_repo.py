from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional

from bizledger.domain.errors import (
    AppError,
    BatchClosedError,
    DuplicateNameError,
    NotFoundError,
    TransactionError,
    ValidationError,
)
from bizledger.domain.models import (
    ENTITY_KINDS,
    LEDGER_BILL,
    LEDGER_PAYMENT,
    Bill,
    BillItem,
    Client,
    ClientBalance,
    ClientDemandLine,
    Demand,
    DemandBatch,
    LedgerEntry,
    PeriodSales,
    Product,
    ProductSales,
    ProductTotal,
    StockLevel,
    StockValue,
    SyncedRow,
)
from bizledger.repositories.schema import SchemaManager

log = logging.getLogger(__name__)

_CLIENT_COLS = "id, name, phone, address, updated_at, remote_id, is_synced, is_deleted"
_PRODUCT_COLS = "id, name, weight, price, stock, updated_at, remote_id, is_synced, is_deleted"
_BILL_COLS = "id, client_id, total_amount, paid_amount, carry_forward, date, updated_at, remote_id, is_synced, is_deleted"
_ITEM_COLS = "id, bill_id, product_id, quantity, price, updated_at, remote_id, is_synced, is_deleted"
_LEDGER_COLS = "id, client_id, bill_id, type, amount, date, note, updated_at, remote_id, is_synced, is_deleted"
_BATCH_COLS = "id, demand_date, closed, updated_at, remote_id, is_synced, is_deleted"
_DEMAND_COLS = "id, batch_id, client_id, product_id, quantity, date, updated_at, remote_id, is_synced, is_deleted"


def _opt_str(v) -> Optional[str]:
    return str(v) if v is not None else None


def _client(r) -> Client:
    return Client(
        id=int(r[0]),
        name=str(r[1]),
        phone=_opt_str(r[2]),
        address=_opt_str(r[3]),
        updated_at=_opt_str(r[4]),
        remote_id=_opt_str(r[5]),
        is_synced=bool(r[6]),
        is_deleted=bool(r[7]),
    )


def _product(r) -> Product:
    return Product(
        id=int(r[0]),
        name=str(r[1]),
        weight=float(r[2] or 0),
        price=float(r[3] or 0),
        stock=float(r[4] or 0),
        updated_at=_opt_str(r[5]),
        remote_id=_opt_str(r[6]),
        is_synced=bool(r[7]),
        is_deleted=bool(r[8]),
    )


def _bill(r) -> Bill:
    return Bill(
        id=int(r[0]),
        client_id=int(r[1]),
        total_amount=float(r[2] or 0),
        paid_amount=float(r[3] or 0),
        carry_forward=float(r[4] or 0),
        date=str(r[5]),
        updated_at=_opt_str(r[6]),
        remote_id=_opt_str(r[7]),
        is_synced=bool(r[8]),
        is_deleted=bool(r[9]),
    )


def _item(r) -> BillItem:
    return BillItem(
        id=int(r[0]),
        bill_id=int(r[1]),
        product_id=int(r[2]),
        quantity=float(r[3]),
        price=float(r[4] or 0),
        updated_at=_opt_str(r[5]),
        remote_id=_opt_str(r[6]),
        is_synced=bool(r[7]),
        is_deleted=bool(r[8]),
    )


def _ledger(r) -> LedgerEntry:
    return LedgerEntry(
        id=int(r[0]),
        client_id=int(r[1]),
        bill_id=(int(r[2]) if r[2] is not None else None),
        type=str(r[3]),
        amount=float(r[4]),
        date=str(r[5]),
        note=_opt_str(r[6]),
        updated_at=_opt_str(r[7]),
        remote_id=_opt_str(r[8]),
        is_synced=bool(r[9]),
        is_deleted=bool(r[10]),
    )


def _batch(r) -> DemandBatch:
    return DemandBatch(
        id=int(r[0]),
        demand_date=str(r[1]),
        closed=bool(r[2]),
        updated_at=_opt_str(r[3]),
        remote_id=_opt_str(r[4]),
        is_synced=bool(r[5]),
        is_deleted=bool(r[6]),
    )


def _demand(r) -> Demand:
    return Demand(
        id=int(r[0]),
        batch_id=int(r[1]),
        client_id=int(r[2]),
        product_id=int(r[3]),
        quantity=float(r[4]),
        date=str(r[5]),
        updated_at=_opt_str(r[6]),
        remote_id=_opt_str(r[7]),
        is_synced=bool(r[8]),
        is_deleted=bool(r[9]),
    )


def _stock(r) -> StockLevel:
    return StockLevel(
        product_id=int(r[0]),
        product_name=_opt_str(r[1]),
        quantity=float(r[2] or 0),
        is_synced=bool(r[3]),
    )


_UNSYNCED_QUERIES = {
    "clients": (f"SELECT {_CLIENT_COLS} FROM clients WHERE is_synced = 0 ORDER BY id", _client),
    "products": (f"SELECT {_PRODUCT_COLS} FROM products WHERE is_synced = 0 ORDER BY id", _product),
    "stock": (
        """
        SELECT s.product_id, p.name, s.quantity, s.is_synced
        FROM stock s LEFT JOIN products p ON p.id = s.product_id
        WHERE s.is_synced = 0 ORDER BY s.product_id
        """,
        _stock,
    ),
    "bills": (f"SELECT {_BILL_COLS} FROM bills WHERE is_synced = 0 ORDER BY id", _bill),
    "bill_items": (f"SELECT {_ITEM_COLS} FROM bill_items WHERE is_synced = 0 ORDER BY id", _item),
    "ledger": (f"SELECT {_LEDGER_COLS} FROM ledger WHERE is_synced = 0 ORDER BY id", _ledger),
    "demand_batch": (f"SELECT {_BATCH_COLS} FROM demand_batch WHERE is_synced = 0 ORDER BY id", _batch),
    "demand": (f"SELECT {_DEMAND_COLS} FROM demand WHERE is_synced = 0 ORDER BY id", _demand),
}


class SqliteRepository:
    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def init_db(self) -> None:
        SchemaManager(self.db_path).upgrade()

    @staticmethod
    def _now() -> str:
        return datetime.now().isoformat(timespec="microseconds")

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Cursor]:
        """One atomic write scope; nothing is visible to others until commit."""
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            yield cur
            conn.commit()
        except AppError:
            conn.rollback()
            raise
        except Exception as exc:
            conn.rollback()
            log.error("transaction_rolled_back operation=%s error=%s", operation, exc)
            raise TransactionError(f"{operation} failed and was rolled back: {exc}") from exc
        finally:
            conn.close()

    def integrity_check(self) -> str:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("PRAGMA integrity_check")
        row = cur.fetchone()
        conn.close()
        return str(row[0]) if row else "unknown"

    # ---------- Clients ----------
    def add_client(self, name: str, phone: Optional[str], address: Optional[str]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute("SELECT id FROM clients WHERE name=? AND is_deleted=1", (name,))
            row = cur.fetchone()
            if row:
                # The name is still held by the deleted row.
                cid = int(row[0])
                cur.execute(
                    """
                    UPDATE clients
                    SET phone=?, address=?, updated_at=?, is_synced=0, is_deleted=0
                    WHERE id=?
                    """,
                    (phone, address, self._now(), cid),
                )
            else:
                cur.execute(
                    """
                    INSERT INTO clients (name, phone, address, updated_at, is_synced)
                    VALUES (?, ?, ?, ?, 0)
                    """,
                    (name, phone, address, self._now()),
                )
                cid = int(cur.lastrowid)
            conn.commit()
            return cid
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise DuplicateNameError(f"Client '{name}' already exists.") from exc
        finally:
            conn.close()

    def update_client(self, client_id: int, name: str, phone: Optional[str], address: Optional[str]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE clients
                SET name=?, phone=?, address=?, updated_at=?, is_synced=0
                WHERE id=? AND is_deleted=0
                """,
                (name, phone, address, self._now(), int(client_id)),
            )
            changed = cur.rowcount > 0
            conn.commit()
            return bool(changed)
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise DuplicateNameError(f"Client '{name}' already exists.") from exc
        finally:
            conn.close()

    def delete_client(self, client_id: int) -> bool:
        """Mark the client deleted; the row stays until the deletion is synced and purged."""
        with self._transaction("delete_client") as cur:
            cur.execute(
                """
                SELECT
                    EXISTS (SELECT 1 FROM bills WHERE client_id=? AND is_deleted=0)
                    OR EXISTS (SELECT 1 FROM ledger WHERE client_id=? AND is_deleted=0)
                    OR EXISTS (SELECT 1 FROM demand WHERE client_id=? AND is_deleted=0)
                """,
                (int(client_id),) * 3,
            )
            if cur.fetchone()[0]:
                raise ValidationError("Client has bills, payments or demand and cannot be deleted.")
            cur.execute(
                "UPDATE clients SET is_deleted=1, is_synced=0, updated_at=? WHERE id=? AND is_deleted=0",
                (self._now(), int(client_id)),
            )
            return cur.rowcount > 0

    def get_client_by_id(self, client_id: int) -> Optional[Client]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_CLIENT_COLS} FROM clients WHERE id=? AND is_deleted=0", (int(client_id),))
        r = cur.fetchone()
        conn.close()
        return _client(r) if r else None

    def list_clients(self) -> list[Client]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_CLIENT_COLS} FROM clients WHERE is_deleted=0 ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [_client(r) for r in rows]

    def search_clients(self, query: str) -> list[Client]:
        pattern = f"%{query}%"
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_CLIENT_COLS} FROM clients WHERE is_deleted=0 AND (name LIKE ? OR phone LIKE ?) ORDER BY name",
            (pattern, pattern),
        )
        rows = cur.fetchall()
        conn.close()
        return [_client(r) for r in rows]

    # ---------- Products ----------
    def add_product(self, name: str, weight: float, price: float, stock: float = 0.0) -> int:
        now = self._now()
        try:
            with self._transaction("add_product") as cur:
                cur.execute("SELECT id FROM products WHERE name=? AND is_deleted=1", (name,))
                row = cur.fetchone()
                if row:
                    pid = int(row[0])
                    cur.execute(
                        "UPDATE products SET weight=?, price=?, updated_at=?, is_synced=0, is_deleted=0 WHERE id=?",
                        (float(weight), float(price), now, pid),
                    )
                else:
                    cur.execute(
                        """
                        INSERT INTO products (name, weight, price, stock, updated_at, is_synced)
                        VALUES (?, ?, ?, 0, ?, 0)
                        """,
                        (name, float(weight), float(price), now),
                    )
                    pid = int(cur.lastrowid)
                self._write_stock(cur, pid, float(stock), now)
                return pid
        except TransactionError as exc:
            if isinstance(exc.__cause__, sqlite3.IntegrityError):
                raise DuplicateNameError(f"Product '{name}' already exists.") from exc.__cause__
            raise

    def update_product(self, product_id: int, name: str, weight: float, price: float) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE products
                SET name=?, weight=?, price=?, updated_at=?, is_synced=0
                WHERE id=? AND is_deleted=0
                """,
                (name, float(weight), float(price), self._now(), int(product_id)),
            )
            changed = cur.rowcount > 0
            conn.commit()
            return bool(changed)
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise DuplicateNameError(f"Product '{name}' already exists.") from exc
        finally:
            conn.close()

    def delete_product(self, product_id: int) -> bool:
        with self._transaction("delete_product") as cur:
            cur.execute(
                """
                SELECT
                    EXISTS (SELECT 1 FROM bill_items WHERE product_id=? AND is_deleted=0)
                    OR EXISTS (SELECT 1 FROM demand WHERE product_id=? AND is_deleted=0)
                """,
                (int(product_id),) * 2,
            )
            if cur.fetchone()[0]:
                raise ValidationError("Product is used by bills or demand and cannot be deleted.")
            cur.execute(
                "UPDATE products SET is_deleted=1, is_synced=0, updated_at=? WHERE id=? AND is_deleted=0",
                (self._now(), int(product_id)),
            )
            return cur.rowcount > 0

    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_PRODUCT_COLS} FROM products WHERE id=? AND is_deleted=0", (int(product_id),))
        r = cur.fetchone()
        conn.close()
        return _product(r) if r else None

    def list_products(self) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_PRODUCT_COLS} FROM products WHERE is_deleted=0 ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [_product(r) for r in rows]

    def search_products(self, query: str) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_PRODUCT_COLS} FROM products WHERE is_deleted=0 AND name LIKE ? ORDER BY name",
            (f"%{query}%",),
        )
        rows = cur.fetchall()
        conn.close()
        return [_product(r) for r in rows]

    # ---------- Stock ----------
    def _require_product(self, cur: sqlite3.Cursor, product_id: int) -> None:
        cur.execute("SELECT 1 FROM products WHERE id=? AND is_deleted=0", (int(product_id),))
        if not cur.fetchone():
            raise NotFoundError(f"Product not found: {product_id}")

    def _read_stock(self, cur: sqlite3.Cursor, product_id: int) -> float:
        cur.execute("SELECT quantity FROM stock WHERE product_id=?", (int(product_id),))
        row = cur.fetchone()
        return float(row[0]) if row and row[0] is not None else 0.0

    def _write_stock(self, cur: sqlite3.Cursor, product_id: int, quantity: float, now: str) -> float:
        qty = max(0.0, float(quantity))
        cur.execute(
            """
            INSERT INTO stock (product_id, quantity, is_synced) VALUES (?, ?, 0)
            ON CONFLICT(product_id) DO UPDATE SET quantity=excluded.quantity, is_synced=0
            """,
            (int(product_id), qty),
        )
        cur.execute(
            "UPDATE products SET stock=?, updated_at=?, is_synced=0 WHERE id=?",
            (qty, now, int(product_id)),
        )
        return qty

    def _apply_stock_delta(self, cur: sqlite3.Cursor, product_id: int, delta: float, now: str) -> float:
        return self._write_stock(cur, product_id, self._read_stock(cur, product_id) + float(delta), now)

    def get_stock(self, product_id: int) -> float:
        conn = self._conn()
        cur = conn.cursor()
        qty = self._read_stock(cur, product_id)
        conn.close()
        return qty

    def set_stock(self, product_id: int, quantity: float) -> float:
        with self._transaction("set_stock") as cur:
            self._require_product(cur, product_id)
            return self._write_stock(cur, product_id, quantity, self._now())

    def adjust_stock(self, product_id: int, delta: float) -> float:
        with self._transaction("adjust_stock") as cur:
            self._require_product(cur, product_id)
            return self._apply_stock_delta(cur, product_id, delta, self._now())

    def list_stock(self) -> list[StockLevel]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT s.product_id, p.name, s.quantity, s.is_synced
            FROM stock s
            JOIN products p ON p.id = s.product_id
            WHERE p.is_deleted = 0
            ORDER BY p.name
            """
        )
        rows = cur.fetchall()
        conn.close()
        return [_stock(r) for r in rows]

    # ---------- Bills ----------
    def _insert_bill_item(self, cur: sqlite3.Cursor, bill_id: int, item: BillItem, now: str) -> int:
        cur.execute(
            """
            INSERT INTO bill_items (bill_id, product_id, quantity, price, updated_at, is_synced)
            VALUES (?, ?, ?, ?, ?, 0)
            """,
            (int(bill_id), int(item.product_id), float(item.quantity), float(item.price), now),
        )
        return int(cur.lastrowid)

    def _insert_bill_ledger_entry(
        self, cur: sqlite3.Cursor, bill_id: int, client_id: int, amount: float, bill_date: str, now: str
    ) -> int:
        cur.execute(
            """
            INSERT INTO ledger (client_id, bill_id, type, amount, date, note, updated_at, is_synced)
            VALUES (?, ?, 'bill', ?, ?, ?, ?, 0)
            """,
            (int(client_id), int(bill_id), float(amount), bill_date, f"Bill #{bill_id}", now),
        )
        return int(cur.lastrowid)

    def _upsert_bill_ledger_entry(
        self, cur: sqlite3.Cursor, bill_id: int, client_id: int, amount: float, bill_date: str, now: str
    ) -> None:
        cur.execute(
            """
            UPDATE ledger
            SET client_id=?, amount=?, date=?, note=?, updated_at=?, is_synced=0
            WHERE bill_id=? AND type='bill' AND is_deleted=0
            """,
            (int(client_id), float(amount), bill_date, f"Bill #{bill_id}", now, int(bill_id)),
        )
        if cur.rowcount == 0:
            self._insert_bill_ledger_entry(cur, bill_id, client_id, amount, bill_date, now)

    def _bill_total(self, cur: sqlite3.Cursor, bill_id: int) -> float:
        cur.execute(
            "SELECT COALESCE(SUM(quantity * price), 0) FROM bill_items WHERE bill_id=? AND is_deleted=0",
            (int(bill_id),),
        )
        return float(cur.fetchone()[0])

    def create_bill_with_items(self, bill: Bill, items: Iterable[BillItem]) -> int:
        items = list(items)
        total = sum(it.line_total for it in items)
        now = self._now()
        with self._transaction("create_bill_with_items") as cur:
            cur.execute(
                """
                INSERT INTO bills (client_id, total_amount, paid_amount, carry_forward, date, updated_at, is_synced)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                (int(bill.client_id), float(total), float(bill.paid_amount), float(bill.carry_forward), bill.date, now),
            )
            bill_id = int(cur.lastrowid)

            for it in items:
                self._insert_bill_item(cur, bill_id, it, now)
                self._apply_stock_delta(cur, it.product_id, -float(it.quantity), now)

            self._insert_bill_ledger_entry(cur, bill_id, bill.client_id, total, bill.date, now)
            return bill_id

    def update_bill_with_items(self, bill: Bill, items: Iterable[BillItem]) -> float:
        """Replace the items of ``bill``; stock is left untouched."""
        if bill.id is None:
            raise ValidationError("Bill id is required for an update.")
        items = list(items)
        total = sum(it.line_total for it in items)
        now = self._now()
        with self._transaction("update_bill_with_items") as cur:
            cur.execute(
                """
                UPDATE bills
                SET client_id=?, total_amount=?, paid_amount=?, carry_forward=?, date=?, updated_at=?, is_synced=0
                WHERE id=? AND is_deleted=0
                """,
                (
                    int(bill.client_id),
                    float(total),
                    float(bill.paid_amount),
                    float(bill.carry_forward),
                    bill.date,
                    now,
                    int(bill.id),
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Bill not found: {bill.id}")

            # Replaced lines become deletions the remote side has to see.
            cur.execute(
                "UPDATE bill_items SET is_deleted=1, is_synced=0, updated_at=? WHERE bill_id=? AND is_deleted=0",
                (now, int(bill.id)),
            )
            for it in items:
                self._insert_bill_item(cur, bill.id, it, now)

            self._upsert_bill_ledger_entry(cur, bill.id, bill.client_id, total, bill.date, now)
            return total

    def adjust_single_bill_item(self, item_id: int, new_quantity: float) -> float:
        """Change one item's quantity, move the difference through stock and
        recompute the bill total exactly. Returns the new total."""
        if float(new_quantity) <= 0:
            raise ValidationError("Quantity must be > 0.")
        now = self._now()
        with self._transaction("adjust_single_bill_item") as cur:
            cur.execute(
                "SELECT bill_id, product_id, quantity FROM bill_items WHERE id=? AND is_deleted=0",
                (int(item_id),),
            )
            row = cur.fetchone()
            if not row:
                raise NotFoundError(f"Bill item not found: {item_id}")
            bill_id, product_id, old_qty = int(row[0]), int(row[1]), float(row[2])

            self._apply_stock_delta(cur, product_id, old_qty - float(new_quantity), now)
            cur.execute(
                "UPDATE bill_items SET quantity=?, updated_at=?, is_synced=0 WHERE id=?",
                (float(new_quantity), now, int(item_id)),
            )

            total = self._bill_total(cur, bill_id)
            cur.execute(
                "UPDATE bills SET total_amount=?, updated_at=?, is_synced=0 WHERE id=?",
                (total, now, bill_id),
            )
            cur.execute("SELECT client_id, date FROM bills WHERE id=?", (bill_id,))
            client_id, bill_date = cur.fetchone()
            self._upsert_bill_ledger_entry(cur, bill_id, int(client_id), total, str(bill_date), now)
            return total

    def delete_bill(self, bill_id: int) -> None:
        """Restore sold stock and mark the bill, its items and its ledger entry deleted."""
        now = self._now()
        with self._transaction("delete_bill") as cur:
            cur.execute("SELECT 1 FROM bills WHERE id=? AND is_deleted=0", (int(bill_id),))
            if not cur.fetchone():
                raise NotFoundError(f"Bill not found: {bill_id}")
            cur.execute(
                "SELECT product_id, quantity FROM bill_items WHERE bill_id=? AND is_deleted=0",
                (int(bill_id),),
            )
            for product_id, qty in cur.fetchall():
                self._apply_stock_delta(cur, int(product_id), float(qty), now)
            for table, key in (("bill_items", "bill_id"), ("ledger", "bill_id"), ("bills", "id")):
                cur.execute(
                    f"UPDATE {table} SET is_deleted=1, is_synced=0, updated_at=? WHERE {key}=? AND is_deleted=0",
                    (now, int(bill_id)),
                )

    def get_bill_by_id(self, bill_id: int) -> Optional[Bill]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_BILL_COLS} FROM bills WHERE id=? AND is_deleted=0", (int(bill_id),))
        r = cur.fetchone()
        conn.close()
        return _bill(r) if r else None

    def list_bills(self) -> list[Bill]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_BILL_COLS} FROM bills WHERE is_deleted=0 ORDER BY date DESC, id DESC")
        rows = cur.fetchall()
        conn.close()
        return [_bill(r) for r in rows]

    def list_bills_by_client(self, client_id: int) -> list[Bill]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_BILL_COLS} FROM bills WHERE client_id=? AND is_deleted=0 ORDER BY date DESC, id DESC",
            (int(client_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [_bill(r) for r in rows]

    def get_bill_items(self, bill_id: int) -> list[BillItem]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_ITEM_COLS} FROM bill_items WHERE bill_id=? AND is_deleted=0 ORDER BY id",
            (int(bill_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [_item(r) for r in rows]

    def get_bill_item(self, item_id: int) -> Optional[BillItem]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_ITEM_COLS} FROM bill_items WHERE id=? AND is_deleted=0", (int(item_id),))
        r = cur.fetchone()
        conn.close()
        return _item(r) if r else None

    def last_carry_forward(self, client_id: int) -> float:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT carry_forward FROM bills
            WHERE client_id=? AND is_deleted=0
            ORDER BY date DESC, id DESC LIMIT 1
            """,
            (int(client_id),),
        )
        row = cur.fetchone()
        conn.close()
        return float(row[0]) if row and row[0] is not None else 0.0

    def recalculate_carry_forward(self, client_id: int) -> float:
        """Rewrite each bill's carry-forward as the running unpaid balance."""
        now = self._now()
        with self._transaction("recalculate_carry_forward") as cur:
            cur.execute(
                """
                SELECT id, total_amount, paid_amount, carry_forward FROM bills
                WHERE client_id=? AND is_deleted=0
                ORDER BY date, id
                """,
                (int(client_id),),
            )
            running = 0.0
            for bill_id, total, paid, carry in cur.fetchall():
                running += float(total or 0) - float(paid or 0)
                if carry is None or abs(float(carry) - running) > 1e-9:
                    cur.execute(
                        "UPDATE bills SET carry_forward=?, updated_at=?, is_synced=0 WHERE id=?",
                        (running, now, int(bill_id)),
                    )
            return running

    # ---------- Ledger ----------
    def insert_cash_payment(
        self, client_id: int, amount: float, note: Optional[str] = None, date_iso: Optional[str] = None
    ) -> int:
        now = self._now()
        with self._transaction("insert_cash_payment") as cur:
            cur.execute("SELECT 1 FROM clients WHERE id=? AND is_deleted=0", (int(client_id),))
            if not cur.fetchone():
                raise NotFoundError(f"Client not found: {client_id}")
            cur.execute(
                """
                INSERT INTO ledger (client_id, bill_id, type, amount, date, note, updated_at, is_synced)
                VALUES (?, NULL, ?, ?, ?, ?, ?, 0)
                """,
                (int(client_id), LEDGER_PAYMENT, float(amount), date_iso or now, note or "Cash Payment", now),
            )
            return int(cur.lastrowid)

    def delete_ledger_entry(self, entry_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute("SELECT type FROM ledger WHERE id=? AND is_deleted=0", (int(entry_id),))
            row = cur.fetchone()
            if not row:
                return False
            if str(row[0]) == LEDGER_BILL:
                raise ValidationError("Bill entries follow their bill; delete the bill instead.")
            cur.execute(
                "UPDATE ledger SET is_deleted=1, is_synced=0, updated_at=? WHERE id=?",
                (self._now(), int(entry_id)),
            )
            conn.commit()
            return True
        finally:
            conn.close()

    def ledger_entries_for_client(self, client_id: int) -> list[LedgerEntry]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_LEDGER_COLS} FROM ledger WHERE client_id=? AND is_deleted=0 ORDER BY date, id",
            (int(client_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [_ledger(r) for r in rows]

    def ledger_entries_for_bill(self, bill_id: int) -> list[LedgerEntry]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_LEDGER_COLS} FROM ledger WHERE bill_id=? AND is_deleted=0 ORDER BY id",
            (int(bill_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [_ledger(r) for r in rows]

    def client_balance(self, client_id: int) -> float:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT COALESCE(SUM(CASE WHEN type = 'bill' THEN amount ELSE -amount END), 0)
            FROM ledger
            WHERE client_id = ? AND is_deleted = 0
            """,
            (int(client_id),),
        )
        balance = float(cur.fetchone()[0])
        conn.close()
        return balance

    def clients_with_balances(self, outstanding_only: bool = False) -> list[ClientBalance]:
        """Balance per live client, by name; ``outstanding_only`` keeps debtors, largest first."""
        conn = self._conn()
        cur = conn.cursor()
        sql = """
            SELECT c.id, c.name, c.phone, COALESCE(l.balance, 0)
            FROM clients c
            LEFT JOIN (
                SELECT client_id, SUM(CASE WHEN type = 'bill' THEN amount ELSE -amount END) AS balance
                FROM ledger
                WHERE is_deleted = 0
                GROUP BY client_id
            ) l ON l.client_id = c.id
            WHERE c.is_deleted = 0
            """
        if outstanding_only:
            sql += " AND COALESCE(l.balance, 0) > 0.005 ORDER BY l.balance DESC, c.name"
        else:
            sql += " ORDER BY c.name"
        cur.execute(sql)
        rows = cur.fetchall()
        conn.close()
        return [ClientBalance(client_id=int(r[0]), name=str(r[1]), phone=_opt_str(r[2]), balance=float(r[3])) for r in rows]

    # ---------- Demand ----------
    def _find_or_create_open_batch(self, cur: sqlite3.Cursor, demand_date: str, now: str) -> int:
        cur.execute(
            "SELECT id FROM demand_batch WHERE demand_date=? AND closed=0 ORDER BY id LIMIT 1",
            (demand_date,),
        )
        row = cur.fetchone()
        if row:
            return int(row[0])
        cur.execute(
            "INSERT INTO demand_batch (demand_date, closed, updated_at, is_synced) VALUES (?, 0, ?, 0)",
            (demand_date, now),
        )
        return int(cur.lastrowid)

    def _require_open_batch(self, cur: sqlite3.Cursor, batch_id: int) -> str:
        cur.execute("SELECT demand_date, closed FROM demand_batch WHERE id=? AND is_deleted=0", (int(batch_id),))
        row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Demand batch not found: {batch_id}")
        if int(row[1]):
            raise BatchClosedError(f"Demand batch {batch_id} is closed.")
        return str(row[0])

    def get_or_create_batch_for_date(self, demand_date: str) -> int:
        with self._transaction("get_or_create_batch_for_date") as cur:
            return self._find_or_create_open_batch(cur, demand_date, self._now())

    def get_batch_by_id(self, batch_id: int) -> Optional[DemandBatch]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_BATCH_COLS} FROM demand_batch WHERE id=? AND is_deleted=0", (int(batch_id),))
        r = cur.fetchone()
        conn.close()
        return _batch(r) if r else None

    def list_batches(self) -> list[DemandBatch]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_BATCH_COLS} FROM demand_batch WHERE is_deleted=0 ORDER BY demand_date DESC, id DESC")
        rows = cur.fetchall()
        conn.close()
        return [_batch(r) for r in rows]

    def insert_demand_entry(
        self, batch_id: int, client_id: int, product_id: int, quantity: float, date_iso: Optional[str] = None
    ) -> int:
        now = self._now()
        with self._transaction("insert_demand_entry") as cur:
            self._require_open_batch(cur, batch_id)
            cur.execute(
                """
                INSERT INTO demand (batch_id, client_id, product_id, quantity, date, updated_at, is_synced)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                (int(batch_id), int(client_id), int(product_id), float(quantity), date_iso or now, now),
            )
            return int(cur.lastrowid)

    def _live_demand_batch(self, cur: sqlite3.Cursor, demand_id: int) -> int:
        cur.execute("SELECT batch_id FROM demand WHERE id=? AND is_deleted=0", (int(demand_id),))
        row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Demand entry not found: {demand_id}")
        self._require_open_batch(cur, int(row[0]))
        return int(row[0])

    def update_demand_quantity(self, demand_id: int, quantity: float) -> None:
        now = self._now()
        with self._transaction("update_demand_quantity") as cur:
            self._live_demand_batch(cur, demand_id)
            cur.execute(
                "UPDATE demand SET quantity=?, updated_at=?, is_synced=0 WHERE id=?",
                (float(quantity), now, int(demand_id)),
            )

    def delete_demand_entry(self, demand_id: int) -> None:
        now = self._now()
        with self._transaction("delete_demand_entry") as cur:
            self._live_demand_batch(cur, demand_id)
            cur.execute(
                "UPDATE demand SET is_deleted=1, is_synced=0, updated_at=? WHERE id=?",
                (now, int(demand_id)),
            )

    def list_demand(self, batch_id: int) -> list[Demand]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_DEMAND_COLS} FROM demand WHERE batch_id=? AND is_deleted=0 ORDER BY id",
            (int(batch_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [_demand(r) for r in rows]

    def batch_totals(self, batch_id: int) -> list[ProductTotal]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT p.id, p.name, SUM(d.quantity)
            FROM demand d
            JOIN products p ON p.id = d.product_id
            WHERE d.batch_id = ? AND d.is_deleted = 0
            GROUP BY p.id
            ORDER BY p.name
            """,
            (int(batch_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [ProductTotal(product_id=int(r[0]), product_name=str(r[1]), total_qty=float(r[2])) for r in rows]

    def batch_client_details(self, batch_id: int) -> list[ClientDemandLine]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT c.id, c.name, p.id, p.name, SUM(d.quantity)
            FROM demand d
            JOIN clients c ON c.id = d.client_id
            JOIN products p ON p.id = d.product_id
            WHERE d.batch_id = ? AND d.is_deleted = 0
            GROUP BY c.id, p.id
            ORDER BY c.name, p.name
            """,
            (int(batch_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [
            ClientDemandLine(
                client_id=int(r[0]),
                client_name=str(r[1]),
                product_id=int(r[2]),
                product_name=str(r[3]),
                qty=float(r[4]),
            )
            for r in rows
        ]

    def close_demand_batch(
        self, batch_id: int, create_next_period: bool = False, next_date: Optional[str] = None
    ) -> Optional[int]:
        """Commit a batch's demanded totals into stock and close it for good.

        Returns the id of the next period's open batch when requested.
        """
        now = self._now()
        with self._transaction("close_demand_batch") as cur:
            demand_date = self._require_open_batch(cur, batch_id)

            cur.execute(
                "SELECT product_id, SUM(quantity) FROM demand WHERE batch_id=? AND is_deleted=0 GROUP BY product_id",
                (int(batch_id),),
            )
            for product_id, total_qty in cur.fetchall():
                self._apply_stock_delta(cur, int(product_id), float(total_qty), now)

            cur.execute(
                "UPDATE demand_batch SET closed=1, updated_at=?, is_synced=0 WHERE id=? AND closed=0",
                (now, int(batch_id)),
            )

            if not create_next_period:
                return None
            if next_date is None:
                next_date = (date.fromisoformat(demand_date[:10]) + timedelta(days=1)).isoformat()
            return self._find_or_create_open_batch(cur, next_date, now)

    # ---------- Cleanup ----------
    # Children before parents; a row still referenced by any other row stays.
    _PURGE_ORDER = (
        ("demand", ()),
        ("ledger", ()),
        ("bill_items", ()),
        ("bills", (("bill_items", "bill_id"), ("ledger", "bill_id"))),
        ("demand_batch", (("demand", "batch_id"),)),
        ("products", (("bill_items", "product_id"), ("demand", "product_id"))),
        ("clients", (("bills", "client_id"), ("ledger", "client_id"), ("demand", "client_id"))),
    )

    def purge_deleted_records(self, older_than: str) -> int:
        """Physically remove deleted rows the remote side has already confirmed.

        Only rows with ``is_deleted=1`` and ``is_synced=1`` whose last change is
        before ``older_than`` go. Returns the number of rows removed.
        """
        removed = 0
        with self._transaction("purge_deleted_records") as cur:
            for table, referrers in self._PURGE_ORDER:
                sql = f"DELETE FROM {table} WHERE is_deleted = 1 AND is_synced = 1 AND updated_at < ?"
                for child, column in referrers:
                    sql += f" AND NOT EXISTS (SELECT 1 FROM {child} WHERE {child}.{column} = {table}.id)"
                cur.execute(sql, (older_than,))
                removed += max(cur.rowcount, 0)
        log.info("deleted_records_purged count=%s older_than=%s", removed, older_than)
        return removed

    # ---------- Sync bookkeeping ----------
    @staticmethod
    def _check_kind(entity_kind: str) -> str:
        if entity_kind not in ENTITY_KINDS:
            raise ValidationError(f"Unknown entity kind: {entity_kind}")
        return entity_kind

    def list_unsynced(self, entity_kind: str) -> list:
        sql, mapper = _UNSYNCED_QUERIES[self._check_kind(entity_kind)]
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(sql)
        rows = cur.fetchall()
        conn.close()
        return [mapper(r) for r in rows]

    def _mark_synced(self, cur: sqlite3.Cursor, row: SyncedRow) -> bool:
        table = self._check_kind(row.entity_kind)
        if table == "stock":
            cur.execute("UPDATE stock SET is_synced=1 WHERE product_id=?", (int(row.local_id),))
            return cur.rowcount > 0

        sql = f"UPDATE {table} SET is_synced=1, remote_id=COALESCE(remote_id, ?) WHERE id=?"
        params: tuple = (row.remote_id, int(row.local_id))
        if row.seen_updated_at is not None:
            # Rows edited after the gateway read them stay dirty.
            sql += " AND updated_at IS ?"
            params += (row.seen_updated_at,)
        cur.execute(sql, params)
        return cur.rowcount > 0

    def mark_synced(
        self,
        entity_kind: str,
        row_id: int,
        remote_id: Optional[str] = None,
        seen_updated_at: Optional[str] = None,
    ) -> bool:
        return self.mark_synced_many(
            [SyncedRow(entity_kind=entity_kind, local_id=row_id, remote_id=remote_id, seen_updated_at=seen_updated_at)]
        ) == 1

    def mark_synced_many(self, rows: Iterable[SyncedRow]) -> int:
        with self._transaction("mark_synced") as cur:
            return sum(1 for r in rows if self._mark_synced(cur, r))

    def reset_sync_flags(self) -> None:
        with self._transaction("reset_sync_flags") as cur:
            for table in ENTITY_KINDS:
                cur.execute(f"UPDATE {table} SET is_synced=0")

    def sync_status(self) -> dict[str, dict[str, int]]:
        conn = self._conn()
        cur = conn.cursor()
        status: dict[str, dict[str, int]] = {}
        for table in ENTITY_KINDS:
            cur.execute(f"SELECT COUNT(*), COALESCE(SUM(CASE WHEN is_synced = 0 THEN 1 ELSE 0 END), 0) FROM {table}")
            total, unsynced = (int(v) for v in cur.fetchone())
            status[table] = {
                "total": total,
                "unsynced": unsynced,
                "synced_percent": round((total - unsynced) / total * 100) if total else 100,
            }
        conn.close()
        return status

    # ---------- Reporting ----------
    def dashboard_stats(self, low_stock_threshold: float = 10.0) -> dict[str, float]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM clients WHERE is_deleted = 0")
        clients = int(cur.fetchone()[0])
        cur.execute("SELECT COUNT(*) FROM products WHERE is_deleted = 0")
        products = int(cur.fetchone()[0])
        cur.execute("SELECT COUNT(*), COALESCE(SUM(total_amount), 0) FROM bills WHERE is_deleted = 0")
        bills, revenue = cur.fetchone()
        cur.execute(
            """
            SELECT COALESCE(SUM(CASE WHEN type = 'payment' THEN amount ELSE 0 END), 0)
            FROM ledger
            WHERE is_deleted = 0
            """
        )
        collected = float(cur.fetchone()[0])
        cur.execute(
            """
            SELECT COUNT(*) FROM stock s JOIN products p ON p.id = s.product_id
            WHERE p.is_deleted = 0 AND s.quantity < ?
            """,
            (float(low_stock_threshold),),
        )
        low_stock = int(cur.fetchone()[0])
        conn.close()
        return {
            "clients": clients,
            "products": products,
            "bills": int(bills),
            "revenue": float(revenue),
            "collected": collected,
            "outstanding": float(revenue) - collected,
            "low_stock": low_stock,
        }

    _PERIOD_WIDTH = {"day": 10, "month": 7, "year": 4}

    def sales_by_period(
        self, granularity: str, start_iso: Optional[str] = None, end_iso: Optional[str] = None
    ) -> list[PeriodSales]:
        """Bill count and revenue grouped by day, month or year, oldest first."""
        width = self._PERIOD_WIDTH.get(granularity)
        if width is None:
            raise ValidationError(f"Unknown period: {granularity}")
        sql = f"""
            SELECT substr(date, 1, {width}) AS period, COUNT(*), COALESCE(SUM(total_amount), 0)
            FROM bills
            WHERE is_deleted = 0
        """
        params: list = []
        if start_iso:
            sql += " AND date >= ?"
            params.append(start_iso)
        if end_iso:
            sql += " AND date < ?"
            params.append(end_iso)
        sql += " GROUP BY period ORDER BY period"
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(sql, params)
        rows = cur.fetchall()
        conn.close()
        return [PeriodSales(period=str(r[0]), bills=int(r[1]), revenue=float(r[2])) for r in rows]

    def monthly_sales_totals(self, months: int = 6) -> list[PeriodSales]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT substr(date,1,7) AS ym, COUNT(*), COALESCE(SUM(total_amount),0)
            FROM bills
            WHERE is_deleted = 0
            GROUP BY ym
            ORDER BY ym DESC
            LIMIT ?
            """,
            (int(months),),
        )
        rows = list(reversed(cur.fetchall()))
        conn.close()
        return [PeriodSales(period=str(r[0]), bills=int(r[1]), revenue=float(r[2])) for r in rows]

    def product_sales_report(
        self, start_iso: Optional[str] = None, end_iso: Optional[str] = None, limit: Optional[int] = None
    ) -> list[ProductSales]:
        """Quantity and revenue per product over live bills, best sellers first."""
        sql = """
            SELECT p.id, p.name,
                   SUM(bi.quantity) AS qty,
                   SUM(bi.quantity * bi.price) AS revenue,
                   COUNT(DISTINCT b.id)
            FROM bill_items bi
            JOIN bills b ON b.id = bi.bill_id
            JOIN products p ON p.id = bi.product_id
            WHERE bi.is_deleted = 0 AND b.is_deleted = 0
        """
        params: list = []
        if start_iso:
            sql += " AND b.date >= ?"
            params.append(start_iso)
        if end_iso:
            sql += " AND b.date < ?"
            params.append(end_iso)
        sql += " GROUP BY p.id ORDER BY revenue DESC, p.name"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(sql, params)
        rows = cur.fetchall()
        conn.close()
        return [
            ProductSales(
                product_id=int(r[0]),
                product_name=str(r[1]),
                quantity=float(r[2] or 0),
                revenue=float(r[3] or 0),
                bills=int(r[4]),
            )
            for r in rows
        ]

    def stock_valuation(self) -> list[StockValue]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT p.id, p.name, p.stock, p.price,
                   COALESCE((
                       SELECT SUM(bi.quantity) FROM bill_items bi
                       JOIN bills b ON b.id = bi.bill_id
                       WHERE bi.product_id = p.id AND bi.is_deleted = 0 AND b.is_deleted = 0
                   ), 0)
            FROM products p
            WHERE p.is_deleted = 0
            ORDER BY p.name
            """
        )
        rows = cur.fetchall()
        conn.close()
        return [
            StockValue(
                product_id=int(r[0]),
                product_name=str(r[1]),
                stock=float(r[2] or 0),
                price=float(r[3] or 0),
                sold_qty=float(r[4] or 0),
            )
            for r in rows
        ]
