from __future__ import annotations

import logging
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Callable

from bizledger.domain.errors import SchemaMigrationError

log = logging.getLogger(__name__)

TARGET_VERSION = 12


class SchemaManager:
    """Brings the local database to ``TARGET_VERSION``.

    Steps are additive (create-if-absent / add-column-if-absent) and may be
    re-run. A fresh file goes through the same steps as an old one.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _steps(self) -> list[tuple[int, Callable[[sqlite3.Cursor], None]]]:
        return [
            (1, self._migration_v1_base),
            (2, self._migration_v2_ledger),
            (3, self._migration_v3_demand),
            (4, self._migration_v4_stock),
            (5, self._migration_v5_sync_flags),
            (6, self._migration_v6_client_product_timestamps),
            (7, self._migration_v7_client_product_remote_ids),
            (8, self._migration_v8_remote_ids),
            (9, self._migration_v9_timestamps),
            (10, self._migration_v10_product_stock_cache),
            (11, self._migration_v11_indexes),
            (12, self._migration_v12_soft_delete),
        ]

    def current_version(self) -> int:
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_migrations'"
            )
            if not cur.fetchone():
                return 0
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            return int(cur.fetchone()[0])
        finally:
            conn.close()

    def upgrade(self, target: int = TARGET_VERSION) -> int:
        if target < 0 or target > TARGET_VERSION:
            raise ValueError(f"Unknown schema version: {target}")

        try:
            start_version = self.current_version()
        except sqlite3.Error as exc:
            raise SchemaMigrationError(f"Cannot read schema version: {exc}") from exc
        if start_version >= target:
            return start_version

        backup_path = self._create_pre_migration_backup()
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
            )
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            for version, migration in self._steps():
                if version <= current_version or version > target:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
                log.info("schema_step_applied version=%s", version)
            conn.commit()
        except Exception as exc:
            conn.rollback()
            conn.close()
            self._restore_pre_migration_backup(backup_path)
            log.error("schema_upgrade_failed from=%s target=%s error=%s", start_version, target, exc)
            raise SchemaMigrationError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

        self._discard_pre_migration_backup(backup_path)
        log.info("schema_upgraded from=%s to=%s", start_version, target)
        return target

    def describe(self) -> dict:
        """Normalised layout fingerprint used to compare two databases."""
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
            tables = [str(r[0]) for r in cur.fetchall()]
            layout: dict = {"tables": {}, "indexes": []}
            for table in tables:
                cur.execute(f"PRAGMA table_info({table})")
                columns = [(str(r[1]), str(r[2]), int(r[3]), r[4], int(r[5])) for r in cur.fetchall()]
                cur.execute(f"PRAGMA foreign_key_list({table})")
                fks = sorted((str(r[2]), str(r[3]), str(r[4]), str(r[6])) for r in cur.fetchall())
                layout["tables"][table] = {"columns": columns, "foreign_keys": fks}
            cur.execute(
                "SELECT name, tbl_name, sql FROM sqlite_master WHERE type='index' AND sql IS NOT NULL ORDER BY name"
            )
            layout["indexes"] = [(str(r[0]), str(r[1]), str(r[2])) for r in cur.fetchall()]
            return layout
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _discard_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None:
            return
        try:
            backup_path.unlink(missing_ok=True)
        except OSError as exc:
            log.warning("schema_backup_not_removed path=%s error=%s", backup_path, exc)

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS clients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            phone TEXT,
            address TEXT
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            weight REAL NOT NULL DEFAULT 0,
            price REAL NOT NULL DEFAULT 0
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS bills (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            total_amount REAL NOT NULL DEFAULT 0,
            paid_amount REAL NOT NULL DEFAULT 0,
            carry_forward REAL NOT NULL DEFAULT 0,
            date TEXT NOT NULL,
            FOREIGN KEY(client_id) REFERENCES clients(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS bill_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bill_id INTEGER NOT NULL,
            product_id INTEGER NOT NULL,
            quantity REAL NOT NULL CHECK(quantity > 0),
            price REAL NOT NULL DEFAULT 0,
            FOREIGN KEY(bill_id) REFERENCES bills(id),
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

    def _migration_v2_ledger(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS ledger (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            bill_id INTEGER,
            type TEXT NOT NULL CHECK(type IN ('bill','payment')),
            amount REAL NOT NULL,
            date TEXT NOT NULL,
            note TEXT,
            FOREIGN KEY(client_id) REFERENCES clients(id),
            FOREIGN KEY(bill_id) REFERENCES bills(id)
        )
        """
        )

    def _migration_v3_demand(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS demand_batch (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            demand_date TEXT NOT NULL,
            closed INTEGER NOT NULL DEFAULT 0 CHECK(closed IN (0,1))
        )
        """
        )
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS demand (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            batch_id INTEGER NOT NULL,
            client_id INTEGER NOT NULL,
            product_id INTEGER NOT NULL,
            quantity REAL NOT NULL CHECK(quantity > 0),
            date TEXT NOT NULL,
            FOREIGN KEY(batch_id) REFERENCES demand_batch(id),
            FOREIGN KEY(client_id) REFERENCES clients(id),
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

    def _migration_v4_stock(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS stock (
            product_id INTEGER PRIMARY KEY,
            quantity REAL NOT NULL DEFAULT 0 CHECK(quantity >= 0),
            FOREIGN KEY(product_id) REFERENCES products(id) ON DELETE CASCADE
        )
        """
        )

    def _migration_v5_sync_flags(self, cur: sqlite3.Cursor) -> None:
        for table in ("clients", "bills", "bill_items", "ledger", "demand_batch", "demand", "stock"):
            self._add_column_if_missing(cur, table, "is_synced", "INTEGER NOT NULL DEFAULT 0")

    def _migration_v6_client_product_timestamps(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "clients", "updated_at", "TEXT")
        self._add_column_if_missing(cur, "products", "updated_at", "TEXT")

    def _migration_v7_client_product_remote_ids(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "clients", "remote_id", "TEXT")
        self._add_column_if_missing(cur, "products", "remote_id", "TEXT")

    def _migration_v8_remote_ids(self, cur: sqlite3.Cursor) -> None:
        for table in ("bills", "bill_items", "ledger", "demand_batch", "demand"):
            self._add_column_if_missing(cur, table, "remote_id", "TEXT")

    def _migration_v9_timestamps(self, cur: sqlite3.Cursor) -> None:
        for table in ("bills", "bill_items", "ledger", "demand_batch", "demand"):
            self._add_column_if_missing(cur, table, "updated_at", "TEXT")

    def _migration_v10_product_stock_cache(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "products", "stock", "REAL NOT NULL DEFAULT 0")
        self._add_column_if_missing(cur, "products", "is_synced", "INTEGER NOT NULL DEFAULT 0")
        # Products that predate the stock table get their cache from it.
        cur.execute(
            """
            UPDATE products
            SET stock = COALESCE((SELECT s.quantity FROM stock s WHERE s.product_id = products.id), 0)
            """
        )

    def _migration_v11_indexes(self, cur: sqlite3.Cursor) -> None:
        # Older builds could leave two open batches for one date; fold them into the oldest.
        cur.execute(
            """
            UPDATE demand
            SET batch_id = (
                SELECT MIN(keep.id) FROM demand_batch keep
                WHERE keep.closed = 0
                  AND keep.demand_date = (SELECT b.demand_date FROM demand_batch b WHERE b.id = demand.batch_id)
            )
            WHERE batch_id IN (
                SELECT id FROM demand_batch
                WHERE closed = 0
                  AND id NOT IN (SELECT MIN(id) FROM demand_batch WHERE closed = 0 GROUP BY demand_date)
            )
            """
        )
        cur.execute(
            """
            DELETE FROM demand_batch
            WHERE closed = 0
              AND id NOT IN (SELECT MIN(id) FROM demand_batch WHERE closed = 0 GROUP BY demand_date)
            """
        )
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_demand_batch_open_date ON demand_batch(demand_date) WHERE closed = 0"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_bill_items_bill ON bill_items(bill_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_ledger_client ON ledger(client_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_demand_batch ON demand(batch_id)")

    def _migration_v12_soft_delete(self, cur: sqlite3.Cursor) -> None:
        for table in ("clients", "products", "bills", "bill_items", "ledger", "demand_batch", "demand"):
            self._add_column_if_missing(cur, table, "is_deleted", "INTEGER NOT NULL DEFAULT 0")
