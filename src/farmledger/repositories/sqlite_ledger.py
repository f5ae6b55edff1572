from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from farmledger.domain.errors import ConflictError, NotFoundError, SchemaError
from farmledger.domain.models import (
    Farm,
    FarmMode,
    InvoiceRecord,
    Product,
    ProductCategory,
    StatisticRecord,
)
from farmledger.repositories.serialization import (
    INVOICE_COLUMNS,
    INVOICE_PATCHABLE,
    STATISTIC_COLUMNS,
    STATISTIC_PATCHABLE,
    invoice_from_row,
    invoice_to_row,
    statistic_from_row,
    statistic_to_row,
)
from farmledger.repositories.sqlite_base import Migration, SqliteStore


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def _server_id(record_id: Optional[str]) -> str:
    if record_id and not record_id.startswith("local-"):
        return record_id
    return str(uuid.uuid4())


def _translate(exc: sqlite3.Error) -> Exception:
    msg = str(exc)
    if isinstance(exc, sqlite3.IntegrityError) and "UNIQUE" in msg.upper():
        return ConflictError(msg)
    return SchemaError(msg)


class SqliteLedgerRepository(SqliteStore):
    """Standalone authoritative ledger store.

    Implements the remote ledger contract on a local SQLite file so a farm
    can run without a hosted backend. The test suite uses it as the remote.
    """

    def migrations(self) -> Sequence[Migration]:
        return [(1, self._migration_v1_base)]

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT 'other' CHECK(category IN ('simple','printable','other')),
                has_weight INTEGER NOT NULL DEFAULT 1 CHECK(has_weight IN (0,1))
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS farms (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                mode TEXT NOT NULL DEFAULT 'carry_forward' CHECK(mode IN ('carry_forward','declared_stock')),
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS farm_products (
                farm_id TEXT NOT NULL,
                product_id TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (farm_id, product_id),
                FOREIGN KEY(farm_id) REFERENCES farms(id) ON DELETE CASCADE,
                FOREIGN KEY(product_id) REFERENCES products(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS daily_statistics (
                id TEXT PRIMARY KEY,
                farm_id TEXT NOT NULL,
                date TEXT NOT NULL,
                product_id TEXT NOT NULL,
                previous_balance INTEGER NOT NULL DEFAULT 0,
                previous_balance_weight REAL NOT NULL DEFAULT 0,
                production INTEGER NOT NULL DEFAULT 0,
                production_weight REAL NOT NULL DEFAULT 0,
                usage_display INTEGER NOT NULL DEFAULT 0,
                usage_display_weight REAL NOT NULL DEFAULT 0,
                current_inventory INTEGER NOT NULL DEFAULT 0,
                current_inventory_weight REAL NOT NULL DEFAULT 0,
                separation_amount REAL NOT NULL DEFAULT 0,
                created_by TEXT,
                creator_name TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                UNIQUE(farm_id, date, product_id),
                FOREIGN KEY(farm_id) REFERENCES farms(id),
                FOREIGN KEY(product_id) REFERENCES products(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                farm_id TEXT NOT NULL,
                date TEXT NOT NULL,
                invoice_number TEXT NOT NULL,
                product_id TEXT NOT NULL,
                total_cartons INTEGER NOT NULL CHECK(total_cartons >= 0),
                total_weight REAL NOT NULL DEFAULT 0 CHECK(total_weight >= 0),
                source_product_id TEXT,
                converted_amount INTEGER NOT NULL DEFAULT 0,
                is_converted INTEGER NOT NULL DEFAULT 0 CHECK(is_converted IN (0,1)),
                driver_name TEXT,
                driver_phone TEXT,
                plate_number TEXT,
                description TEXT,
                is_yesterday INTEGER NOT NULL DEFAULT 0 CHECK(is_yesterday IN (0,1)),
                created_by TEXT,
                creator_name TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                UNIQUE(invoice_number, product_id),
                CHECK(converted_amount >= 0 AND converted_amount <= total_cartons),
                FOREIGN KEY(farm_id) REFERENCES farms(id),
                FOREIGN KEY(product_id) REFERENCES products(id),
                FOREIGN KEY(source_product_id) REFERENCES products(id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_statistics_day ON daily_statistics(farm_id, date)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_invoices_day ON invoices(farm_id, date)")

    # ---------- Catalog ----------
    def add_product(self, name: str, category: ProductCategory | None = None, has_weight: bool = True, product_id: str | None = None) -> str:
        pid = product_id or str(uuid.uuid4())
        category = category or ProductCategory.from_name(name)
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO products (id, name, category, has_weight) VALUES (?, ?, ?, ?)",
            (pid, name, ProductCategory(category).value, int(bool(has_weight))),
        )
        conn.commit()
        conn.close()
        return pid

    def add_farm(self, name: str, mode: FarmMode, product_ids: Iterable[str], farm_id: str | None = None) -> str:
        fid = farm_id or str(uuid.uuid4())
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(
                "INSERT INTO farms (id, name, mode, active) VALUES (?, ?, ?, 1)",
                (fid, name, FarmMode(mode).value),
            )
            for position, pid in enumerate(product_ids):
                cur.execute(
                    "INSERT INTO farm_products (farm_id, product_id, position) VALUES (?, ?, ?)",
                    (fid, pid, position),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return fid

    def list_products(self) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, name, category, has_weight FROM products ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [
            Product(
                id=str(r["id"]),
                name=str(r["name"]),
                category=ProductCategory(r["category"]),
                has_weight=bool(r["has_weight"]),
            )
            for r in rows
        ]

    def list_farms(self) -> list[Farm]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, name, mode, active FROM farms ORDER BY name")
        farms = cur.fetchall()
        cur.execute("SELECT farm_id, product_id FROM farm_products ORDER BY farm_id, position")
        links: dict[str, list[str]] = {}
        for r in cur.fetchall():
            links.setdefault(str(r["farm_id"]), []).append(str(r["product_id"]))
        conn.close()
        return [
            Farm(
                id=str(r["id"]),
                name=str(r["name"]),
                mode=FarmMode(r["mode"]),
                product_ids=tuple(links.get(str(r["id"]), [])),
                active=bool(r["active"]),
            )
            for r in farms
        ]

    # ---------- Statistics ----------
    def upsert_statistics(self, records: Iterable[StatisticRecord]) -> list[StatisticRecord]:
        records = list(records)
        now = _now_iso()
        cols = [c for c in STATISTIC_COLUMNS]
        placeholders = ", ".join("?" for _ in cols)
        updatable = [c for c in cols if c not in ("id", "farm_id", "date", "product_id", "created_by", "creator_name", "created_at")]
        assignments = ", ".join(f"{c}=excluded.{c}" for c in updatable)

        conn = self._conn()
        cur = conn.cursor()
        try:
            keys = []
            for rec in records:
                row = statistic_to_row(rec)
                row["id"] = _server_id(rec.id)
                row["created_at"] = rec.created_at or now
                row["updated_at"] = now
                cur.execute(
                    f"""
                    INSERT INTO daily_statistics ({", ".join(cols)})
                    VALUES ({placeholders})
                    ON CONFLICT(farm_id, date, product_id) DO UPDATE SET {assignments}
                    """,
                    [row[c] for c in cols],
                )
                keys.append(rec.key)
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise _translate(exc) from exc
        finally:
            conn.close()

        out = []
        for farm_id, date, product_id in keys:
            out.extend(self.fetch_statistics(farm_id=farm_id, date=date, product_id=product_id))
        return out

    def update_statistic(self, statistic_id: str, patch: Mapping[str, Any]) -> StatisticRecord:
        row = self._update_row("daily_statistics", statistic_id, patch, STATISTIC_PATCHABLE)
        return statistic_from_row(row)

    def delete_statistic(self, statistic_id: str) -> bool:
        return self._delete_row("daily_statistics", statistic_id)

    def fetch_statistics(
        self,
        farm_id: Optional[str] = None,
        date: Optional[str] = None,
        product_id: Optional[str] = None,
        statistic_id: Optional[str] = None,
    ) -> list[StatisticRecord]:
        rows = self._select(
            "daily_statistics",
            {"farm_id": farm_id, "date": date, "product_id": product_id, "id": statistic_id},
            order_by="date DESC, farm_id, product_id",
        )
        return [statistic_from_row(r) for r in rows]

    # ---------- Invoices ----------
    def insert_invoices(self, records: Iterable[InvoiceRecord]) -> list[InvoiceRecord]:
        records = list(records)
        now = _now_iso()
        cols = list(INVOICE_COLUMNS)
        placeholders = ", ".join("?" for _ in cols)
        ids = []

        conn = self._conn()
        cur = conn.cursor()
        try:
            for rec in records:
                row = invoice_to_row(rec)
                row["id"] = _server_id(rec.id)
                row["created_at"] = rec.created_at or now
                row["is_converted"] = int(bool(rec.is_converted))
                row["is_yesterday"] = int(bool(rec.is_yesterday))
                cur.execute(
                    f"INSERT INTO invoices ({', '.join(cols)}) VALUES ({placeholders})",
                    [row[c] for c in cols],
                )
                ids.append(row["id"])
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise _translate(exc) from exc
        finally:
            conn.close()

        out = []
        for iid in ids:
            out.extend(self.fetch_invoices(invoice_id=iid))
        return out

    def update_invoice(self, invoice_id: str, patch: Mapping[str, Any]) -> InvoiceRecord:
        patch = dict(patch)
        for flag in ("is_converted", "is_yesterday"):
            if flag in patch:
                patch[flag] = int(bool(patch[flag]))
        row = self._update_row("invoices", invoice_id, patch, INVOICE_PATCHABLE)
        return invoice_from_row(row)

    def delete_invoice(self, invoice_id: str) -> bool:
        return self._delete_row("invoices", invoice_id)

    def fetch_invoices(
        self,
        farm_id: Optional[str] = None,
        date: Optional[str] = None,
        product_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> list[InvoiceRecord]:
        rows = self._select(
            "invoices",
            {"farm_id": farm_id, "date": date, "product_id": product_id, "id": invoice_id},
            order_by="date DESC, created_at DESC",
        )
        return [invoice_from_row(r) for r in rows]

    def find_invoice(self, invoice_number: str, product_id: str) -> Optional[InvoiceRecord]:
        rows = self._select(
            "invoices",
            {"invoice_number": invoice_number, "product_id": product_id},
            order_by="created_at",
        )
        return invoice_from_row(rows[0]) if rows else None

    # ---------- helpers ----------
    def _select(self, table: str, filters: Mapping[str, Any], order_by: str) -> list[dict]:
        where = [(col, val) for col, val in filters.items() if val is not None]
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(f"{col} = ?" for col, _ in where)
        sql += f" ORDER BY {order_by}"
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(sql, [val for _, val in where])
        rows = [dict(r) for r in cur.fetchall()]
        conn.close()
        return rows

    def _update_row(self, table: str, row_id: str, patch: Mapping[str, Any], allowed: frozenset[str]) -> dict:
        unknown = sorted(set(patch) - allowed)
        if unknown:
            raise SchemaError(f"Unknown or read-only column(s) for {table}: {', '.join(unknown)}")
        values = dict(patch)
        values["updated_at"] = _now_iso()
        assignments = ", ".join(f"{col}=?" for col in values)

        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(f"UPDATE {table} SET {assignments} WHERE id=?", [*values.values(), row_id])
            changed = cur.rowcount > 0
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise _translate(exc) from exc
        finally:
            conn.close()

        if not changed:
            raise NotFoundError(f"{table} row not found: {row_id}")
        rows = self._select(table, {"id": row_id}, order_by="id")
        return rows[0]

    def _delete_row(self, table: str, row_id: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(f"DELETE FROM {table} WHERE id=?", (row_id,))
            removed = cur.rowcount > 0
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise _translate(exc) from exc
        finally:
            conn.close()
        return bool(removed)
