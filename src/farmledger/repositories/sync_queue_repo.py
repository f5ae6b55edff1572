from __future__ import annotations

import json
import sqlite3
from typing import Any, Mapping, Optional, Sequence

from farmledger.domain.models import SyncConflict, SyncOperation, SyncQueueItem
from farmledger.repositories.sqlite_base import Migration, SqliteStore

_OPERATIONS = ", ".join(f"'{op.value}'" for op in SyncOperation)


class SqliteQueueStore(SqliteStore):
    """Append-only log of pending mutations.

    ``seq`` is AUTOINCREMENT so sequence numbers are never reused, even after
    the newest item is removed; replay order is ``ORDER BY seq``.
    """

    def migrations(self) -> Sequence[Migration]:
        return [(1, self._migration_v1_base)]

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS sync_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                operation TEXT NOT NULL CHECK(operation IN ({_OPERATIONS})),
                payload TEXT NOT NULL,
                enqueued_at TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0 CHECK(attempt_count >= 0),
                last_attempt_at TEXT,
                last_error TEXT,
                flagged_at TEXT
            )
            """
        )
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS sync_conflicts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_seq INTEGER NOT NULL,
                operation TEXT NOT NULL CHECK(operation IN ({_OPERATIONS})),
                payload TEXT NOT NULL,
                error TEXT NOT NULL,
                detected_at TEXT NOT NULL,
                resolved_at TEXT
            )
            """
        )

    @staticmethod
    def _item(r: sqlite3.Row) -> SyncQueueItem:
        return SyncQueueItem(
            id=int(r["seq"]),
            operation=SyncOperation(r["operation"]),
            payload=json.loads(r["payload"]),
            enqueued_at=str(r["enqueued_at"]),
            attempt_count=int(r["attempt_count"]),
            last_attempt_at=r["last_attempt_at"],
            last_error=r["last_error"],
            flagged_at=r["flagged_at"],
        )

    @staticmethod
    def _conflict(r: sqlite3.Row) -> SyncConflict:
        return SyncConflict(
            id=int(r["id"]),
            item_id=int(r["item_seq"]),
            operation=SyncOperation(r["operation"]),
            payload=json.loads(r["payload"]),
            error=str(r["error"]),
            detected_at=str(r["detected_at"]),
            resolved_at=r["resolved_at"],
        )

    def append(self, operation: SyncOperation, payload: Mapping[str, Any], enqueued_at: str) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO sync_queue (operation, payload, enqueued_at) VALUES (?, ?, ?)",
            (SyncOperation(operation).value, json.dumps(dict(payload), ensure_ascii=False), enqueued_at),
        )
        seq = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return seq

    def list_items(self) -> list[SyncQueueItem]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT * FROM sync_queue ORDER BY seq")
        rows = cur.fetchall()
        conn.close()
        return [self._item(r) for r in rows]

    def get_item(self, item_id: int) -> Optional[SyncQueueItem]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT * FROM sync_queue WHERE seq=?", (int(item_id),))
        r = cur.fetchone()
        conn.close()
        return self._item(r) if r else None

    def delete_item(self, item_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM sync_queue WHERE seq=?", (int(item_id),))
        removed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(removed)

    def record_attempt(self, item_id: int, attempted_at: str, error: Optional[str]) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE sync_queue
            SET attempt_count = attempt_count + 1, last_attempt_at=?, last_error=?
            WHERE seq=?
            """,
            (attempted_at, error, int(item_id)),
        )
        conn.commit()
        conn.close()

    def flag_items_before(self, cutoff: str, flagged_at: str) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "UPDATE sync_queue SET flagged_at=? WHERE flagged_at IS NULL AND enqueued_at < ?",
            (flagged_at, cutoff),
        )
        changed = int(cur.rowcount)
        conn.commit()
        conn.close()
        return changed

    def add_conflict(self, item: SyncQueueItem, error: str, detected_at: str) -> SyncConflict:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO sync_conflicts (item_seq, operation, payload, error, detected_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (int(item.id), item.operation.value, json.dumps(item.payload, ensure_ascii=False), error, detected_at),
        )
        cid = int(cur.lastrowid)
        conn.commit()
        cur.execute("SELECT * FROM sync_conflicts WHERE id=?", (cid,))
        row = cur.fetchone()
        conn.close()
        return self._conflict(row)

    def list_conflicts(self, open_only: bool = True) -> list[SyncConflict]:
        conn = self._conn()
        cur = conn.cursor()
        sql = "SELECT * FROM sync_conflicts"
        if open_only:
            sql += " WHERE resolved_at IS NULL"
        cur.execute(sql + " ORDER BY id")
        rows = cur.fetchall()
        conn.close()
        return [self._conflict(r) for r in rows]

    def resolve_conflict(self, conflict_id: int, resolved_at: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "UPDATE sync_conflicts SET resolved_at=? WHERE id=? AND resolved_at IS NULL",
            (resolved_at, int(conflict_id)),
        )
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)
