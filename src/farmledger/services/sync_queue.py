from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional

from farmledger.domain.models import (
    InvoiceRecord,
    StatisticRecord,
    SyncConflict,
    SyncOperation,
    SyncQueueItem,
)
from farmledger.repositories.contracts import QueueStore

log = logging.getLogger("farmledger.sync")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_ts(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


class OfflineSyncQueue:
    """Durable FIFO of mutations that could not reach the remote ledger."""

    def __init__(
        self,
        store: QueueStore,
        retention_hours: float = 24,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.retention = timedelta(hours=retention_hours)
        self.clock = clock or datetime.now

    def _now(self, now: Optional[datetime] = None) -> str:
        return format_ts(now or self.clock())

    def enqueue(self, operation: SyncOperation, payload: Mapping[str, Any]) -> int:
        operation = SyncOperation(operation)
        seq = self.store.append(operation, payload, self._now())
        log.info("sync_item_enqueued seq=%s op=%s", seq, operation.value)
        return seq

    def list(self) -> list[SyncQueueItem]:
        return self.store.list_items()

    def get(self, item_id: int) -> Optional[SyncQueueItem]:
        return self.store.get_item(item_id)

    def remove(self, item_id: int) -> bool:
        return self.store.delete_item(item_id)

    def record_attempt(self, item_id: int, error: Optional[str] = None) -> None:
        self.store.record_attempt(item_id, self._now(), error)

    def pending_count(self) -> int:
        return len(self.store.list_items())

    def is_stale(self, item: SyncQueueItem, now: Optional[datetime] = None) -> bool:
        cutoff = self._now((now or self.clock()) - self.retention)
        return item.enqueued_at < cutoff

    def stale(self, now: Optional[datetime] = None) -> list[SyncQueueItem]:
        return [item for item in self.list() if self.is_stale(item, now)]

    def flag_stale(self, now: Optional[datetime] = None) -> int:
        """Mark items past the retention window for operator review. Nothing is dropped."""
        moment = now or self.clock()
        flagged = self.store.flag_items_before(self._now(moment - self.retention), self._now(moment))
        if flagged:
            log.warning("sync_items_stale count=%s", flagged)
        return flagged

    def remove_pending_insert(self, local_id: str) -> list[int]:
        """Drop every queued mutation that targets a record the server has never seen."""
        removed = []
        for item in self.list():
            payload = item.payload
            targets = {payload.get("record_id"), payload.get("local_id"), payload.get("id")}
            if local_id in targets:
                self.store.delete_item(item.id)
                removed.append(item.id)
        if removed:
            log.info("sync_items_cancelled local_id=%s seqs=%s", local_id, removed)
        return removed

    # ---------- conflicts ----------
    def record_conflict(self, item: SyncQueueItem, error: str) -> SyncConflict:
        return self.store.add_conflict(item, error, self._now())

    def conflicts(self, open_only: bool = True) -> list[SyncConflict]:
        return self.store.list_conflicts(open_only=open_only)

    def resolve_conflict(self, conflict_id: int) -> bool:
        return self.store.resolve_conflict(conflict_id, self._now())

    # ---------- presentation ----------
    def pending_for_display(
        self,
        server_statistics: Iterable[StatisticRecord] = (),
        server_invoices: Iterable[InvoiceRecord] = (),
    ) -> list[SyncQueueItem]:
        """Queued inserts that have no server copy yet.

        Storage is never deduplicated; this only hides an item once the same
        natural key is already visible on the server.
        """
        stat_keys = {r.key for r in server_statistics}
        invoice_keys = {r.key for r in server_invoices}
        visible = []
        for item in self.list():
            if item.operation == SyncOperation.UPSERT_STAT:
                entry = item.payload.get("entry") or {}
                key = (entry.get("farm_id"), entry.get("date"), entry.get("product_id"))
                if key in stat_keys:
                    continue
            elif item.operation == SyncOperation.INSERT_INVOICE:
                record = item.payload.get("record") or {}
                if (record.get("invoice_number"), record.get("product_id")) in invoice_keys:
                    continue
            visible.append(item)
        return visible
