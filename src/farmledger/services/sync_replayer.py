from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from farmledger.domain.errors import (
    AppError,
    ConflictError,
    NetworkError,
    RemoteError,
    SchemaError,
    ValidationError,
)
from farmledger.domain.models import DrainResult, Identity, SyncOperation, SyncQueueItem, WriteResult
from farmledger.repositories.serialization import entry_from_payload, invoice_from_row
from farmledger.services.reconciliation_service import ReconciliationService
from farmledger.services.sync_queue import OfflineSyncQueue

log = logging.getLogger("farmledger.sync")

BASE_DELAY_SECONDS = 2.0
MAX_BACKOFF_EXPONENT = 6


class SyncReplayer:
    """Drains the offline queue through the reconciliation service, oldest first.

    One drain runs at a time; a second caller returns immediately. Each item
    either fully commits or fully fails before the next one is attempted.
    """

    def __init__(
        self,
        service: ReconciliationService,
        queue: OfflineSyncQueue,
        base_delay: float = BASE_DELAY_SECONDS,
        interval_seconds: float = 30.0,
    ):
        self.service = service
        self.queue = queue
        self.base_delay = float(base_delay)
        self.interval_seconds = float(interval_seconds)
        self.consecutive_failures = 0
        self._lock = threading.Lock()
        self._handlers: dict[SyncOperation, Callable[[Mapping[str, Any]], WriteResult]] = {
            SyncOperation.UPSERT_STAT: self._upsert_statistic,
            SyncOperation.UPDATE_STAT: self._update_statistic,
            SyncOperation.DELETE_STAT: self._delete_statistic,
            SyncOperation.INSERT_INVOICE: self._insert_invoice,
            SyncOperation.UPDATE_INVOICE: self._update_invoice,
            SyncOperation.DELETE_INVOICE: self._delete_invoice,
        }

    # ---------- dispatch ----------
    def _upsert_statistic(self, payload: Mapping[str, Any]) -> WriteResult:
        identity = self.service.identity
        author = Identity(
            user_id=payload.get("created_by") or identity.user_id,
            user_name=payload.get("creator_name") or identity.user_name,
        )
        return self.service.record_statistics([entry_from_payload(payload["entry"])], is_syncing=True, author=author)

    def _update_statistic(self, payload: Mapping[str, Any]) -> WriteResult:
        return self.service.update_statistic(
            payload.get("id"), payload.get("patch") or {}, is_syncing=True, key=payload.get("key")
        )

    def _delete_statistic(self, payload: Mapping[str, Any]) -> WriteResult:
        return self.service.delete_statistic(payload.get("id"), is_syncing=True, key=payload.get("key"))

    def _insert_invoice(self, payload: Mapping[str, Any]) -> WriteResult:
        return self.service.insert_invoice(invoice_from_row(payload["record"]), is_syncing=True)

    def _update_invoice(self, payload: Mapping[str, Any]) -> WriteResult:
        return self.service.update_invoice(
            payload.get("id"), payload.get("patch") or {}, is_syncing=True, key=payload.get("key")
        )

    def _delete_invoice(self, payload: Mapping[str, Any]) -> WriteResult:
        return self.service.delete_invoice(payload.get("id"), is_syncing=True, key=payload.get("key"))

    def apply(self, item: SyncQueueItem) -> WriteResult:
        return self._handlers[item.operation](item.payload)

    # ---------- drain ----------
    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def drain(self, now: Optional[datetime] = None) -> DrainResult:
        if not self._lock.acquire(blocking=False):
            log.info("sync_drain_skipped reason=already_running")
            return DrainResult(remaining=self.queue.pending_count())
        try:
            return self._drain(now)
        finally:
            self._lock.release()

    def drain_if_pending(self, now: Optional[datetime] = None) -> DrainResult:
        if self.queue.pending_count() == 0:
            return DrainResult()
        return self.drain(now)

    def _drain(self, now: Optional[datetime]) -> DrainResult:
        result = DrainResult()
        if not self.service.online:
            result.remaining = self.queue.pending_count()
            log.info("sync_drain_skipped reason=offline pending=%s", result.remaining)
            return result

        items = self.queue.list()
        log.info("sync_drain_started pending=%s", len(items))
        stopped = False
        for item in items:
            try:
                self.apply(item)
            except ConflictError as exc:
                self.queue.remove(item.id)
                result.applied += 1
                log.info("sync_item_already_applied seq=%s op=%s detail=%s", item.id, item.operation.value, exc)
            except NetworkError as exc:
                self.queue.record_attempt(item.id, str(exc))
                result.failed += 1
                stopped = True
                log.warning("sync_item_failed seq=%s op=%s error=%s", item.id, item.operation.value, exc)
                break
            except ValidationError as exc:
                self.queue.remove(item.id)
                conflict = self.queue.record_conflict(item, str(exc))
                self.service.discard_pending(item.operation, item.payload)
                result.failed += 1
                result.conflicts.append(conflict)
                log.warning(
                    "sync_conflict seq=%s op=%s conflict_id=%s error=%s",
                    item.id,
                    item.operation.value,
                    conflict.id,
                    exc,
                )
            except (SchemaError, RemoteError) as exc:
                self.queue.record_attempt(item.id, str(exc))
                log.error("sync_item_rejected seq=%s op=%s error=%s", item.id, item.operation.value, exc)
                raise
            else:
                self.queue.remove(item.id)
                result.applied += 1
                log.info("sync_item_applied seq=%s op=%s", item.id, item.operation.value)

        result.remaining = self.queue.pending_count()
        if result.remaining:
            self.queue.flag_stale(now)
            result.stale = self.queue.stale(now)
        self.consecutive_failures = self.consecutive_failures + 1 if stopped else 0
        log.info(
            "sync_drain_finished applied=%s failed=%s remaining=%s stale=%s",
            result.applied,
            result.failed,
            result.remaining,
            len(result.stale),
        )
        return result

    # ---------- triggers ----------
    def next_delay(self, failures: Optional[int] = None) -> float:
        """Backoff before the next attempt: base * 2^min(failures, 6)."""
        failures = self.consecutive_failures if failures is None else failures
        return self.base_delay * (2 ** min(max(failures, 0), MAX_BACKOFF_EXPONENT))

    def on_connectivity_change(self, online: bool) -> Optional[DrainResult]:
        if not online:
            return None
        return self.drain_if_pending()

    def run_periodic(self, stop_event: threading.Event) -> None:
        """Drain while online until ``stop_event`` is set."""
        while not stop_event.is_set():
            if self.service.online:
                try:
                    self.drain_if_pending()
                except AppError:
                    log.exception("sync_periodic_failed")
                    self.consecutive_failures += 1
            wait = self.next_delay() if self.consecutive_failures else self.interval_seconds
            stop_event.wait(wait)
