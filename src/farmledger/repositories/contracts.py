from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Protocol

from farmledger.domain.models import (
    Farm,
    InvoiceRecord,
    Product,
    StatisticRecord,
    SyncConflict,
    SyncOperation,
    SyncQueueItem,
)


class LedgerRemote(Protocol):
    """Authoritative ledger store. Upserts are idempotent on the natural key."""

    def upsert_statistics(self, records: Iterable[StatisticRecord]) -> list[StatisticRecord]: ...
    def update_statistic(self, statistic_id: str, patch: Mapping[str, Any]) -> StatisticRecord: ...
    def delete_statistic(self, statistic_id: str) -> bool: ...
    def insert_invoices(self, records: Iterable[InvoiceRecord]) -> list[InvoiceRecord]: ...
    def update_invoice(self, invoice_id: str, patch: Mapping[str, Any]) -> InvoiceRecord: ...
    def delete_invoice(self, invoice_id: str) -> bool: ...
    def fetch_statistics(
        self,
        farm_id: Optional[str] = None,
        date: Optional[str] = None,
        product_id: Optional[str] = None,
        statistic_id: Optional[str] = None,
    ) -> list[StatisticRecord]: ...
    def fetch_invoices(
        self,
        farm_id: Optional[str] = None,
        date: Optional[str] = None,
        product_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> list[InvoiceRecord]: ...
    def find_invoice(self, invoice_number: str, product_id: str) -> Optional[InvoiceRecord]: ...


class CatalogSource(Protocol):
    def list_farms(self) -> list[Farm]: ...
    def list_products(self) -> list[Product]: ...


class QueueStore(Protocol):
    def append(self, operation: SyncOperation, payload: Mapping[str, Any], enqueued_at: str) -> int: ...
    def list_items(self) -> list[SyncQueueItem]: ...
    def get_item(self, item_id: int) -> Optional[SyncQueueItem]: ...
    def delete_item(self, item_id: int) -> bool: ...
    def record_attempt(self, item_id: int, attempted_at: str, error: Optional[str]) -> None: ...
    def flag_items_before(self, cutoff: str, flagged_at: str) -> int: ...
    def add_conflict(self, item: SyncQueueItem, error: str, detected_at: str) -> SyncConflict: ...
    def list_conflicts(self, open_only: bool = True) -> list[SyncConflict]: ...
    def resolve_conflict(self, conflict_id: int, resolved_at: str) -> bool: ...
