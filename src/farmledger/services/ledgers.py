from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any, Generic, Hashable, Iterable, Mapping, Optional, Sequence, TypeVar

from farmledger.domain.errors import DuplicateInvoiceError, NotFoundError
from farmledger.domain.models import InvoiceRecord, RecordStatus, StatisticRecord

R = TypeVar("R", StatisticRecord, InvoiceRecord)

LOCAL_ID_PREFIX = "local-"
PENDING = (RecordStatus.OPTIMISTIC, RecordStatus.OFFLINE)


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def is_local_id(record_id: Optional[str]) -> bool:
    return bool(record_id) and str(record_id).startswith(LOCAL_ID_PREFIX)


@dataclass
class Tracked(Generic[R]):
    record: R
    status: RecordStatus
    previous: Optional[R] = None


class _RecordArena(Generic[R]):
    """Id-indexed records with their sync status and a temp-id remap table."""

    def __init__(self, remote):
        self.remote = remote
        self._entries: dict[str, Tracked[R]] = {}
        self._remap: dict[str, str] = {}

    @staticmethod
    def key_of(record: R) -> Hashable:
        return record.key

    # ---------- lookups ----------
    def resolve(self, record_id: str) -> str:
        seen = set()
        while record_id in self._remap and record_id not in seen:
            seen.add(record_id)
            record_id = self._remap[record_id]
        return record_id

    def remapped(self, local_id: str) -> Optional[str]:
        resolved = self.resolve(local_id)
        return resolved if resolved != local_id else None

    def get(self, record_id: str) -> Optional[R]:
        entry = self._entries.get(self.resolve(record_id))
        return entry.record if entry else None

    def require(self, record_id: str) -> R:
        record = self.get(record_id)
        if record is None:
            raise NotFoundError(f"Record not found: {record_id}")
        return record

    def status_of(self, record_id: str) -> Optional[RecordStatus]:
        entry = self._entries.get(self.resolve(record_id))
        return entry.status if entry else None

    def records(self) -> list[R]:
        return [e.record for e in self._entries.values()]

    def pending(self) -> list[R]:
        return [e.record for e in self._entries.values() if e.status in PENDING]

    def _id_for_key(self, key: Hashable) -> Optional[str]:
        for rid, entry in self._entries.items():
            if self.key_of(entry.record) == key:
                return rid
        return None

    def find_key(self, key: Hashable) -> Optional[R]:
        rid = self._id_for_key(key)
        return self._entries[rid].record if rid else None

    # ---------- optimistic lifecycle ----------
    def _put(self, record: R, status: RecordStatus) -> str:
        existing = self._entries.get(record.id)
        if existing is None:
            previous = None
        elif existing.status == RecordStatus.SYNCED:
            previous = existing.record
        else:
            previous = existing.previous
        self._entries[record.id] = Tracked(record=record, status=status, previous=previous)
        return record.id

    def commit(self, local_id: str, server_record: R) -> str:
        """Replace a pending entry with the server's copy; temp ids are remapped."""
        rid = self.resolve(local_id)
        self._entries.pop(rid, None)
        if rid != server_record.id:
            self._remap[rid] = server_record.id
        self._entries[server_record.id] = Tracked(record=server_record, status=RecordStatus.SYNCED)
        return server_record.id

    def mark_offline(self, record_id: str) -> None:
        entry = self._entries.get(self.resolve(record_id))
        if entry:
            entry.status = RecordStatus.OFFLINE

    def roll_back(self, record_id: str) -> RecordStatus:
        rid = self.resolve(record_id)
        entry = self._entries.pop(rid, None)
        if entry and entry.previous is not None:
            self._entries[rid] = Tracked(record=entry.previous, status=RecordStatus.SYNCED)
        return RecordStatus.ROLLED_BACK

    def discard(self, record_id: str) -> None:
        self._entries.pop(self.resolve(record_id), None)

    def restore(self, record: R) -> None:
        self._entries[record.id] = Tracked(record=record, status=RecordStatus.SYNCED)

    def patch_local(self, record: R) -> None:
        """Swap in a locally derived version without touching its sync status."""
        entry = self._entries.get(self.resolve(record.id))
        if entry:
            entry.record = record

    def load(self, server_records: Iterable[R], in_scope) -> None:
        """Replace synced entries in scope with ``server_records``; pending entries win."""
        server_records = list(server_records)
        for rid in [rid for rid, e in self._entries.items() if e.status == RecordStatus.SYNCED and in_scope(e.record)]:
            del self._entries[rid]
        pending_keys = {self.key_of(e.record) for e in self._entries.values() if e.status in PENDING}
        for record in server_records:
            current = self._entries.get(record.id)
            if current and current.status in PENDING:
                continue
            if self.key_of(record) in pending_keys:
                continue
            self._entries[record.id] = Tracked(record=record, status=RecordStatus.SYNCED)


def _day_scope(farm_id: Optional[str], date: Optional[str]):
    def in_scope(record) -> bool:
        return (farm_id is None or record.farm_id == farm_id) and (date is None or record.date == date)

    return in_scope


class StatisticLedger(_RecordArena[StatisticRecord]):
    """Statistic records keyed by (farm_id, date, product_id); at most one live record per key."""

    def refresh(self, farm_id: Optional[str] = None, date: Optional[str] = None) -> list[StatisticRecord]:
        records = self.remote.fetch_statistics(farm_id=farm_id, date=date)
        self.load(records, _day_scope(farm_id, date))
        return records

    def fetch_day(self, farm_id: str, date: str) -> dict[str, StatisticRecord]:
        return {r.product_id: r for r in self.remote.fetch_statistics(farm_id=farm_id, date=date)}

    def find(self, farm_id: str, date: str, product_id: str) -> Optional[StatisticRecord]:
        return self.find_key((farm_id, date, product_id))

    def fetch_remote(self, statistic_id: Optional[str] = None, key: Optional[Sequence[str]] = None) -> Optional[StatisticRecord]:
        """Server copy by id, falling back to the natural key when the id is unknown there."""
        sid = self.resolve(statistic_id) if statistic_id else None
        if sid and not is_local_id(sid):
            found = self.remote.fetch_statistics(statistic_id=sid)
            if found:
                return found[0]
        if key:
            farm_id, date, product_id = key
            found = self.remote.fetch_statistics(farm_id=farm_id, date=date, product_id=product_id)
            if found:
                return found[0]
        return None

    def for_day(self, farm_id: str, date: str) -> dict[str, StatisticRecord]:
        return {r.product_id: r for r in self.records() if r.farm_id == farm_id and r.date == date}

    def stage(self, record: StatisticRecord, status: RecordStatus = RecordStatus.OPTIMISTIC) -> str:
        existing_id = self._id_for_key(record.key)
        if existing_id is not None:
            record = replace(record, id=existing_id)
        elif not record.id:
            record = replace(record, id=new_local_id())
        return self._put(record, status)

    def push_upsert(self, staged_ids: Iterable[str]) -> list[StatisticRecord]:
        staged = [self.require(rid) for rid in staged_ids]
        stored = self.remote.upsert_statistics(staged)
        by_key = {r.key: r for r in stored}
        for rec in staged:
            server = by_key.get(rec.key)
            if server is not None:
                self.commit(rec.id, server)
        return stored

    def push_update(self, statistic_id: str, patch: Mapping[str, Any]) -> StatisticRecord:
        server = self.remote.update_statistic(self.resolve(statistic_id), patch)
        self.commit(statistic_id, server)
        return server

    def push_delete(self, statistic_id: str) -> bool:
        removed = self.remote.delete_statistic(self.resolve(statistic_id))
        self.discard(statistic_id)
        return removed


class InvoiceLedger(_RecordArena[InvoiceRecord]):
    """Invoices keyed by id; (invoice_number, product_id) is unique."""

    def refresh(self, farm_id: Optional[str] = None, date: Optional[str] = None) -> list[InvoiceRecord]:
        records = self.remote.fetch_invoices(farm_id=farm_id, date=date)
        self.load(records, _day_scope(farm_id, date))
        return records

    def fetch_day(self, farm_id: str, date: str) -> list[InvoiceRecord]:
        return self.remote.fetch_invoices(farm_id=farm_id, date=date)

    def find_remote(self, invoice_number: str, product_id: str) -> Optional[InvoiceRecord]:
        return self.remote.find_invoice(invoice_number, product_id)

    def fetch_remote(self, invoice_id: Optional[str] = None, key: Optional[Sequence[str]] = None) -> Optional[InvoiceRecord]:
        iid = self.resolve(invoice_id) if invoice_id else None
        if iid and not is_local_id(iid):
            found = self.remote.fetch_invoices(invoice_id=iid)
            if found:
                return found[0]
        if key:
            invoice_number, product_id = key
            return self.remote.find_invoice(invoice_number, product_id)
        return None

    def find(self, invoice_number: str, product_id: str) -> Optional[InvoiceRecord]:
        return self.find_key((invoice_number, product_id))

    def for_day(self, farm_id: str, date: str) -> list[InvoiceRecord]:
        return [r for r in self.records() if r.farm_id == farm_id and r.date == date]

    def stage(self, record: InvoiceRecord, status: RecordStatus = RecordStatus.OPTIMISTIC) -> str:
        if not record.id:
            record = replace(record, id=new_local_id())
        clash = self._id_for_key(record.key)
        if clash is not None and clash != self.resolve(record.id):
            raise DuplicateInvoiceError(
                f"Invoice {record.invoice_number} is already recorded for this product."
            )
        return self._put(record, status)

    def push_insert(self, staged_ids: Iterable[str]) -> list[InvoiceRecord]:
        staged = [self.require(rid) for rid in staged_ids]
        stored = self.remote.insert_invoices(staged)
        by_key = {r.key: r for r in stored}
        for rec in staged:
            server = by_key.get(rec.key)
            if server is not None:
                self.commit(rec.id, server)
        return stored

    def push_update(self, invoice_id: str, patch: Mapping[str, Any]) -> InvoiceRecord:
        server = self.remote.update_invoice(self.resolve(invoice_id), patch)
        self.commit(invoice_id, server)
        return server

    def push_delete(self, invoice_id: str) -> bool:
        removed = self.remote.delete_invoice(self.resolve(invoice_id))
        self.discard(invoice_id)
        return removed
