from datetime import datetime, timedelta
from pathlib import Path

import pytest
from conftest import DAY, FARM, PRINTABLE, SIMPLE, build_world, entry, sale, stat_of

from farmledger.domain.errors import NetworkError, SchemaError
from farmledger.domain.models import RecordStatus, SyncOperation
from farmledger.repositories.sqlite_ledger import SqliteLedgerRepository
from farmledger.repositories.sync_queue_repo import SqliteQueueStore
from farmledger.services.sync_queue import OfflineSyncQueue


class FlakyLedger(SqliteLedgerRepository):
    fail_with = None

    def upsert_statistics(self, records):
        if self.fail_with is not None:
            raise self.fail_with
        return super().upsert_statistics(records)


def _queue(tmp_path: Path, clock=None) -> OfflineSyncQueue:
    store = SqliteQueueStore(tmp_path / "local.db")
    store.init_db()
    return OfflineSyncQueue(store, clock=clock)


def test_queue_is_fifo_and_survives_restart(tmp_path: Path):
    queue = _queue(tmp_path)
    a = queue.enqueue(SyncOperation.UPSERT_STAT, {"n": 1})
    b = queue.enqueue(SyncOperation.INSERT_INVOICE, {"n": 2})
    c = queue.enqueue(SyncOperation.DELETE_INVOICE, {"n": 3})

    reopened = _queue(tmp_path)
    items = reopened.list()

    assert [i.id for i in items] == [a, b, c]
    assert a < b < c
    assert [i.operation for i in items] == [
        SyncOperation.UPSERT_STAT,
        SyncOperation.INSERT_INVOICE,
        SyncOperation.DELETE_INVOICE,
    ]
    assert items[1].payload == {"n": 2}


def test_sequence_numbers_are_never_reused(tmp_path: Path):
    queue = _queue(tmp_path)
    queue.enqueue(SyncOperation.UPSERT_STAT, {})
    last = queue.enqueue(SyncOperation.UPSERT_STAT, {})

    assert queue.remove(last) is True
    assert queue.remove(last) is False
    assert queue.enqueue(SyncOperation.UPSERT_STAT, {}) > last


def test_record_attempt_tracks_errors(tmp_path: Path):
    queue = _queue(tmp_path)
    seq = queue.enqueue(SyncOperation.UPSERT_STAT, {})

    queue.record_attempt(seq, "timeout")
    queue.record_attempt(seq, "timeout again")

    item = queue.get(seq)
    assert item.attempt_count == 2
    assert item.last_error == "timeout again"
    assert item.last_attempt_at is not None


def test_items_past_retention_are_flagged_not_dropped(tmp_path: Path):
    now = [datetime(2024, 3, 1, 8, 0, 0)]
    queue = _queue(tmp_path, clock=lambda: now[0])
    seq = queue.enqueue(SyncOperation.INSERT_INVOICE, {})

    assert queue.stale() == []
    now[0] += timedelta(hours=25)

    assert [i.id for i in queue.stale()] == [seq]
    assert queue.flag_stale() == 1
    assert queue.flag_stale() == 0
    assert queue.get(seq).flagged_at == "2024-03-02 09:00:00"
    assert queue.pending_count() == 1


def test_display_dedup_hides_items_already_on_server(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 10)])
    w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 2))

    w.queue.enqueue(
        SyncOperation.UPSERT_STAT,
        {"record_id": "local-1", "entry": {"farm_id": FARM, "date": DAY, "product_id": SIMPLE}},
    )
    w.queue.enqueue(
        SyncOperation.UPSERT_STAT,
        {"record_id": "local-2", "entry": {"farm_id": FARM, "date": DAY, "product_id": PRINTABLE}},
    )
    w.queue.enqueue(SyncOperation.INSERT_INVOICE, {"local_id": "local-3", "record": {"invoice_number": "1001", "product_id": SIMPLE}})
    w.queue.enqueue(SyncOperation.INSERT_INVOICE, {"local_id": "local-4", "record": {"invoice_number": "1002", "product_id": SIMPLE}})

    visible = w.queue.pending_for_display(w.remote.fetch_statistics(), w.remote.fetch_invoices())

    assert [i.payload.get("record_id") or i.payload.get("local_id") for i in visible] == ["local-2", "local-4"]
    assert w.queue.pending_count() == 4


def test_offline_write_is_queued_and_reported_as_success(tmp_path: Path):
    w = build_world(tmp_path, online=False)

    result = w.service.record_statistics([entry(SIMPLE, 5)])

    assert result.status == RecordStatus.OFFLINE
    assert result.queued
    assert len(result.queue_item_ids) == 1
    item = w.queue.get(result.queue_item_ids[0])
    assert item.operation == SyncOperation.UPSERT_STAT
    assert item.payload["entry"]["quantity"] == 5
    assert w.statistics.status_of(result.ids[0]) == RecordStatus.OFFLINE
    assert w.statistics.get(result.ids[0]).current_inventory == 5
    assert w.remote.fetch_statistics() == []


def test_network_failure_mid_write_is_queued(tmp_path: Path):
    w = build_world(tmp_path, remote_cls=FlakyLedger)
    w.remote.fail_with = NetworkError("connection reset")

    result = w.service.record_statistics([entry(SIMPLE, 5)])

    assert result.status == RecordStatus.OFFLINE
    assert w.queue.pending_count() == 1
    assert w.statistics.status_of(result.ids[0]) == RecordStatus.OFFLINE


def test_non_transient_failure_rolls_back_and_is_not_queued(tmp_path: Path):
    w = build_world(tmp_path, remote_cls=FlakyLedger)
    w.remote.fail_with = SchemaError("PGRST204 column missing")

    with pytest.raises(SchemaError):
        w.service.record_statistics([entry(SIMPLE, 5)])

    assert w.statistics.records() == []
    assert w.queue.pending_count() == 0


def test_offline_invoice_uses_pending_statistic_and_updates_it_locally(tmp_path: Path):
    w = build_world(tmp_path, online=False)
    w.service.record_statistics([entry(SIMPLE, 5), entry(PRINTABLE, 10)])

    result = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 8))

    assert result.status == RecordStatus.OFFLINE
    local = w.invoices.get(result.ids[0])
    assert local.converted_amount == 3
    assert w.statistics.find(FARM, DAY, SIMPLE).current_inventory == 0
    assert w.statistics.find(FARM, DAY, PRINTABLE).current_inventory == 7
    assert [i.operation for i in w.queue.list()] == [
        SyncOperation.UPSERT_STAT,
        SyncOperation.UPSERT_STAT,
        SyncOperation.INSERT_INVOICE,
    ]


def test_deleting_queued_records_cancels_them_before_replay(tmp_path: Path):
    w = build_world(tmp_path, online=False)
    stats = w.service.record_statistics([entry(SIMPLE, 5)])
    invoice = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 2))

    result = w.service.delete_invoice(invoice.ids[0])

    assert result.status == RecordStatus.ROLLED_BACK
    assert [i.operation for i in w.queue.list()] == [SyncOperation.UPSERT_STAT]
    assert w.statistics.find(FARM, DAY, SIMPLE).current_inventory == 5

    assert w.service.delete_statistic(stats.ids[0]).status == RecordStatus.ROLLED_BACK
    assert w.queue.pending_count() == 0
    assert w.statistics.records() == []


def test_editing_a_queued_statistic_queues_a_fresh_upsert(tmp_path: Path):
    w = build_world(tmp_path, online=False)
    stats = w.service.record_statistics([entry(SIMPLE, 5)])

    result = w.service.update_statistic(stats.ids[0], {"production": 9})

    assert result.status == RecordStatus.OFFLINE
    ops = [i.operation for i in w.queue.list()]
    assert ops == [SyncOperation.UPSERT_STAT, SyncOperation.UPSERT_STAT]
    assert w.queue.list()[-1].payload["entry"]["quantity"] == 9
    assert stat_of(w, SIMPLE) is None
