import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from conftest import DAY, FARM, PRINTABLE, SIMPLE, build_world, entry, sale, stat_of

from farmledger.domain.errors import NetworkError, NotFoundError, SchemaError
from farmledger.domain.models import InvoiceRecord, RecordStatus, SyncOperation
from farmledger.repositories.serialization import entry_to_payload
from farmledger.repositories.sqlite_ledger import SqliteLedgerRepository


class FlakyLedger(SqliteLedgerRepository):
    fail_with = None
    statistic_update_failures = ()

    def upsert_statistics(self, records):
        if self.fail_with is not None:
            raise self.fail_with
        return super().upsert_statistics(records)

    def update_statistic(self, statistic_id, patch):
        if self.statistic_update_failures:
            exc, *rest = self.statistic_update_failures
            self.statistic_update_failures = rest
            raise exc
        return super().update_statistic(statistic_id, patch)


def _remote_invoice(number: str, product_id: str, cartons: int) -> InvoiceRecord:
    return InvoiceRecord(
        id="",
        farm_id=FARM,
        date=DAY,
        invoice_number=number,
        product_id=product_id,
        total_cartons=cartons,
        created_by="u-2",
        creator_name="Other desk",
    )


def test_reconnect_replays_statistics_before_invoices(tmp_path: Path):
    w = build_world(tmp_path, online=False)
    w.connectivity.subscribe(w.replayer.on_connectivity_change)
    w.service.record_statistics([entry(SIMPLE, 5, 50.0), entry(PRINTABLE, 10, 100.0)])
    created = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 8, 80.0))
    local_id = created.ids[0]
    assert w.queue.pending_count() == 3

    assert w.connectivity.set_online(True) is True

    assert w.queue.pending_count() == 0
    invoices = w.remote.fetch_invoices(farm_id=FARM, date=DAY)
    assert len(invoices) == 1
    assert invoices[0].converted_amount == 3
    assert invoices[0].source_product_id == PRINTABLE
    assert stat_of(w, SIMPLE).current_inventory == 0
    assert stat_of(w, PRINTABLE).current_inventory == 7
    assert stat_of(w, PRINTABLE).current_inventory_weight == pytest.approx(70.0)
    assert w.invoices.status_of(local_id) == RecordStatus.SYNCED
    assert w.invoices.remapped(local_id) == invoices[0].id


def test_replayed_upsert_is_idempotent(tmp_path: Path):
    w = build_world(tmp_path)
    payload = {
        "record_id": "local-abc",
        "entry": entry_to_payload(entry(SIMPLE, 5)),
        "created_by": "u-9",
        "creator_name": "Night shift",
    }
    w.queue.enqueue(SyncOperation.UPSERT_STAT, payload)
    w.queue.enqueue(SyncOperation.UPSERT_STAT, payload)

    result = w.replayer.drain()

    assert result.applied == 2
    assert result.remaining == 0
    rows = w.remote.fetch_statistics(farm_id=FARM, date=DAY)
    assert len(rows) == 1
    assert rows[0].production == 5
    assert rows[0].created_by == "u-9"
    assert rows[0].creator_name == "Night shift"


def test_transient_failure_stops_drain_and_backs_off(tmp_path: Path):
    w = build_world(tmp_path, remote_cls=FlakyLedger, online=False)
    w.service.record_statistics([entry(SIMPLE, 5)])
    w.service.record_statistics([entry(PRINTABLE, 3)])
    w.connectivity.set_online(True)
    w.remote.fail_with = NetworkError("timeout")

    result = w.replayer.drain()

    assert result.applied == 0
    assert result.failed == 1
    assert result.remaining == 2
    first, second = w.queue.list()
    assert first.attempt_count == 1
    assert first.last_error == "timeout"
    assert second.attempt_count == 0
    assert w.replayer.consecutive_failures == 1
    assert w.replayer.next_delay() == 4.0

    w.remote.fail_with = None
    result = w.replayer.drain()

    assert result.applied == 2
    assert w.queue.pending_count() == 0
    assert w.replayer.consecutive_failures == 0
    assert w.replayer.next_delay() == 2.0


def test_backoff_is_capped():
    from farmledger.services.sync_replayer import SyncReplayer

    replayer = SyncReplayer(service=None, queue=None)
    assert [replayer.next_delay(n) for n in (0, 1, 2, 6, 9)] == [2.0, 4.0, 8.0, 128.0, 128.0]


def test_offline_drain_does_nothing(tmp_path: Path):
    w = build_world(tmp_path, online=False)
    w.service.record_statistics([entry(SIMPLE, 5)])

    result = w.replayer.drain()

    assert result.applied == 0
    assert result.remaining == 1
    assert w.queue.list()[0].attempt_count == 0


def test_invoice_already_on_server_counts_as_applied(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 10)])
    w.connectivity.set_online(False)
    created = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 2))
    w.remote.insert_invoices([_remote_invoice("1001", SIMPLE, 2)])
    w.connectivity.set_online(True)

    result = w.replayer.drain()

    assert result.applied == 1
    assert result.conflicts == []
    assert len(w.remote.fetch_invoices()) == 1
    assert w.invoices.status_of(created.ids[0]) == RecordStatus.SYNCED
    assert stat_of(w, SIMPLE).current_inventory == 8


def test_invoice_that_no_longer_fits_becomes_a_conflict(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 10), entry(PRINTABLE, 0)])
    w.connectivity.set_online(False)
    created = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 8))
    local_id = created.ids[0]

    # another desk lowered production while this one was offline
    w.remote.update_statistic(stat_of(w, SIMPLE).id, {"production": 3, "current_inventory": 3})
    w.connectivity.set_online(True)

    result = w.replayer.drain()

    assert result.applied == 0
    assert result.failed == 1
    assert result.remaining == 0
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.operation == SyncOperation.INSERT_INVOICE
    assert conflict.payload["local_id"] == local_id
    assert w.remote.fetch_invoices() == []
    assert w.invoices.get(local_id) is None

    assert [c.id for c in w.queue.conflicts()] == [conflict.id]
    assert w.queue.resolve_conflict(conflict.id) is True
    assert w.queue.resolve_conflict(conflict.id) is False
    assert w.queue.conflicts() == []
    assert len(w.queue.conflicts(open_only=False)) == 1


def test_schema_rejection_propagates_and_keeps_item(tmp_path: Path):
    w = build_world(tmp_path, remote_cls=FlakyLedger, online=False)
    w.service.record_statistics([entry(SIMPLE, 5)])
    w.connectivity.set_online(True)
    w.remote.fail_with = SchemaError("PGRST204 unknown column")

    with pytest.raises(SchemaError):
        w.replayer.drain()

    item = w.queue.list()[0]
    assert item.attempt_count == 1
    assert "PGRST204" in item.last_error
    assert w.replayer.busy is False


def test_concurrent_drain_returns_immediately(tmp_path: Path):
    w = build_world(tmp_path, online=False)
    w.service.record_statistics([entry(SIMPLE, 5)])
    w.connectivity.set_online(True)

    with w.replayer._lock:
        assert w.replayer.busy is True
        result = w.replayer.drain()

    assert result.applied == 0
    assert result.remaining == 1
    assert w.queue.list()[0].attempt_count == 0


def test_replayed_delete_of_missing_record_is_a_noop(tmp_path: Path):
    w = build_world(tmp_path)
    saved = w.service.record_statistics([entry(SIMPLE, 5)])
    stat_id = saved.ids[0]
    w.connectivity.set_online(False)

    queued = w.service.delete_statistic(stat_id)
    assert queued.status == RecordStatus.OFFLINE
    w.remote.delete_statistic(stat_id)
    w.connectivity.set_online(True)

    result = w.replayer.drain()

    assert result.applied == 1
    assert result.conflicts == []
    assert w.queue.pending_count() == 0


def test_offline_edit_replays_as_update(tmp_path: Path):
    w = build_world(tmp_path)
    saved = w.service.record_statistics([entry(SIMPLE, 10)])
    stat_id = saved.ids[0]
    w.connectivity.set_online(False)

    queued = w.service.update_statistic(stat_id, {"production": 12})
    assert queued.status == RecordStatus.OFFLINE
    assert w.queue.list()[0].operation == SyncOperation.UPDATE_STAT
    assert stat_of(w, SIMPLE).production == 10

    w.connectivity.set_online(True)
    result = w.replayer.drain()

    assert result.applied == 1
    assert stat_of(w, SIMPLE).production == 12
    assert stat_of(w, SIMPLE).current_inventory == 12
    assert w.statistics.status_of(stat_id) == RecordStatus.SYNCED


def test_offline_edit_that_no_longer_fits_restores_previous_version(tmp_path: Path):
    w = build_world(tmp_path)
    saved = w.service.record_statistics([entry(SIMPLE, 10)])
    stat_id = saved.ids[0]
    w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 7))
    w.connectivity.set_online(False)

    w.service.update_statistic(stat_id, {"production": 8})
    assert w.statistics.get(stat_id).production == 8

    w.remote.insert_invoices([_remote_invoice("2002", SIMPLE, 2)])
    w.connectivity.set_online(True)
    result = w.replayer.drain()

    assert len(result.conflicts) == 1
    assert result.conflicts[0].operation == SyncOperation.UPDATE_STAT
    assert stat_of(w, SIMPLE).production == 10
    restored = w.statistics.get(stat_id)
    assert restored.production == 10
    assert w.statistics.status_of(stat_id) == RecordStatus.SYNCED


def test_recompute_item_refreshes_inventory_on_replay(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 10)])
    w.remote.insert_invoices([_remote_invoice("3003", SIMPLE, 4)])
    w.queue.enqueue(SyncOperation.UPDATE_STAT, {"id": None, "key": [FARM, DAY, SIMPLE], "patch": {}})

    result = w.replayer.drain()

    assert result.applied == 1
    assert stat_of(w, SIMPLE).current_inventory == 6
    assert stat_of(w, SIMPLE).usage_display == 4


def _world_with_one_sale(tmp_path: Path):
    w = build_world(tmp_path, remote_cls=FlakyLedger)
    w.service.record_statistics([entry(SIMPLE, 10)])
    created = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 4))
    assert stat_of(w, SIMPLE).current_inventory == 6
    return w, created.ids[0]


def _drain_with_refresh_dropped_once(w):
    w.connectivity.set_online(True)
    w.remote.statistic_update_failures = [NetworkError("connection reset")]

    first = w.replayer.drain()

    assert first.applied == 1
    assert first.conflicts == []
    recompute = w.queue.list()
    assert [item.operation for item in recompute] == [SyncOperation.UPDATE_STAT]
    assert recompute[0].payload == {"id": None, "key": [FARM, DAY, SIMPLE], "patch": {}}

    second = w.replayer.drain()

    assert second.applied == 1
    assert w.queue.pending_count() == 0


def test_replayed_delete_whose_refresh_drops_recomputes_on_next_drain(tmp_path: Path):
    w, invoice_id = _world_with_one_sale(tmp_path)
    w.connectivity.set_online(False)
    assert w.service.delete_invoice(invoice_id).status == RecordStatus.OFFLINE

    _drain_with_refresh_dropped_once(w)

    assert w.remote.fetch_invoices() == []
    assert stat_of(w, SIMPLE).current_inventory == 10


def test_replayed_edit_whose_refresh_drops_recomputes_on_next_drain(tmp_path: Path):
    w, invoice_id = _world_with_one_sale(tmp_path)
    w.connectivity.set_online(False)
    assert w.service.update_invoice(invoice_id, {"total_cartons": 2}).status == RecordStatus.OFFLINE

    _drain_with_refresh_dropped_once(w)

    assert w.remote.fetch_invoices()[0].total_cartons == 2
    assert stat_of(w, SIMPLE).current_inventory == 8


def test_refresh_failure_after_invoice_lands_keeps_the_invoice(tmp_path: Path):
    w = build_world(tmp_path, remote_cls=FlakyLedger)
    w.service.record_statistics([entry(SIMPLE, 10)])
    w.remote.statistic_update_failures = [NotFoundError("row vanished")]

    created = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 4))

    assert created.status == RecordStatus.SYNCED
    assert len(w.remote.fetch_invoices()) == 1
    assert w.invoices.get(created.ids[0]) is not None
    assert w.invoices.status_of(created.ids[0]) == RecordStatus.SYNCED
    queued = w.queue.list()
    assert [item.operation for item in queued] == [SyncOperation.UPDATE_STAT]
    assert queued[0].payload["patch"] == {}
    assert stat_of(w, SIMPLE).current_inventory == 10

    result = w.replayer.drain()

    assert result.applied == 1
    assert stat_of(w, SIMPLE).current_inventory == 6


def test_items_left_behind_are_reported_stale(tmp_path: Path):
    w = build_world(tmp_path, remote_cls=FlakyLedger, online=False)
    w.service.record_statistics([entry(SIMPLE, 5)])
    w.connectivity.set_online(True)
    w.remote.fail_with = NetworkError("unreachable")

    result = w.replayer.drain(now=datetime.now() + timedelta(hours=25))

    assert result.remaining == 1
    assert len(result.stale) == 1
    assert w.queue.list()[0].flagged_at is not None


class _OnePass(threading.Event):
    def wait(self, timeout=None):
        self.waited = timeout
        self.set()
        return True


def test_periodic_loop_drains_then_waits_the_interval(tmp_path: Path):
    w = build_world(tmp_path, online=False)
    w.service.record_statistics([entry(SIMPLE, 5)])
    w.connectivity.set_online(True)
    stop = _OnePass()

    w.replayer.run_periodic(stop)

    assert w.queue.pending_count() == 0
    assert stop.waited == w.replayer.interval_seconds
