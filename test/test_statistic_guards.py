from pathlib import Path

import pytest
from conftest import DAY, FARM, PRINTABLE, SIMPLE, build_world, entry, sale, stat_of

from farmledger.domain.errors import DependentUsageError, InsufficientStockError, ValidationError
from farmledger.domain.models import FarmMode, RecordStatus
from farmledger.domain.usage import attribute_usage


def test_invariant_holds_for_every_statistic_after_writes(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 5, 50.0, previous=2, previous_weight=20.0), entry(PRINTABLE, 10, 100.0)])
    w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 9, 90.0))
    w.service.create_invoice_with_conversion(sale("1002", PRINTABLE, 2, 20.0))

    invoices = w.remote.fetch_invoices(farm_id=FARM, date=DAY)
    for stat in w.remote.fetch_statistics(farm_id=FARM, date=DAY):
        usage = attribute_usage(invoices, stat.product_id)
        assert stat.current_inventory == stat.previous_balance + stat.production - usage.units
        assert stat.current_inventory_weight == pytest.approx(
            stat.previous_balance_weight + stat.production_weight - usage.weight, abs=1e-6
        )


def test_record_statistics_upserts_on_natural_key(tmp_path: Path):
    w = build_world(tmp_path)
    first = w.service.record_statistics([entry(SIMPLE, 5)])
    second = w.service.record_statistics([entry(SIMPLE, 7)])

    assert first.status == RecordStatus.SYNCED
    assert second.ids == first.ids
    rows = w.remote.fetch_statistics(farm_id=FARM, date=DAY)
    assert len(rows) == 1
    assert rows[0].production == 7
    assert rows[0].created_by == "u-1"
    assert rows[0].creator_name == "Registrar"


def test_edit_guard_rejects_capacity_below_usage_without_mutating(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 10)])
    w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 7))
    stat = stat_of(w, SIMPLE)
    assert stat.current_inventory == 3

    with pytest.raises(InsufficientStockError) as exc:
        w.service.update_statistic(stat.id, {"production": 5})

    assert exc.value.shortfall == 2
    after = stat_of(w, SIMPLE)
    assert after.production == 10
    assert after.current_inventory == 3
    assert w.statistics.get(stat.id).production == 10
    assert w.queue.pending_count() == 0


def test_edit_within_capacity_recomputes_current_inventory(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 10)])
    w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 7))
    stat = stat_of(w, SIMPLE)

    result = w.service.update_statistic(stat.id, {"production": 8, "previous_balance": 1})

    assert result.status == RecordStatus.SYNCED
    after = stat_of(w, SIMPLE)
    assert after.production == 8
    assert after.previous_balance == 1
    assert after.current_inventory == 2
    assert after.usage_display == 7


def test_delete_guard_requires_invoices_removed_first(tmp_path: Path):
    w = build_world(tmp_path)
    w.service.record_statistics([entry(SIMPLE, 10)])
    created = w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 7))
    stat = stat_of(w, SIMPLE)

    with pytest.raises(DependentUsageError) as exc:
        w.service.delete_statistic(stat.id)
    assert exc.value.usage_units == 7
    assert stat_of(w, SIMPLE) is not None

    w.service.delete_invoice(created.ids[0])
    assert stat_of(w, SIMPLE).current_inventory == 10

    result = w.service.delete_statistic(stat.id)
    assert result.status == RecordStatus.SYNCED
    assert stat_of(w, SIMPLE) is None
    assert w.statistics.get(stat.id) is None


def test_declared_stock_farm_back_derives_production(tmp_path: Path):
    w = build_world(tmp_path, mode=FarmMode.DECLARED_STOCK)
    w.service.record_statistics([entry(SIMPLE, 20, previous=4)])
    w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 5))

    stat = stat_of(w, SIMPLE)
    assert stat.previous_balance == 0
    assert stat.production == 20
    assert stat.current_inventory == 15

    # a recount after the sale: the counted stock is authoritative
    w.service.record_statistics([entry(SIMPLE, 12)])
    stat = stat_of(w, SIMPLE)
    assert stat.previous_balance == 0
    assert stat.production == 17
    assert stat.current_inventory == 12


def test_declared_stock_update_uses_declared_fields_only(tmp_path: Path):
    w = build_world(tmp_path, mode=FarmMode.DECLARED_STOCK)
    w.service.record_statistics([entry(SIMPLE, 20)])
    w.service.create_invoice_with_conversion(sale("1001", SIMPLE, 5))
    stat = stat_of(w, SIMPLE)

    with pytest.raises(ValidationError):
        w.service.update_statistic(stat.id, {"production": 3})

    w.service.update_statistic(stat.id, {"declared_stock": 0})
    stat = stat_of(w, SIMPLE)
    assert stat.production == 5
    assert stat.current_inventory == 0


@pytest.mark.parametrize(
    "bad",
    [
        entry(SIMPLE, -1),
        entry(SIMPLE, 10_001),
        entry(SIMPLE, 5, weight=150_001.0),
        entry(SIMPLE, 5, previous=-2),
    ],
)
def test_implausible_or_negative_entries_are_rejected(tmp_path: Path, bad):
    w = build_world(tmp_path)
    with pytest.raises(ValidationError):
        w.service.record_statistics([bad])
    assert w.remote.fetch_statistics() == []
    assert w.statistics.records() == []


def test_product_must_be_assigned_to_farm(tmp_path: Path):
    w = build_world(tmp_path)
    other = w.remote.add_product("Jumbo", product_id="p-jumbo")
    w.catalog.reload()

    with pytest.raises(ValidationError):
        w.service.record_statistics([entry(other, 5)])


def test_batch_is_validated_before_anything_is_staged(tmp_path: Path):
    w = build_world(tmp_path)
    with pytest.raises(ValidationError):
        w.service.record_statistics([entry(SIMPLE, 5), entry(PRINTABLE, -3)])
    assert w.statistics.records() == []
    assert w.remote.fetch_statistics() == []
