from __future__ import annotations

from dataclasses import asdict, fields
from typing import Any, Mapping

from farmledger.domain.models import InvoiceRecord, StatisticEntry, StatisticRecord

STATISTIC_COLUMNS = tuple(f.name for f in fields(StatisticRecord))
INVOICE_COLUMNS = tuple(f.name for f in fields(InvoiceRecord))

_STAT_INTS = {"previous_balance", "production", "usage_display", "current_inventory"}
_STAT_FLOATS = {
    "previous_balance_weight",
    "production_weight",
    "usage_display_weight",
    "current_inventory_weight",
    "separation_amount",
}
_INVOICE_INTS = {"total_cartons", "converted_amount"}
_INVOICE_FLOATS = {"total_weight"}
_INVOICE_BOOLS = {"is_converted", "is_yesterday"}

# Columns an operator may patch; everything else is derived or audit data.
STATISTIC_PATCHABLE = frozenset(
    {
        "previous_balance",
        "previous_balance_weight",
        "production",
        "production_weight",
        "usage_display",
        "usage_display_weight",
        "current_inventory",
        "current_inventory_weight",
        "separation_amount",
        "updated_at",
    }
)
INVOICE_PATCHABLE = frozenset(
    {
        "invoice_number",
        "date",
        "product_id",
        "total_cartons",
        "total_weight",
        "source_product_id",
        "converted_amount",
        "is_converted",
        "driver_name",
        "driver_phone",
        "plate_number",
        "description",
        "is_yesterday",
        "updated_at",
    }
)


def _coerce(column: str, value: Any, ints: set[str], floats: set[str], bools: set[str] = frozenset()) -> Any:
    if column in ints:
        return int(value or 0)
    if column in floats:
        return float(value or 0.0)
    if column in bools:
        return bool(value)
    if value is None:
        return None
    return str(value)


def statistic_from_row(row: Mapping[str, Any]) -> StatisticRecord:
    values = {
        col: _coerce(col, row.get(col), _STAT_INTS, _STAT_FLOATS)
        for col in STATISTIC_COLUMNS
        if col in row
    }
    values["date"] = str(row["date"])[:10]
    return StatisticRecord(**values)


def invoice_from_row(row: Mapping[str, Any]) -> InvoiceRecord:
    values = {
        col: _coerce(col, row.get(col), _INVOICE_INTS, _INVOICE_FLOATS, _INVOICE_BOOLS)
        for col in INVOICE_COLUMNS
        if col in row
    }
    values["date"] = str(row["date"])[:10]
    return InvoiceRecord(**values)


def statistic_to_row(record: StatisticRecord) -> dict[str, Any]:
    return asdict(record)


def invoice_to_row(record: InvoiceRecord) -> dict[str, Any]:
    return asdict(record)


def entry_to_payload(entry: StatisticEntry) -> dict[str, Any]:
    return asdict(entry)


def entry_from_payload(payload: Mapping[str, Any]) -> StatisticEntry:
    return StatisticEntry(
        farm_id=str(payload["farm_id"]),
        date=str(payload["date"])[:10],
        product_id=str(payload["product_id"]),
        quantity=int(payload.get("quantity") or 0),
        quantity_weight=float(payload.get("quantity_weight") or 0.0),
        previous_balance=int(payload.get("previous_balance") or 0),
        previous_balance_weight=float(payload.get("previous_balance_weight") or 0.0),
        separation_amount=float(payload.get("separation_amount") or 0.0),
    )

