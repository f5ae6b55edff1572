from __future__ import annotations

from typing import Iterable

from farmledger.domain.models import InvoiceRecord, Usage


def attribute_usage(invoices: Iterable[InvoiceRecord], target_product_id: str) -> Usage:
    """Units and weight physically deducted from ``target_product_id`` by a day's invoices.

    A converted invoice deducts from two products at once: the product being
    sold loses ``total - converted_amount`` and the lender loses
    ``converted_amount``. Weight follows the same proportions.
    """
    units = 0
    weight = 0.0
    for inv in invoices:
        total = int(inv.total_cartons or 0)
        total_weight = float(inv.total_weight or 0.0)
        converted = int(inv.converted_amount or 0)

        if inv.product_id == target_product_id:
            direct = max(0, total - converted)
            units += direct
            weight += (direct / total) * total_weight if total > 0 else 0.0

        if inv.is_converted and inv.source_product_id == target_product_id:
            units += converted
            weight += (converted / total) * total_weight if total > 0 else 0.0

    return Usage(units=units, weight=weight)


def display_sales(invoices: Iterable[InvoiceRecord], product_id: str) -> Usage:
    """Nominal sales of a product, regardless of where the stock came from."""
    units = 0
    weight = 0.0
    for inv in invoices:
        if inv.product_id == product_id:
            units += int(inv.total_cartons or 0)
            weight += float(inv.total_weight or 0.0)
    return Usage(units=units, weight=weight)
