from __future__ import annotations

from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from farmledger.domain.models import InvoiceRecord, StatisticRecord


class ReportingService:
    def __init__(self, remote, catalog):
        self.remote = remote
        self.catalog = catalog

    def statistics_between(self, start_date: str, end_date: str, farm_id: Optional[str] = None) -> list[StatisticRecord]:
        rows = self.remote.fetch_statistics(farm_id=farm_id)
        return sorted(
            (r for r in rows if start_date <= r.date <= end_date),
            key=lambda r: (r.date, r.farm_id, r.product_id),
        )

    def invoices_between(self, start_date: str, end_date: str, farm_id: Optional[str] = None) -> list[InvoiceRecord]:
        rows = self.remote.fetch_invoices(farm_id=farm_id)
        return sorted(
            (r for r in rows if start_date <= r.date <= end_date),
            key=lambda r: (r.date, r.farm_id, r.invoice_number),
        )

    def _farm_name(self, farm_id: str) -> str:
        farm = next((f for f in self.catalog.farms() if f.id == farm_id), None)
        return farm.name if farm else farm_id

    def export_ledger_excel(self, path: str, start_date: str, end_date: str, farm_id: Optional[str] = None) -> None:
        wb = Workbook()

        def kg(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        def add_table(ws, name: str, start_row: int, end_row: int, end_col: int):
            ref = f"A{start_row}:{get_column_letter(end_col)}{end_row}"
            tab = Table(displayName=name, ref=ref)
            tab.tableStyleInfo = TableStyleInfo(name="TableStyleMedium9", showRowStripes=True, showColumnStripes=False)
            ws.add_table(tab)

        stats = self.statistics_between(start_date, end_date, farm_id)
        invoices = self.invoices_between(start_date, end_date, farm_id)

        # -------- Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = "Farm ledger"
        ws["A1"].font = Font(bold=True, size=14)
        ws["A3"] = "Window"
        ws["B3"] = f"{start_date}  ->  {end_date}"
        ws["A4"] = "Farm"
        ws["B4"] = self._farm_name(farm_id) if farm_id else "All farms"

        rows = [
            ("Statistic entries", len(stats), False),
            ("Cartons produced", sum(s.production for s in stats), False),
            ("Invoices", len(invoices), False),
            ("Cartons sold", sum(i.total_cartons for i in invoices), False),
            ("Weight sold (kg)", sum(i.total_weight for i in invoices), True),
            ("Converted invoices", sum(1 for i in invoices if i.is_converted), False),
            ("Cartons borrowed", sum(i.converted_amount for i in invoices if i.is_converted), False),
        ]
        for offset, (label, val, is_weight) in enumerate(rows):
            r = 6 + offset
            ws[f"A{r}"] = label
            ws[f"B{r}"] = val
            if is_weight:
                kg(ws[f"B{r}"])
        set_widths(ws, {"A": 24, "B": 34})

        # -------- Statistics --------
        ws2 = wb.create_sheet("Statistics")
        ws2.append([
            "Date", "Farm", "Product",
            "Previous", "Previous kg", "Production", "Production kg",
            "Sales", "Sales kg", "Current", "Current kg",
            "Separation", "Created by",
        ])
        bold_row(ws2, 1)
        for out_row, s in enumerate(stats, start=2):
            ws2.append([
                s.date, self._farm_name(s.farm_id), self.catalog.product_name(s.product_id),
                s.previous_balance, s.previous_balance_weight, s.production, s.production_weight,
                s.usage_display, s.usage_display_weight, s.current_inventory, s.current_inventory_weight,
                s.separation_amount, s.creator_name or "",
            ])
            for col in ("E", "G", "I", "K"):
                kg(ws2[f"{col}{out_row}"])
        ws2.freeze_panes = "A2"
        set_widths(ws2, {"A": 12, "B": 22, "C": 22, "M": 20})
        if ws2.max_row >= 2:
            add_table(ws2, "Statistics", 1, ws2.max_row, 13)

        # -------- Invoices --------
        ws3 = wb.create_sheet("Invoices")
        ws3.append([
            "Date", "Farm", "Invoice #", "Product",
            "Cartons", "Weight kg", "Borrowed from", "Borrowed",
            "Driver", "Phone", "Plate", "Description", "Created by",
        ])
        bold_row(ws3, 1)
        for out_row, inv in enumerate(invoices, start=2):
            ws3.append([
                inv.date, self._farm_name(inv.farm_id), inv.invoice_number, self.catalog.product_name(inv.product_id),
                inv.total_cartons, inv.total_weight,
                self.catalog.product_name(inv.source_product_id) if inv.is_converted else "",
                inv.converted_amount if inv.is_converted else 0,
                inv.driver_name or "", inv.driver_phone or "", inv.plate_number or "",
                inv.description or "", inv.creator_name or "",
            ])
            kg(ws3[f"F{out_row}"])
        ws3.freeze_panes = "A2"
        set_widths(ws3, {"A": 12, "B": 22, "C": 14, "D": 22, "G": 22, "I": 18, "L": 30, "M": 20})
        if ws3.max_row >= 2:
            add_table(ws3, "Invoices", 1, ws3.max_row, 13)

        wb.save(path)
