from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

import requests

from farmledger.domain.errors import ConflictError, NetworkError, NotFoundError, RemoteError, SchemaError
from farmledger.domain.models import Farm, FarmMode, InvoiceRecord, Product, ProductCategory, StatisticRecord
from farmledger.repositories.serialization import (
    invoice_from_row,
    invoice_to_row,
    statistic_from_row,
    statistic_to_row,
)

log = logging.getLogger("farmledger.sync")

_SCHEMA_CODES = {"PGRST204", "PGRST100", "42703", "42P01"}
_CONFLICT_CODES = {"23505"}

# Audit columns filled in by the server.
_SERVER_COLUMNS = ("created_at", "updated_at")


def _payload(row: dict[str, Any]) -> dict[str, Any]:
    out = {k: v for k, v in row.items() if k not in _SERVER_COLUMNS}
    if str(out.get("id") or "").startswith("local-"):
        out.pop("id")
    return out


class SupabaseLedgerClient:
    """Remote ledger over the PostgREST API exposed by Supabase."""

    STATISTICS = "daily_statistics"
    INVOICES = "invoices"

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        table: str,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            r = self.session.request(
                method,
                url,
                params=dict(params or {}),
                json=json,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            log.warning("remote_unreachable method=%s table=%s error=%s", method, table, e)
            raise NetworkError(f"{method} {table} failed: {e}") from e
        except requests.RequestException as e:
            raise RemoteError(f"{method} {table} failed: {e}") from e

        if r.status_code >= 400:
            raise self._translate(method, table, r)
        if r.status_code == 204 or not r.content:
            return []
        return r.json()

    @staticmethod
    def _translate(method: str, table: str, r: requests.Response) -> Exception:
        try:
            body = r.json()
        except ValueError:
            body = {}
        code = str(body.get("code") or "") if isinstance(body, dict) else ""
        message = str(body.get("message") or r.text) if isinstance(body, dict) else r.text
        detail = f"{method} {table} -> {r.status_code} {code} {message}".strip()

        if r.status_code == 409 or code in _CONFLICT_CODES:
            return ConflictError(detail)
        if code in _SCHEMA_CODES or r.status_code == 400:
            return SchemaError(detail)
        if r.status_code >= 500 or r.status_code in (408, 429):
            return NetworkError(detail)
        return RemoteError(detail)

    @staticmethod
    def _eq_filters(**filters: Optional[str]) -> dict[str, str]:
        return {col: f"eq.{val}" for col, val in filters.items() if val is not None}

    # ---------- Catalog ----------
    def list_products(self) -> list[Product]:
        rows = self._request("GET", "products", params={"select": "*", "order": "name"})
        return [
            Product(
                id=str(r["id"]),
                name=str(r["name"]),
                category=ProductCategory(r["category"]) if r.get("category") else ProductCategory.from_name(str(r["name"])),
                has_weight=bool(r.get("has_weight", True)),
            )
            for r in rows
        ]

    def list_farms(self) -> list[Farm]:
        rows = self._request("GET", "farms", params={"select": "*", "order": "name"})
        return [
            Farm(
                id=str(r["id"]),
                name=str(r["name"]),
                mode=FarmMode(r.get("mode") or FarmMode.CARRY_FORWARD.value),
                product_ids=tuple(str(p) for p in (r.get("product_ids") or [])),
                active=bool(r.get("active", True)),
            )
            for r in rows
        ]

    # ---------- Statistics ----------
    def upsert_statistics(self, records: Iterable[StatisticRecord]) -> list[StatisticRecord]:
        body = [_payload(statistic_to_row(r)) for r in records]
        rows = self._request(
            "POST",
            self.STATISTICS,
            params={"on_conflict": "farm_id,date,product_id"},
            json=body,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return [statistic_from_row(r) for r in rows]

    def update_statistic(self, statistic_id: str, patch: Mapping[str, Any]) -> StatisticRecord:
        rows = self._request(
            "PATCH",
            self.STATISTICS,
            params=self._eq_filters(id=statistic_id),
            json=dict(patch),
            prefer="return=representation",
        )
        if not rows:
            raise NotFoundError(f"Statistic not found: {statistic_id}")
        return statistic_from_row(rows[0])

    def delete_statistic(self, statistic_id: str) -> bool:
        rows = self._request(
            "DELETE",
            self.STATISTICS,
            params=self._eq_filters(id=statistic_id),
            prefer="return=representation",
        )
        return bool(rows)

    def fetch_statistics(
        self,
        farm_id: Optional[str] = None,
        date: Optional[str] = None,
        product_id: Optional[str] = None,
        statistic_id: Optional[str] = None,
    ) -> list[StatisticRecord]:
        params = self._eq_filters(farm_id=farm_id, date=date, product_id=product_id, id=statistic_id)
        params.update({"select": "*", "order": "date.desc"})
        return [statistic_from_row(r) for r in self._request("GET", self.STATISTICS, params=params)]

    # ---------- Invoices ----------
    def insert_invoices(self, records: Iterable[InvoiceRecord]) -> list[InvoiceRecord]:
        body = [_payload(invoice_to_row(r)) for r in records]
        rows = self._request("POST", self.INVOICES, json=body, prefer="return=representation")
        return [invoice_from_row(r) for r in rows]

    def update_invoice(self, invoice_id: str, patch: Mapping[str, Any]) -> InvoiceRecord:
        rows = self._request(
            "PATCH",
            self.INVOICES,
            params=self._eq_filters(id=invoice_id),
            json=dict(patch),
            prefer="return=representation",
        )
        if not rows:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        return invoice_from_row(rows[0])

    def delete_invoice(self, invoice_id: str) -> bool:
        rows = self._request(
            "DELETE",
            self.INVOICES,
            params=self._eq_filters(id=invoice_id),
            prefer="return=representation",
        )
        return bool(rows)

    def fetch_invoices(
        self,
        farm_id: Optional[str] = None,
        date: Optional[str] = None,
        product_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> list[InvoiceRecord]:
        params = self._eq_filters(farm_id=farm_id, date=date, product_id=product_id, id=invoice_id)
        params.update({"select": "*", "order": "created_at.desc"})
        return [invoice_from_row(r) for r in self._request("GET", self.INVOICES, params=params)]

    def find_invoice(self, invoice_number: str, product_id: str) -> Optional[InvoiceRecord]:
        params = self._eq_filters(invoice_number=invoice_number, product_id=product_id)
        params.update({"select": "*", "limit": "1"})
        rows = self._request("GET", self.INVOICES, params=params)
        return invoice_from_row(rows[0]) if rows else None
