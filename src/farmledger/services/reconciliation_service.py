from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from farmledger.domain.errors import (
    AppError,
    ConflictError,
    DependentUsageError,
    DuplicateInvoiceError,
    InsufficientStockError,
    MissingStatisticError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from farmledger.domain.models import (
    ConversionPlan,
    FarmMode,
    Identity,
    InvoiceRecord,
    InvoiceRequest,
    RecordStatus,
    StatisticEntry,
    StatisticRecord,
    SyncOperation,
    Usage,
    WriteResult,
)
from farmledger.domain.usage import attribute_usage, display_sales
from farmledger.repositories.serialization import entry_to_payload, invoice_to_row
from farmledger.services.catalog import Catalog
from farmledger.services.connectivity import ConnectivityMonitor
from farmledger.services.ledgers import InvoiceLedger, StatisticLedger, is_local_id
from farmledger.services.sync_queue import OfflineSyncQueue

log = logging.getLogger("farmledger.ledger")

MAX_UNITS_PER_ENTRY = 10_000
MAX_WEIGHT_PER_ENTRY = 150_000.0

STATISTIC_EDITABLE = frozenset(
    {
        "previous_balance",
        "previous_balance_weight",
        "production",
        "production_weight",
        "declared_stock",
        "declared_stock_weight",
        "separation_amount",
    }
)
_CARRY_FORWARD_ONLY = frozenset({"previous_balance", "previous_balance_weight", "production", "production_weight"})
_DECLARED_ONLY = frozenset({"declared_stock", "declared_stock_weight"})

INVOICE_EDITABLE = frozenset(
    {
        "invoice_number",
        "date",
        "product_id",
        "total_cartons",
        "total_weight",
        "driver_name",
        "driver_phone",
        "plate_number",
        "description",
        "is_yesterday",
    }
)
# Changing any of these can change how much stock the invoice borrows.
_REPLAN_FIELDS = frozenset({"date", "product_id", "total_cartons"})

_DERIVED_FIELDS = (
    "previous_balance",
    "previous_balance_weight",
    "production",
    "production_weight",
    "usage_display",
    "usage_display_weight",
    "current_inventory",
    "current_inventory_weight",
    "separation_amount",
)

Triple = tuple[str, str, str]


# ---------- farm mode rules ----------
def _carry_forward(entry: StatisticEntry, usage: Usage) -> tuple[int, float, int, float]:
    return entry.previous_balance, entry.previous_balance_weight, entry.quantity, entry.quantity_weight


def _declared_stock(entry: StatisticEntry, usage: Usage) -> tuple[int, float, int, float]:
    # quantity is the counted stock; production is whatever explains it
    return 0, 0.0, entry.quantity + usage.units, entry.quantity_weight + usage.weight


@dataclass(frozen=True)
class ModeRule:
    build: Callable[[StatisticEntry, Usage], tuple[int, float, int, float]]
    carries_balance: bool
    guards_capacity: bool


MODE_RULES: dict[FarmMode, ModeRule] = {
    FarmMode.CARRY_FORWARD: ModeRule(build=_carry_forward, carries_balance=True, guards_capacity=True),
    FarmMode.DECLARED_STOCK: ModeRule(build=_declared_stock, carries_balance=False, guards_capacity=False),
}


def _derived_patch(record: StatisticRecord) -> dict[str, Any]:
    return {name: getattr(record, name) for name in _DERIVED_FIELDS}


def _as_key(value: Optional[Sequence[str]]) -> Optional[tuple[str, ...]]:
    return tuple(value) if value else None


class ReconciliationService:
    """Keeps statistics consistent with the invoices that deplete them.

    Every write is validated, staged optimistically in the ledgers and then
    committed to the remote store. A write that cannot reach the remote store
    is queued instead. Replay calls the same operations with
    ``is_syncing=True``, which reads guard inputs from the server and never
    queues.
    """

    def __init__(
        self,
        statistics: StatisticLedger,
        invoices: InvoiceLedger,
        catalog: Catalog,
        queue: OfflineSyncQueue,
        identity: Identity,
        connectivity: Optional[ConnectivityMonitor] = None,
        max_units_per_entry: int = MAX_UNITS_PER_ENTRY,
        max_weight_per_entry: float = MAX_WEIGHT_PER_ENTRY,
    ):
        self.statistics = statistics
        self.invoices = invoices
        self.catalog = catalog
        self.queue = queue
        self.identity = identity
        self.connectivity = connectivity
        self.max_units = int(max_units_per_entry)
        self.max_weight = float(max_weight_per_entry)

    @property
    def online(self) -> bool:
        return True if self.connectivity is None else bool(self.connectivity.online)

    # ---------- pure rules ----------
    def recompute(
        self,
        record: StatisticRecord,
        usage: Usage,
        display: Optional[Usage] = None,
        mode: Optional[FarmMode] = None,
    ) -> StatisticRecord:
        """Derive current inventory: previous balance + production - usage."""
        rule = MODE_RULES[mode or self.catalog.mode_for(record.farm_id)]
        prev, prev_w = record.previous_balance, record.previous_balance_weight
        if not rule.carries_balance:
            prev, prev_w = 0, 0.0
        if display is None:
            display = Usage(record.usage_display, record.usage_display_weight)
        return replace(
            record,
            previous_balance=prev,
            previous_balance_weight=prev_w,
            usage_display=display.units,
            usage_display_weight=display.weight,
            current_inventory=prev + record.production - usage.units,
            current_inventory_weight=prev_w + record.production_weight - usage.weight,
        )

    def build_statistic(
        self,
        entry: StatisticEntry,
        usage: Usage,
        mode: FarmMode,
        display: Optional[Usage] = None,
        existing: Optional[StatisticRecord] = None,
        author: Optional[Identity] = None,
    ) -> StatisticRecord:
        prev, prev_w, production, production_w = MODE_RULES[mode].build(entry, usage)
        author = author or self.identity
        base = existing or StatisticRecord(
            id="",
            farm_id=entry.farm_id,
            date=entry.date,
            product_id=entry.product_id,
            created_by=author.user_id,
            creator_name=author.user_name,
        )
        record = replace(
            base,
            previous_balance=prev,
            previous_balance_weight=prev_w,
            production=production,
            production_weight=production_w,
            separation_amount=entry.separation_amount,
        )
        return self.recompute(record, usage, display=display, mode=mode)

    def validate_entry(self, entry: StatisticEntry) -> None:
        name = self.catalog.product_name(entry.product_id)
        for label, value in (
            ("quantity", entry.quantity),
            ("quantity weight", entry.quantity_weight),
            ("previous balance", entry.previous_balance),
            ("previous balance weight", entry.previous_balance_weight),
            ("separation amount", entry.separation_amount),
        ):
            if value < 0:
                raise ValidationError(f"{name}: {label} cannot be negative.")
        if entry.quantity > self.max_units:
            raise ValidationError(f"{name}: {entry.quantity} cartons is not a plausible entry.")
        if entry.quantity_weight > self.max_weight:
            raise ValidationError(f"{name}: {entry.quantity_weight} kg is not a plausible entry.")

    def validate_write(self, proposed: StatisticRecord, usage: Usage, mode: Optional[FarmMode] = None) -> None:
        """Capacity may never shrink below what invoices already took."""
        mode = mode or self.catalog.mode_for(proposed.farm_id)
        for name in ("previous_balance", "previous_balance_weight", "production", "production_weight"):
            if getattr(proposed, name) < 0:
                raise ValidationError(f"{name.replace('_', ' ').capitalize()} cannot be negative.")
        if not MODE_RULES[mode].guards_capacity:
            return
        if proposed.capacity < usage.units:
            shortfall = usage.units - proposed.capacity
            raise InsufficientStockError(
                f"{self.catalog.product_name(proposed.product_id)}: {usage.units} cartons already sold "
                f"but only {proposed.capacity} would be available.",
                shortfall=shortfall,
            )

    def validate_delete(self, record: StatisticRecord, usage: Usage) -> None:
        if usage.units > 0:
            raise DependentUsageError(
                f"{self.catalog.product_name(record.product_id)} on {record.date} still has "
                f"{usage.units} cartons of invoices; delete them first.",
                usage_units=usage.units,
            )

    def validate_request(self, request: InvoiceRequest) -> None:
        if not str(request.invoice_number or "").strip():
            raise ValidationError("Invoice number is required.")
        if int(request.total_cartons) <= 0:
            raise ValidationError("Cartons must be >= 1.")
        if int(request.total_cartons) > self.max_units:
            raise ValidationError(f"{request.total_cartons} cartons is not a plausible invoice.")
        if float(request.total_weight) < 0:
            raise ValidationError("Weight cannot be negative.")
        if float(request.total_weight) > self.max_weight:
            raise ValidationError(f"{request.total_weight} kg is not a plausible invoice.")

    # ---------- day state ----------
    def _day_state(
        self, farm_id: str, date: str, is_syncing: bool
    ) -> tuple[dict[str, StatisticRecord], list[InvoiceRecord]]:
        if is_syncing:
            return self.statistics.fetch_day(farm_id, date), self.invoices.fetch_day(farm_id, date)
        if self.online:
            try:
                self.statistics.refresh(farm_id, date)
                self.invoices.refresh(farm_id, date)
            except NetworkError as exc:
                log.info("day_refresh_skipped farm=%s date=%s error=%s", farm_id, date, exc)
        return self.statistics.for_day(farm_id, date), self.invoices.for_day(farm_id, date)

    def _recomputed(self, stat: StatisticRecord, invoices: Iterable[InvoiceRecord], mode: FarmMode) -> StatisticRecord:
        invoices = list(invoices)
        usage = attribute_usage(invoices, stat.product_id)
        return self.recompute(stat, usage, display=display_sales(invoices, stat.product_id), mode=mode)

    def _without(self, invoices: Iterable[InvoiceRecord], invoice_id: Optional[str]) -> list[InvoiceRecord]:
        if not invoice_id:
            return list(invoices)
        skip = self.invoices.resolve(invoice_id)
        return [inv for inv in invoices if self.invoices.resolve(inv.id) != skip]

    # ---------- write protocol ----------
    def _commit(
        self,
        push: Callable[[], WriteResult],
        queued: Sequence[tuple[SyncOperation, Mapping[str, Any]]],
        ids: Sequence[str],
        is_syncing: bool,
        on_offline: Callable[[], None],
        on_failure: Callable[[], None],
        force_queue: bool = False,
    ) -> WriteResult:
        if is_syncing:
            try:
                return push()
            except NetworkError:
                on_offline()
                raise
        if force_queue or not self.online:
            return self._enqueue(queued, ids, on_offline, reason="offline" if not self.online else "pending insert")
        try:
            return push()
        except NetworkError as exc:
            return self._enqueue(queued, ids, on_offline, reason=str(exc))
        except AppError:
            on_failure()
            raise

    def _enqueue(
        self,
        queued: Sequence[tuple[SyncOperation, Mapping[str, Any]]],
        ids: Sequence[str],
        on_offline: Callable[[], None],
        reason: str,
    ) -> WriteResult:
        seqs = tuple(self.queue.enqueue(op, payload) for op, payload in queued)
        on_offline()
        log.warning("write_queued ids=%s seqs=%s reason=%s", list(ids), list(seqs), reason)
        return WriteResult(
            status=RecordStatus.OFFLINE,
            ids=tuple(ids),
            queue_item_ids=seqs,
            message="Saved locally; queued for sync.",
        )

    # ---------- statistics ----------
    def record_statistics(
        self,
        entries: Iterable[StatisticEntry],
        is_syncing: bool = False,
        author: Optional[Identity] = None,
    ) -> WriteResult:
        """Upsert one day's entries; the natural key decides insert vs update."""
        entries = list(entries)
        if not entries:
            raise ValidationError("Nothing to save.")
        author = author or self.identity

        days: dict[tuple[str, str], tuple[dict[str, StatisticRecord], list[InvoiceRecord]]] = {}
        prepared: list[tuple[StatisticEntry, StatisticRecord]] = []
        for entry in entries:
            self.catalog.ensure_farm_product(entry.farm_id, entry.product_id)
            self.validate_entry(entry)
            mode = self.catalog.mode_for(entry.farm_id)
            day = (entry.farm_id, entry.date)
            if day not in days:
                days[day] = self._day_state(entry.farm_id, entry.date, is_syncing)
            stats, invoices = days[day]
            usage = attribute_usage(invoices, entry.product_id)
            record = self.build_statistic(
                entry,
                usage,
                mode,
                display=display_sales(invoices, entry.product_id),
                existing=stats.get(entry.product_id),
                author=author,
            )
            self.validate_write(record, usage, mode)
            prepared.append((entry, record))

        ids = [self.statistics.stage(record) for _, record in prepared]
        queued = [
            (
                SyncOperation.UPSERT_STAT,
                {
                    "record_id": rid,
                    "entry": entry_to_payload(entry),
                    "created_by": author.user_id,
                    "creator_name": author.user_name,
                },
            )
            for rid, (entry, _) in zip(ids, prepared)
        ]

        def push() -> WriteResult:
            stored = self.statistics.push_upsert(ids)
            log.info("statistics_saved count=%s ids=%s", len(stored), [r.id for r in stored])
            return WriteResult(
                status=RecordStatus.SYNCED,
                ids=tuple(r.id for r in stored),
                records=tuple(stored),
            )

        def on_offline() -> None:
            for rid in ids:
                self.statistics.mark_offline(rid)

        def on_failure() -> None:
            for rid in ids:
                self.statistics.roll_back(rid)

        return self._commit(push, queued, ids, is_syncing, on_offline, on_failure)

    def _statistic_for_write(
        self, statistic_id: Optional[str], key: Optional[Sequence[str]], is_syncing: bool
    ) -> Optional[StatisticRecord]:
        if is_syncing:
            return self.statistics.fetch_remote(statistic_id, _as_key(key))
        record = self.statistics.get(statistic_id) if statistic_id else None
        if record is None and key:
            record = self.statistics.find(*key)
        return record

    def update_statistic(
        self,
        statistic_id: Optional[str],
        patch: Mapping[str, Any],
        is_syncing: bool = False,
        key: Optional[Sequence[str]] = None,
    ) -> WriteResult:
        """Edit operator inputs; derived fields are recomputed and re-guarded.

        An empty patch only recomputes the derived fields against the day's invoices.
        """
        patch = dict(patch)
        unknown = sorted(set(patch) - STATISTIC_EDITABLE)
        if unknown:
            raise ValidationError(f"Field(s) cannot be edited: {', '.join(unknown)}")

        current = self._statistic_for_write(statistic_id, key, is_syncing)
        if current is None:
            if is_syncing and not patch:
                return WriteResult(status=RecordStatus.SYNCED, message="Nothing to refresh.")
            raise NotFoundError(f"Statistic not found: {statistic_id or key}")

        mode = self.catalog.mode_for(current.farm_id)
        rejected = sorted(set(patch) & (_DECLARED_ONLY if MODE_RULES[mode].carries_balance else _CARRY_FORWARD_ONLY))
        if rejected:
            raise ValidationError(f"Field(s) do not apply to {mode.value} farms: {', '.join(rejected)}")

        _, invoices = self._day_state(current.farm_id, current.date, is_syncing)
        usage = attribute_usage(invoices, current.product_id)
        if MODE_RULES[mode].carries_balance:
            quantity = patch.get("production", current.production)
            quantity_w = patch.get("production_weight", current.production_weight)
        else:
            quantity = patch.get("declared_stock", current.production - usage.units)
            quantity_w = patch.get("declared_stock_weight", current.production_weight - usage.weight)
        entry = StatisticEntry(
            farm_id=current.farm_id,
            date=current.date,
            product_id=current.product_id,
            quantity=int(quantity),
            quantity_weight=float(quantity_w),
            previous_balance=int(patch.get("previous_balance", current.previous_balance)),
            previous_balance_weight=float(patch.get("previous_balance_weight", current.previous_balance_weight)),
            separation_amount=float(patch.get("separation_amount", current.separation_amount)),
        )
        self.validate_entry(entry)
        proposed = self.build_statistic(
            entry,
            usage,
            mode,
            display=display_sales(invoices, current.product_id),
            existing=current,
        )
        self.validate_write(proposed, usage, mode)

        rid = current.id if is_syncing else self.statistics.stage(proposed)
        pending_insert = not is_syncing and is_local_id(self.statistics.resolve(rid))
        if pending_insert:
            # the server has never seen this record; queue a fresh upsert instead
            queued = [
                (
                    SyncOperation.UPSERT_STAT,
                    {
                        "record_id": rid,
                        "entry": entry_to_payload(entry),
                        "created_by": current.created_by,
                        "creator_name": current.creator_name,
                    },
                )
            ]
        else:
            queued = [(SyncOperation.UPDATE_STAT, {"id": rid, "key": list(current.key), "patch": patch})]

        def push() -> WriteResult:
            server = self.statistics.push_update(rid, _derived_patch(proposed))
            log.info("statistic_updated id=%s current=%s", server.id, server.current_inventory)
            return WriteResult(status=RecordStatus.SYNCED, ids=(server.id,), records=(server,))

        return self._commit(
            push,
            queued,
            [rid],
            is_syncing,
            on_offline=lambda: self.statistics.mark_offline(rid),
            on_failure=lambda: self.statistics.roll_back(rid),
            force_queue=pending_insert,
        )

    def delete_statistic(
        self,
        statistic_id: Optional[str],
        is_syncing: bool = False,
        key: Optional[Sequence[str]] = None,
    ) -> WriteResult:
        current = self._statistic_for_write(statistic_id, key, is_syncing)
        if current is None:
            if is_syncing:
                log.info("statistic_delete_noop id=%s key=%s", statistic_id, key)
                return WriteResult(status=RecordStatus.SYNCED, message="Already removed.")
            raise NotFoundError(f"Statistic not found: {statistic_id or key}")

        _, invoices = self._day_state(current.farm_id, current.date, is_syncing)
        self.validate_delete(current, attribute_usage(invoices, current.product_id))

        if is_syncing:
            self.statistics.remote.delete_statistic(current.id)
            self.statistics.discard(current.id)
            log.info("statistic_deleted id=%s", current.id)
            return WriteResult(status=RecordStatus.SYNCED, ids=(current.id,))

        rid = self.statistics.resolve(current.id)
        if is_local_id(rid):
            seqs = self.queue.remove_pending_insert(rid)
            self.statistics.discard(rid)
            log.info("statistic_cancelled id=%s seqs=%s", rid, seqs)
            return WriteResult(status=RecordStatus.ROLLED_BACK, ids=(rid,), message="Pending entry removed before sync.")

        self.statistics.discard(rid)
        queued = [
            (
                SyncOperation.DELETE_STAT,
                {"id": rid, "key": list(current.key), "farm_id": current.farm_id, "date": current.date},
            )
        ]

        def push() -> WriteResult:
            self.statistics.push_delete(rid)
            log.info("statistic_deleted id=%s", rid)
            return WriteResult(status=RecordStatus.SYNCED, ids=(rid,))

        return self._commit(
            push,
            queued,
            [rid],
            is_syncing,
            on_offline=lambda: None,
            on_failure=lambda: self.statistics.restore(current),
        )

    # ---------- invoices ----------
    def _plan_conversion(
        self,
        farm_id: str,
        date: str,
        product_id: str,
        requested: int,
        stats: Mapping[str, StatisticRecord],
        invoices: Iterable[InvoiceRecord],
        exclude_id: Optional[str] = None,
    ) -> ConversionPlan:
        """Cover a shortfall by borrowing from the product's lender, one level deep."""
        invoices = self._without(invoices, exclude_id)
        name = self.catalog.product_name(product_id)
        stat = stats.get(product_id)
        if stat is None:
            raise MissingStatisticError(f"No statistic recorded for {name} on {date}; record production first.")

        available = stat.capacity - attribute_usage(invoices, product_id).units
        if available >= requested:
            return ConversionPlan()

        deficit = requested - max(available, 0)
        lender = self.catalog.lender_for(farm_id, product_id)
        lender_stat = stats.get(lender.id) if lender else None
        if lender is None or lender_stat is None:
            raise InsufficientStockError(
                f"Not enough {name}: available {max(available, 0)}, requested {requested}; "
                f"no lender stock recorded for this day.",
                shortfall=deficit,
            )

        lender_available = lender_stat.capacity - attribute_usage(invoices, lender.id).units
        if lender_available < deficit:
            raise InsufficientStockError(
                f"Not enough {name}: short {deficit}; {lender.name} can lend only {max(lender_available, 0)}.",
                shortfall=deficit,
                lender_shortfall=deficit - max(lender_available, 0),
            )
        return ConversionPlan(source_product_id=lender.id, converted_amount=deficit)

    def _check_invoice_fits(
        self,
        record: InvoiceRecord,
        stats: Mapping[str, StatisticRecord],
        invoices: Iterable[InvoiceRecord],
    ) -> None:
        invoices = self._without(invoices, record.id)
        own = stats.get(record.product_id)
        if own is None:
            raise MissingStatisticError(
                f"No statistic recorded for {self.catalog.product_name(record.product_id)} on {record.date}."
            )
        direct = record.total_cartons - record.converted_amount
        available = own.capacity - attribute_usage(invoices, record.product_id).units
        if available < direct:
            raise InsufficientStockError(
                f"Not enough {self.catalog.product_name(record.product_id)}: "
                f"available {max(available, 0)}, invoice needs {direct}.",
                shortfall=direct - max(available, 0),
            )
        if record.is_converted and record.source_product_id:
            lender = stats.get(record.source_product_id)
            lender_available = (
                lender.capacity - attribute_usage(invoices, record.source_product_id).units if lender else 0
            )
            if lender_available < record.converted_amount:
                raise InsufficientStockError(
                    f"{self.catalog.product_name(record.source_product_id)} can no longer lend "
                    f"{record.converted_amount} cartons.",
                    shortfall=0,
                    lender_shortfall=record.converted_amount - max(lender_available, 0),
                )

    def _ensure_unique(self, invoice_number: str, product_id: str, invoice_id: Optional[str] = None) -> None:
        own = self.invoices.resolve(invoice_id) if invoice_id else None
        clash = self.invoices.find(invoice_number, product_id)
        if clash is None and self.online:
            try:
                clash = self.invoices.find_remote(invoice_number, product_id)
            except NetworkError as exc:
                log.info("duplicate_check_skipped invoice=%s error=%s", invoice_number, exc)
        if clash is not None and self.invoices.resolve(clash.id) != own:
            raise DuplicateInvoiceError(
                f"Invoice {invoice_number} is already recorded for {self.catalog.product_name(product_id)}."
            )

    def create_invoice_with_conversion(self, request: InvoiceRequest, is_syncing: bool = False) -> WriteResult:
        self.catalog.ensure_farm_product(request.farm_id, request.product_id)
        self.validate_request(request)
        if not is_syncing:
            self._ensure_unique(request.invoice_number, request.product_id)

        stats, invoices = self._day_state(request.farm_id, request.date, is_syncing)
        plan = self._plan_conversion(
            request.farm_id, request.date, request.product_id, int(request.total_cartons), stats, invoices
        )
        record = InvoiceRecord(
            id="",
            farm_id=request.farm_id,
            date=request.date,
            invoice_number=str(request.invoice_number).strip(),
            product_id=request.product_id,
            total_cartons=int(request.total_cartons),
            total_weight=float(request.total_weight),
            source_product_id=plan.source_product_id,
            converted_amount=plan.converted_amount,
            is_converted=plan.is_converted,
            driver_name=request.driver_name,
            driver_phone=request.driver_phone,
            plate_number=request.plate_number,
            description=request.description,
            is_yesterday=bool(request.is_yesterday),
            created_by=self.identity.user_id,
            creator_name=self.identity.user_name,
        )
        return self._write_new_invoice(record, is_syncing)

    def insert_invoice(self, record: InvoiceRecord, is_syncing: bool = True) -> WriteResult:
        """Replay a queued invoice exactly as it was planned, if it still fits."""
        existing = self.invoices.find_remote(record.invoice_number, record.product_id)
        if existing is not None:
            self.invoices.commit(record.id, existing)
            self._refresh_touched(self._triples(existing), is_syncing=True)
            raise ConflictError(f"Invoice {record.invoice_number} already exists at the remote store.")

        self.catalog.ensure_farm_product(record.farm_id, record.product_id)
        stats, invoices = self._day_state(record.farm_id, record.date, is_syncing)
        self._check_invoice_fits(record, stats, invoices)
        return self._write_new_invoice(record, is_syncing)

    def _write_new_invoice(self, record: InvoiceRecord, is_syncing: bool) -> WriteResult:
        rid = self.invoices.stage(record)
        staged = self.invoices.require(rid)
        queued = [(SyncOperation.INSERT_INVOICE, {"local_id": rid, "record": invoice_to_row(staged)})]

        def push() -> WriteResult:
            try:
                stored = self.invoices.push_insert([rid])
            except ConflictError as exc:
                if is_syncing:
                    raise
                raise DuplicateInvoiceError(f"Invoice {staged.invoice_number} is already recorded.") from exc
            server = stored[0]
            log.info(
                "invoice_created id=%s number=%s converted=%s source=%s",
                server.id,
                server.invoice_number,
                server.converted_amount,
                server.source_product_id,
            )
            self._refresh_touched(self._triples(server), is_syncing)
            return WriteResult(status=RecordStatus.SYNCED, ids=(server.id,), records=(server,))

        def on_offline() -> None:
            self.invoices.mark_offline(rid)
            self._recompute_local_all(self._triples(staged))

        return self._commit(
            push,
            queued,
            [rid],
            is_syncing,
            on_offline=on_offline,
            on_failure=lambda: self.invoices.roll_back(rid),
        )

    def _invoice_for_write(
        self, invoice_id: Optional[str], key: Optional[Sequence[str]], is_syncing: bool
    ) -> Optional[InvoiceRecord]:
        if is_syncing:
            return self.invoices.fetch_remote(invoice_id, _as_key(key))
        record = self.invoices.get(invoice_id) if invoice_id else None
        if record is None and key:
            record = self.invoices.find(*key)
        return record

    def update_invoice(
        self,
        invoice_id: Optional[str],
        patch: Mapping[str, Any],
        is_syncing: bool = False,
        key: Optional[Sequence[str]] = None,
    ) -> WriteResult:
        patch = dict(patch)
        unknown = sorted(set(patch) - INVOICE_EDITABLE)
        if unknown:
            raise ValidationError(f"Field(s) cannot be edited: {', '.join(unknown)}")

        current = self._invoice_for_write(invoice_id, key, is_syncing)
        if current is None:
            raise NotFoundError(f"Invoice not found: {invoice_id or key}")

        changes = {k: v for k, v in patch.items() if getattr(current, k) != v}
        if not changes:
            return WriteResult(status=RecordStatus.SYNCED, ids=(current.id,), message="No changes.")

        updated = replace(current, **changes)
        self.catalog.ensure_farm_product(updated.farm_id, updated.product_id)
        self.validate_request(
            InvoiceRequest(
                farm_id=updated.farm_id,
                date=updated.date,
                invoice_number=updated.invoice_number,
                product_id=updated.product_id,
                total_cartons=updated.total_cartons,
                total_weight=updated.total_weight,
            )
        )
        if not is_syncing and ({"invoice_number", "product_id"} & set(changes)):
            self._ensure_unique(updated.invoice_number, updated.product_id, invoice_id=current.id)

        if _REPLAN_FIELDS & set(changes):
            stats, invoices = self._day_state(updated.farm_id, updated.date, is_syncing)
            plan = self._plan_conversion(
                updated.farm_id,
                updated.date,
                updated.product_id,
                updated.total_cartons,
                stats,
                invoices,
                exclude_id=current.id,
            )
            updated = replace(
                updated,
                source_product_id=plan.source_product_id,
                converted_amount=plan.converted_amount,
                is_converted=plan.is_converted,
            )

        remote_patch = {
            name: getattr(updated, name)
            for name in (*changes, "source_product_id", "converted_amount", "is_converted")
        }
        rid = current.id if is_syncing else self.invoices.stage(updated)
        pending_insert = not is_syncing and is_local_id(self.invoices.resolve(rid))
        queued = [(SyncOperation.UPDATE_INVOICE, {"id": rid, "key": list(current.key), "patch": changes})]
        triples = self._triples(current) | self._triples(updated)

        def push() -> WriteResult:
            try:
                server = self.invoices.push_update(rid, remote_patch)
            except ConflictError as exc:
                raise DuplicateInvoiceError(f"Invoice {updated.invoice_number} is already recorded.") from exc
            log.info("invoice_updated id=%s fields=%s converted=%s", server.id, sorted(changes), server.converted_amount)
            self._refresh_touched(triples, is_syncing)
            return WriteResult(status=RecordStatus.SYNCED, ids=(server.id,), records=(server,))

        def on_offline() -> None:
            self.invoices.mark_offline(rid)
            self._recompute_local_all(triples)

        return self._commit(
            push,
            queued,
            [rid],
            is_syncing,
            on_offline=on_offline,
            on_failure=lambda: self.invoices.roll_back(rid),
            force_queue=pending_insert,
        )

    def delete_invoice(
        self,
        invoice_id: Optional[str],
        is_syncing: bool = False,
        key: Optional[Sequence[str]] = None,
    ) -> WriteResult:
        current = self._invoice_for_write(invoice_id, key, is_syncing)
        if current is None:
            if is_syncing:
                log.info("invoice_delete_noop id=%s key=%s", invoice_id, key)
                return WriteResult(status=RecordStatus.SYNCED, message="Already removed.")
            raise NotFoundError(f"Invoice not found: {invoice_id or key}")
        triples = self._triples(current)

        if is_syncing:
            self.invoices.remote.delete_invoice(current.id)
            self.invoices.discard(current.id)
            log.info("invoice_deleted id=%s", current.id)
            self._refresh_touched(triples, is_syncing=True)
            return WriteResult(status=RecordStatus.SYNCED, ids=(current.id,))

        rid = self.invoices.resolve(current.id)
        if is_local_id(rid):
            seqs = self.queue.remove_pending_insert(rid)
            self.invoices.discard(rid)
            self._recompute_local_all(triples)
            log.info("invoice_cancelled id=%s seqs=%s", rid, seqs)
            return WriteResult(status=RecordStatus.ROLLED_BACK, ids=(rid,), message="Pending invoice removed before sync.")

        self.invoices.discard(rid)
        queued = [
            (
                SyncOperation.DELETE_INVOICE,
                {"id": rid, "key": list(current.key), "farm_id": current.farm_id, "date": current.date},
            )
        ]

        def push() -> WriteResult:
            self.invoices.push_delete(rid)
            log.info("invoice_deleted id=%s", rid)
            self._refresh_touched(triples, is_syncing=False)
            return WriteResult(status=RecordStatus.SYNCED, ids=(rid,))

        def on_failure() -> None:
            self.invoices.restore(current)

        return self._commit(
            push,
            queued,
            [rid],
            is_syncing,
            on_offline=lambda: self._recompute_local_all(triples),
            on_failure=on_failure,
        )

    # ---------- downstream recompute ----------
    @staticmethod
    def _triples(invoice: InvoiceRecord) -> set[Triple]:
        return {(invoice.farm_id, invoice.date, pid) for pid in invoice.touched_products}

    def _refresh_touched(self, triples: Iterable[Triple], is_syncing: bool) -> None:
        # runs after the invoice write landed; a failure here must not undo or replay that write
        for farm_id, date, product_id in sorted(triples):
            try:
                self.refresh_inventory(farm_id, date, product_id, is_syncing=is_syncing)
            except AppError as exc:
                self._defer_refresh(farm_id, date, product_id, exc)

    def _defer_refresh(self, farm_id: str, date: str, product_id: str, exc: Exception) -> Optional[StatisticRecord]:
        self.queue.enqueue(
            SyncOperation.UPDATE_STAT,
            {"id": None, "key": [farm_id, date, product_id], "patch": {}},
        )
        log.warning(
            "inventory_refresh_queued farm=%s date=%s product=%s error=%s: %s",
            farm_id,
            date,
            product_id,
            type(exc).__name__,
            exc,
        )
        return self._recompute_local(farm_id, date, product_id)

    def _recompute_local_all(self, triples: Iterable[Triple]) -> None:
        for farm_id, date, product_id in sorted(triples):
            self._recompute_local(farm_id, date, product_id)

    def _recompute_local(self, farm_id: str, date: str, product_id: str) -> Optional[StatisticRecord]:
        stat = self.statistics.find(farm_id, date, product_id)
        if stat is None:
            return None
        updated = self._recomputed(stat, self.invoices.for_day(farm_id, date), self.catalog.mode_for(farm_id))
        self.statistics.patch_local(updated)
        return updated

    def refresh_inventory(
        self, farm_id: str, date: str, product_id: str, is_syncing: bool = False
    ) -> Optional[StatisticRecord]:
        """Recompute one statistic from the day's invoices and write it back if it changed."""
        if not is_syncing and not self.online:
            return self._recompute_local(farm_id, date, product_id)

        mode = self.catalog.mode_for(farm_id)
        try:
            stat = self.statistics.fetch_day(farm_id, date).get(product_id)
            if stat is None:
                return self._recompute_local(farm_id, date, product_id)
            updated = self._recomputed(stat, self.invoices.fetch_day(farm_id, date), mode)
            if _derived_patch(updated) == _derived_patch(stat):
                return stat
            server = self.statistics.push_update(stat.id, _derived_patch(updated))
        except NetworkError as exc:
            if is_syncing:
                raise
            return self._defer_refresh(farm_id, date, product_id, exc)
        log.info("inventory_refreshed id=%s current=%s", server.id, server.current_inventory)
        return server

    # ---------- replay support ----------
    def discard_pending(self, operation: SyncOperation, payload: Mapping[str, Any]) -> None:
        """Drop the optimistic copy of a mutation the server refused during replay."""
        operation = SyncOperation(operation)
        if operation == SyncOperation.UPSERT_STAT:
            entry = payload.get("entry") or {}
            record = self.statistics.find(entry.get("farm_id"), entry.get("date"), entry.get("product_id"))
            if record is not None and self.statistics.status_of(record.id) != RecordStatus.SYNCED:
                self.statistics.roll_back(record.id)
            return
        if operation == SyncOperation.INSERT_INVOICE:
            local_id = payload.get("local_id")
            if local_id and self.invoices.status_of(local_id) not in (None, RecordStatus.SYNCED):
                self.invoices.roll_back(local_id)
                record = payload.get("record") or {}
                if record.get("farm_id") and record.get("date"):
                    products = (record.get("product_id"), record.get("source_product_id"))
                    self._recompute_local_all({(record["farm_id"], record["date"], pid) for pid in products if pid})
            return
        target = payload.get("id")
        arena = self.statistics if operation.is_statistic else self.invoices
        if target and arena.status_of(target) not in (None, RecordStatus.SYNCED):
            arena.roll_back(target)
