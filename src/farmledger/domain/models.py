from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class FarmMode(str, Enum):
    CARRY_FORWARD = "carry_forward"
    DECLARED_STOCK = "declared_stock"


class ProductCategory(str, Enum):
    SIMPLE = "simple"
    PRINTABLE = "printable"
    OTHER = "other"

    @classmethod
    def from_name(cls, name: str) -> "ProductCategory":
        """Classify a legacy product name that was stored without a category."""
        lowered = (name or "").strip().lower()
        if "printable" in lowered or "پرینتی" in lowered:
            return cls.PRINTABLE
        if "simple" in lowered or "ساده" in lowered:
            return cls.SIMPLE
        return cls.OTHER


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    REGISTRATION = "REGISTRATION"
    SALES = "SALES"


class RecordStatus(str, Enum):
    OPTIMISTIC = "optimistic"
    OFFLINE = "offline"
    SYNCED = "synced"
    ROLLED_BACK = "rolled_back"


class SyncOperation(str, Enum):
    UPSERT_STAT = "UPSERT_STAT"
    UPDATE_STAT = "UPDATE_STAT"
    DELETE_STAT = "DELETE_STAT"
    INSERT_INVOICE = "INSERT_INVOICE"
    UPDATE_INVOICE = "UPDATE_INVOICE"
    DELETE_INVOICE = "DELETE_INVOICE"

    @property
    def is_statistic(self) -> bool:
        return self.value.endswith("_STAT")


@dataclass(frozen=True)
class Identity:
    user_id: str
    user_name: str
    role: UserRole = UserRole.REGISTRATION


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    category: ProductCategory = ProductCategory.OTHER
    has_weight: bool = True


@dataclass(frozen=True)
class Farm:
    id: str
    name: str
    mode: FarmMode = FarmMode.CARRY_FORWARD
    product_ids: tuple[str, ...] = ()
    active: bool = True


@dataclass(frozen=True)
class Usage:
    units: int = 0
    weight: float = 0.0


@dataclass(frozen=True)
class StatisticEntry:
    """Operator input for one product on one day.

    ``quantity`` is the day's production for carry-forward farms and the
    counted physical stock for declared-stock farms.
    """

    farm_id: str
    date: str
    product_id: str
    quantity: int = 0
    quantity_weight: float = 0.0
    previous_balance: int = 0
    previous_balance_weight: float = 0.0
    separation_amount: float = 0.0

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.farm_id, self.date, self.product_id)


@dataclass(frozen=True)
class StatisticRecord:
    id: str
    farm_id: str
    date: str
    product_id: str
    previous_balance: int = 0
    previous_balance_weight: float = 0.0
    production: int = 0
    production_weight: float = 0.0
    usage_display: int = 0
    usage_display_weight: float = 0.0
    current_inventory: int = 0
    current_inventory_weight: float = 0.0
    separation_amount: float = 0.0
    created_by: Optional[str] = None
    creator_name: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.farm_id, self.date, self.product_id)

    @property
    def capacity(self) -> int:
        return int(self.previous_balance) + int(self.production)


@dataclass(frozen=True)
class InvoiceRequest:
    farm_id: str
    date: str
    invoice_number: str
    product_id: str
    total_cartons: int
    total_weight: float = 0.0
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    plate_number: Optional[str] = None
    description: Optional[str] = None
    is_yesterday: bool = False


@dataclass(frozen=True)
class InvoiceRecord:
    id: str
    farm_id: str
    date: str
    invoice_number: str
    product_id: str
    total_cartons: int = 0
    total_weight: float = 0.0
    source_product_id: Optional[str] = None
    converted_amount: int = 0
    is_converted: bool = False
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    plate_number: Optional[str] = None
    description: Optional[str] = None
    is_yesterday: bool = False
    created_by: Optional[str] = None
    creator_name: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.invoice_number, self.product_id)

    @property
    def touched_products(self) -> tuple[str, ...]:
        if self.is_converted and self.source_product_id:
            return (self.product_id, self.source_product_id)
        return (self.product_id,)


@dataclass(frozen=True)
class SyncQueueItem:
    id: int
    operation: SyncOperation
    payload: dict[str, Any]
    enqueued_at: str
    attempt_count: int = 0
    last_attempt_at: Optional[str] = None
    last_error: Optional[str] = None
    flagged_at: Optional[str] = None


@dataclass(frozen=True)
class SyncConflict:
    id: int
    item_id: int
    operation: SyncOperation
    payload: dict[str, Any]
    error: str
    detected_at: str
    resolved_at: Optional[str] = None


@dataclass(frozen=True)
class WriteResult:
    status: RecordStatus
    ids: tuple[str, ...] = ()
    queue_item_ids: tuple[int, ...] = ()
    message: Optional[str] = None
    records: tuple[Any, ...] = ()

    @property
    def queued(self) -> bool:
        return self.status == RecordStatus.OFFLINE


@dataclass
class DrainResult:
    applied: int = 0
    failed: int = 0
    remaining: int = 0
    conflicts: list[SyncConflict] = field(default_factory=list)
    stale: list[SyncQueueItem] = field(default_factory=list)


@dataclass(frozen=True)
class ConversionPlan:
    source_product_id: Optional[str] = None
    converted_amount: int = 0

    @property
    def is_converted(self) -> bool:
        return self.converted_amount > 0
