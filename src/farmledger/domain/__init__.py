from .models import (
    Farm,
    FarmMode,
    Identity,
    InvoiceRecord,
    InvoiceRequest,
    Product,
    ProductCategory,
    RecordStatus,
    StatisticEntry,
    StatisticRecord,
    SyncOperation,
    SyncQueueItem,
    Usage,
    WriteResult,
)
from .errors import (
    AppError,
    ConflictError,
    DependentUsageError,
    DuplicateInvoiceError,
    InsufficientStockError,
    MissingStatisticError,
    NetworkError,
    NotFoundError,
    SchemaError,
    ValidationError,
)
from .usage import attribute_usage

__all__ = [
    "Farm",
    "FarmMode",
    "Identity",
    "InvoiceRecord",
    "InvoiceRequest",
    "Product",
    "ProductCategory",
    "RecordStatus",
    "StatisticEntry",
    "StatisticRecord",
    "SyncOperation",
    "SyncQueueItem",
    "Usage",
    "WriteResult",
    "AppError",
    "ConflictError",
    "DependentUsageError",
    "DuplicateInvoiceError",
    "InsufficientStockError",
    "MissingStatisticError",
    "NetworkError",
    "NotFoundError",
    "SchemaError",
    "ValidationError",
    "attribute_usage",
]
