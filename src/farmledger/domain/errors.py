class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    """Blocks the operation; surfaced to the caller, never queued."""


class NotFoundError(ValidationError):
    pass


class InsufficientStockError(ValidationError):
    def __init__(self, message: str, shortfall: int = 0, lender_shortfall: int | None = None):
        super().__init__(message)
        self.shortfall = shortfall
        self.lender_shortfall = lender_shortfall


class DependentUsageError(ValidationError):
    def __init__(self, message: str, usage_units: int = 0):
        super().__init__(message)
        self.usage_units = usage_units


class DuplicateInvoiceError(ValidationError):
    pass


class MissingStatisticError(ValidationError):
    pass


class NetworkError(AppError):
    """Transient connectivity or timeout failure."""


class ConflictError(AppError):
    """Natural key already exists at the remote store."""


class SchemaError(AppError):
    """Remote store rejected the shape of a payload."""


class RemoteError(AppError):
    pass
