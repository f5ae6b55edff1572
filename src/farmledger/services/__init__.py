from .catalog import Catalog
from .connectivity import ConnectivityMonitor
from .ledgers import InvoiceLedger, StatisticLedger
from .reconciliation_service import ReconciliationService
from .sync_queue import OfflineSyncQueue
from .sync_replayer import SyncReplayer
from .reporting_service import ReportingService
from .operations_service import OperationsService

__all__ = [
    "Catalog",
    "ConnectivityMonitor",
    "InvoiceLedger",
    "StatisticLedger",
    "ReconciliationService",
    "OfflineSyncQueue",
    "SyncReplayer",
    "ReportingService",
    "OperationsService",
]
