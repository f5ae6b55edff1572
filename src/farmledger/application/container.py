from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from farmledger.config import AppPaths, SyncSettings
from farmledger.domain.errors import NetworkError
from farmledger.domain.models import Identity
from farmledger.repositories.http_ledger import SupabaseLedgerClient
from farmledger.repositories.sqlite_ledger import SqliteLedgerRepository
from farmledger.repositories.sync_queue_repo import SqliteQueueStore
from farmledger.services.catalog import Catalog
from farmledger.services.connectivity import ConnectivityMonitor
from farmledger.services.ledgers import InvoiceLedger, StatisticLedger
from farmledger.services.operations_service import OperationsService
from farmledger.services.reconciliation_service import ReconciliationService
from farmledger.services.reporting_service import ReportingService
from farmledger.services.sync_queue import OfflineSyncQueue
from farmledger.services.sync_replayer import SyncReplayer

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppContainer:
    settings: SyncSettings
    remote: object
    ledger_store: Optional[SqliteLedgerRepository]
    queue_store: SqliteQueueStore
    catalog: Catalog
    connectivity: ConnectivityMonitor
    statistics: StatisticLedger
    invoices: InvoiceLedger
    queue: OfflineSyncQueue
    reconciliation: ReconciliationService
    replayer: SyncReplayer
    reporting: ReportingService
    operations: OperationsService


def build_container(
    paths: AppPaths,
    settings: SyncSettings | None = None,
    identity: Identity | None = None,
) -> AppContainer:
    settings = settings or SyncSettings()
    identity = identity or Identity(user_id="local", user_name="local")

    ledger_store: Optional[SqliteLedgerRepository] = None
    if settings.uses_remote:
        remote = SupabaseLedgerClient(settings.remote_url, settings.api_key, timeout=settings.remote_timeout_seconds)
    else:
        ledger_store = SqliteLedgerRepository(paths.ledger_db_path)
        ledger_store.init_db()
        remote = ledger_store

    queue_store = SqliteQueueStore(paths.queue_db_path)
    queue_store.init_db()

    connectivity = ConnectivityMonitor(online=True)
    catalog = Catalog(remote)
    try:
        catalog.reload()
    except NetworkError as exc:
        log.warning("catalog_unavailable error=%s", exc)
        connectivity.set_online(False)

    statistics = StatisticLedger(remote)
    invoices = InvoiceLedger(remote)
    queue = OfflineSyncQueue(queue_store, retention_hours=settings.retention_hours)
    reconciliation = ReconciliationService(statistics, invoices, catalog, queue, identity, connectivity=connectivity)
    replayer = SyncReplayer(reconciliation, queue, interval_seconds=settings.sync_interval_seconds)
    connectivity.subscribe(replayer.on_connectivity_change)

    reporting = ReportingService(remote, catalog)
    operations = OperationsService(
        ledger_store,
        queue_store,
        queue,
        logs_dir=paths.logs_dir,
        data_dir=paths.base_dir,
    )

    return AppContainer(
        settings=settings,
        remote=remote,
        ledger_store=ledger_store,
        queue_store=queue_store,
        catalog=catalog,
        connectivity=connectivity,
        statistics=statistics,
        invoices=invoices,
        queue=queue,
        reconciliation=reconciliation,
        replayer=replayer,
        reporting=reporting,
        operations=operations,
    )
