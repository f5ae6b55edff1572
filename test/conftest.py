import sys
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

DAY = "2024-03-01"
FARM = "farm-a"
SIMPLE = "p-simple"
PRINTABLE = "p-printable"


def build_world(tmp_path: Path, remote_cls=None, mode=None, online: bool = True):
    """Farm A with a Simple and a Printable product over SQLite ledger + queue files."""
    from farmledger.domain.models import FarmMode, Identity, ProductCategory
    from farmledger.repositories.sqlite_ledger import SqliteLedgerRepository
    from farmledger.repositories.sync_queue_repo import SqliteQueueStore
    from farmledger.services.catalog import Catalog
    from farmledger.services.connectivity import ConnectivityMonitor
    from farmledger.services.ledgers import InvoiceLedger, StatisticLedger
    from farmledger.services.reconciliation_service import ReconciliationService
    from farmledger.services.sync_queue import OfflineSyncQueue
    from farmledger.services.sync_replayer import SyncReplayer

    remote = (remote_cls or SqliteLedgerRepository)(tmp_path / "ledger.db")
    remote.init_db()
    remote.add_product("Simple", ProductCategory.SIMPLE, product_id=SIMPLE)
    remote.add_product("Printable", ProductCategory.PRINTABLE, product_id=PRINTABLE)
    remote.add_farm("Farm A", mode or FarmMode.CARRY_FORWARD, [SIMPLE, PRINTABLE], farm_id=FARM)

    catalog = Catalog(remote)
    catalog.reload()
    store = SqliteQueueStore(tmp_path / "local.db")
    store.init_db()
    queue = OfflineSyncQueue(store)
    connectivity = ConnectivityMonitor(online=online)
    statistics = StatisticLedger(remote)
    invoices = InvoiceLedger(remote)
    service = ReconciliationService(
        statistics,
        invoices,
        catalog,
        queue,
        Identity(user_id="u-1", user_name="Registrar"),
        connectivity=connectivity,
    )
    replayer = SyncReplayer(service, queue)
    return SimpleNamespace(
        remote=remote,
        catalog=catalog,
        store=store,
        queue=queue,
        connectivity=connectivity,
        statistics=statistics,
        invoices=invoices,
        service=service,
        replayer=replayer,
    )


def entry(product_id: str, quantity: int, weight: float = 0.0, previous: int = 0, previous_weight: float = 0.0):
    from farmledger.domain.models import StatisticEntry

    return StatisticEntry(
        farm_id=FARM,
        date=DAY,
        product_id=product_id,
        quantity=quantity,
        quantity_weight=weight,
        previous_balance=previous,
        previous_balance_weight=previous_weight,
    )


def sale(number: str, product_id: str, cartons: int, weight: float = 0.0):
    from farmledger.domain.models import InvoiceRequest

    return InvoiceRequest(
        farm_id=FARM,
        date=DAY,
        invoice_number=number,
        product_id=product_id,
        total_cartons=cartons,
        total_weight=weight,
        driver_name="Driver",
    )


def stat_of(world, product_id: str):
    rows = world.remote.fetch_statistics(farm_id=FARM, date=DAY, product_id=product_id)
    return rows[0] if rows else None
