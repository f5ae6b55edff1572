from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    ledger_integrity: str
    queue_integrity: str
    pending_items: int
    stale_items: int
    open_conflicts: int
    logs_count: int
    generated_at: str

    @property
    def healthy(self) -> bool:
        return self.ledger_integrity == "ok" and self.queue_integrity == "ok" and self.open_conflicts == 0


class OperationsService:
    def __init__(self, ledger_store, queue_store, queue, logs_dir: Path | str, data_dir: Path | str):
        self.ledger_store = ledger_store
        self.queue_store = queue_store
        self.queue = queue
        self.logs_dir = Path(logs_dir)
        self.data_dir = Path(data_dir)

    def run_health_check(self) -> HealthReport:
        # a hosted ledger has no local file to check
        ledger_integrity = self.ledger_store.integrity_check() if self.ledger_store is not None else "remote"
        logs_count = len(list(self.logs_dir.glob("*.log"))) if self.logs_dir.exists() else 0
        return HealthReport(
            ledger_integrity=ledger_integrity,
            queue_integrity=self.queue_store.integrity_check(),
            pending_items=self.queue.pending_count(),
            stale_items=len(self.queue.stale()),
            open_conflicts=len(self.queue.conflicts(open_only=True)),
            logs_count=logs_count,
            generated_at=datetime.now().isoformat(timespec="seconds"),
        )

    def export_diagnostics(self, target_dir: Path | str | None = None) -> Path:
        out_dir = Path(target_dir) if target_dir else self.data_dir
        out_dir.mkdir(parents=True, exist_ok=True)

        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_path = out_dir / f"diagnostics_{ts}.zip"
        report = self.run_health_check()
        conflicts = [asdict(c) for c in self.queue.conflicts(open_only=False)]

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if self.logs_dir.exists():
                for f in sorted(self.logs_dir.glob("*.log")):
                    zf.write(f, arcname=f"logs/{f.name}")

            zf.writestr("health_report.json", json.dumps(asdict(report), ensure_ascii=False, indent=2))
            zf.writestr("sync_conflicts.json", json.dumps(conflicts, ensure_ascii=False, indent=2))

        log.info("diagnostics_exported path=%s", zip_path)
        return zip_path
