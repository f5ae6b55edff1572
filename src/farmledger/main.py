from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from typing import Optional, Sequence

from farmledger.application.container import AppContainer, build_container
from farmledger.config import get_app_paths, load_settings
from farmledger.domain.errors import AppError
from farmledger.logging_config import setup_logging

log = logging.getLogger(__name__)


def _status_cmd(app: AppContainer, args) -> int:
    print(f"Online: {'yes' if app.connectivity.online else 'no'}")
    print(f"Pending sync items: {app.queue.pending_count()}")
    for item in app.queue.list():
        flag = "  [STALE]" if item.flagged_at else ""
        print(f"  #{item.id} {item.operation.value} queued {item.enqueued_at} attempts={item.attempt_count}{flag}")
    print(f"Open conflicts: {len(app.queue.conflicts(open_only=True))}")
    return 0


def _sync_cmd(app: AppContainer, args) -> int:
    result = app.replayer.drain()
    print(f"Applied: {result.applied}  Failed: {result.failed}  Remaining: {result.remaining}")
    for conflict in result.conflicts:
        print(f"  conflict #{conflict.id} {conflict.operation.value}: {conflict.error}")
    if result.stale:
        print(f"Stale items needing review: {', '.join(str(i.id) for i in result.stale)}")
    return 0 if result.remaining == 0 else 1


def _export_cmd(app: AppContainer, args) -> int:
    app.reporting.export_ledger_excel(args.path, args.start, args.end, farm_id=args.farm)
    print(f"Exported to {args.path}")
    return 0


def _health_cmd(app: AppContainer, args) -> int:
    report = app.operations.run_health_check()
    print(json.dumps(asdict(report), ensure_ascii=False, indent=2))
    if args.diagnostics:
        path = app.operations.export_diagnostics(args.diagnostics)
        print(f"Diagnostics written to {path}")
    return 0 if report.healthy else 1


def _conflicts_cmd(app: AppContainer, args) -> int:
    if args.resolve is not None:
        if not app.queue.resolve_conflict(args.resolve):
            print(f"No open conflict #{args.resolve}")
            return 1
        print(f"Conflict #{args.resolve} resolved")
        return 0
    for c in app.queue.conflicts(open_only=not args.all):
        state = f"resolved {c.resolved_at}" if c.resolved_at else "open"
        print(f"#{c.id} {c.operation.value} seq={c.item_id} {c.detected_at} ({state}): {c.error}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="farmledger", description="Farm statistics and invoice ledger")
    parser.add_argument("--data-dir", default=None, help="Override the per-user data directory")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show connectivity and the offline queue").set_defaults(func=_status_cmd)
    sub.add_parser("sync", help="Replay queued mutations now").set_defaults(func=_sync_cmd)

    export = sub.add_parser("export", help="Export statistics and invoices to Excel")
    export.add_argument("path")
    export.add_argument("--start", required=True, help="YYYY-MM-DD")
    export.add_argument("--end", required=True, help="YYYY-MM-DD")
    export.add_argument("--farm", default=None)
    export.set_defaults(func=_export_cmd)

    health = sub.add_parser("health", help="Integrity and queue health report")
    health.add_argument("--diagnostics", default=None, help="Write a diagnostics zip into this directory")
    health.set_defaults(func=_health_cmd)

    conflicts = sub.add_parser("conflicts", help="List or resolve replay conflicts")
    conflicts.add_argument("--all", action="store_true", help="Include resolved conflicts")
    conflicts.add_argument("--resolve", type=int, default=None, metavar="ID")
    conflicts.set_defaults(func=_conflicts_cmd)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    paths = get_app_paths(base_dir=args.data_dir)
    setup_logging(paths.logs_dir, level=logging.INFO)

    try:
        app = build_container(paths, load_settings())
        return int(args.func(app, args))
    except AppError as e:
        log.error("command_failed command=%s error=%s", args.command, e)
        print(f"Error: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
