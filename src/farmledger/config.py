from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import sys
from typing import Mapping, Optional


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    ledger_db_path: Path
    queue_db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class SyncSettings:
    remote_url: Optional[str] = None
    api_key: Optional[str] = None
    remote_timeout_seconds: float = 10.0
    retention_hours: float = 24.0
    sync_interval_seconds: float = 30.0

    @property
    def uses_remote(self) -> bool:
        return bool(self.remote_url and self.api_key)


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "FarmLedger", base_dir: Path | str | None = None) -> AppPaths:
    if base_dir is not None:
        base = Path(base_dir)
    elif sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, ledger_db_path=base / "ledger.db", queue_db_path=base / "local.db", logs_dir=logs)


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {raw!r}")
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> SyncSettings:
    env = os.environ if environ is None else environ
    return SyncSettings(
        remote_url=(env.get("FARMLEDGER_REMOTE_URL") or "").strip() or None,
        api_key=(env.get("FARMLEDGER_API_KEY") or "").strip() or None,
        remote_timeout_seconds=_float(env, "FARMLEDGER_TIMEOUT", 10.0),
        retention_hours=_float(env, "FARMLEDGER_RETENTION_HOURS", 24.0),
        sync_interval_seconds=_float(env, "FARMLEDGER_SYNC_INTERVAL", 30.0),
    )
