from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional
import json
import logging
import os
import sys

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path
    preferences_path: Path


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "BizLedger", base_dir: Path | str | None = None) -> AppPaths:
    if base_dir is not None:
        base = Path(base_dir)
    elif os.environ.get("BIZLEDGER_HOME"):
        base = Path(os.environ["BIZLEDGER_HOME"])
    elif sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "ledger.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs, preferences_path=base / "preferences.json")


def _seconds(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("config_value_ignored key=%s value=%s", key, raw)
        return default
    if value < 0:
        log.warning("config_value_ignored key=%s value=%s", key, raw)
        return default
    return value


@dataclass(frozen=True)
class SyncSettings:
    """Timing knobs for the sync orchestrator and housekeeping (seconds)."""

    sync_interval: float = 6 * 60 * 60
    debounce_window: float = 5 * 60
    connectivity_settle_delay: float = 3.0
    login_settle_delay: float = 2.0
    cleanup_age_days: int = 90
    cleanup_every_days: int = 7
    connectivity_url: str = "https://clients3.google.com/generate_204"
    connectivity_interval: float = 15.0
    connectivity_timeout: float = 5.0

    @property
    def cleanup_age(self) -> timedelta:
        return timedelta(days=self.cleanup_age_days)

    @property
    def cleanup_every(self) -> timedelta:
        return timedelta(days=self.cleanup_every_days)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SyncSettings":
        env = os.environ if env is None else env
        d = cls()
        return cls(
            sync_interval=_seconds(env, "BIZLEDGER_SYNC_INTERVAL", d.sync_interval),
            debounce_window=_seconds(env, "BIZLEDGER_DEBOUNCE_WINDOW", d.debounce_window),
            connectivity_settle_delay=_seconds(env, "BIZLEDGER_CONNECTIVITY_SETTLE", d.connectivity_settle_delay),
            login_settle_delay=_seconds(env, "BIZLEDGER_LOGIN_SETTLE", d.login_settle_delay),
            cleanup_age_days=int(_seconds(env, "BIZLEDGER_CLEANUP_AGE_DAYS", d.cleanup_age_days)),
            cleanup_every_days=int(_seconds(env, "BIZLEDGER_CLEANUP_EVERY_DAYS", d.cleanup_every_days)),
            connectivity_url=env.get("BIZLEDGER_CONNECTIVITY_URL") or d.connectivity_url,
            connectivity_interval=_seconds(env, "BIZLEDGER_CONNECTIVITY_INTERVAL", d.connectivity_interval),
            connectivity_timeout=_seconds(env, "BIZLEDGER_CONNECTIVITY_TIMEOUT", d.connectivity_timeout),
        )


class Preferences:
    """Small JSON key/value file for lifecycle markers (last_full_sync, last_cleanup)."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("preferences_unreadable path=%s error=%s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self._load().get(key)
        return str(value) if value is not None else default

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
