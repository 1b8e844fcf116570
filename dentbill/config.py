"""Runtime configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from platformdirs import user_data_dir

APP_NAME = "dentbill"


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for the billing service."""

    database_url: str
    echo: bool = False
    default_burden_ratio: float = 0.3
    baseline_revision: str = "R06"
    claim_encoding: str = "cp932"
    clinic_timezone: str = "Asia/Tokyo"
    log_level: str = "INFO"

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        if self.is_sqlite:
            options["connect_args"] = {"check_same_thread": False}
        else:
            options["pool_pre_ping"] = True
            pool_size = _get_int_env("DB_POOL_SIZE")
            if pool_size is not None:
                options["pool_size"] = pool_size
        return options

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def _default_sqlite_path() -> Path:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "dentbill.db"


def _normalise_sqlite_path(path: str | os.PathLike[str]) -> Path:
    resolved = Path(path).expanduser()
    if resolved.is_dir():
        resolved = resolved / "dentbill.db"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def _get_bool_env(name: str) -> bool:
    return os.getenv(name, "0").strip().lower() in {"1", "true", "yes", "on"}


def _database_url() -> str:
    url = os.getenv("DENTBILL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+psycopg://", 1)
        return url

    path_override = os.getenv("DENTBILL_DB_PATH")
    if path_override:
        db_path = _normalise_sqlite_path(path_override)
    else:
        db_path = _default_sqlite_path()
    return f"sqlite:///{db_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    ratio = _get_float_env("DENTBILL_DEFAULT_BURDEN_RATIO", 0.3)
    if not 0 <= ratio <= 1:
        raise ValueError(f"DENTBILL_DEFAULT_BURDEN_RATIO must be between 0 and 1; got {ratio}")

    return Settings(
        database_url=_database_url(),
        echo=_get_bool_env("DB_ECHO"),
        default_burden_ratio=ratio,
        baseline_revision=os.getenv("DENTBILL_BASELINE_REVISION") or "R06",
        claim_encoding=os.getenv("DENTBILL_CLAIM_ENCODING") or "cp932",
        clinic_timezone=os.getenv("DENTBILL_CLINIC_TZ") or "Asia/Tokyo",
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
