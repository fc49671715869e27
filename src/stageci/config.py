# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from .runner import DEFAULT_PASSTHROUGH_ENV

DEFAULT_HOME = ".stageci"


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """
    Engine settings. Every field can be set through a STAGECI_* environment
    variable (see from_env); CLI flags override on top of that.
    """
    database_url: str = f"sqlite:///{DEFAULT_HOME}/runs.db"
    artifact_root: str = f"{DEFAULT_HOME}/artifacts"
    work_root: str = f"{DEFAULT_HOME}/work"
    environments_file: Optional[str] = None
    source_root: Optional[str] = "."
    max_workers: Optional[int] = None
    keep_workspaces: bool = False
    purge_artifacts: bool = False    # drop a run's artifacts once it is terminal
    passthrough_env: Tuple[str, ...] = field(default_factory=lambda: tuple(DEFAULT_PASSTHROUGH_ENV))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        s = cls()
        s.database_url = environ.get("STAGECI_DATABASE_URL", s.database_url)
        s.artifact_root = environ.get("STAGECI_ARTIFACT_ROOT", s.artifact_root)
        s.work_root = environ.get("STAGECI_WORK_ROOT", s.work_root)
        s.environments_file = environ.get("STAGECI_ENVIRONMENTS_FILE") or s.environments_file
        s.source_root = environ.get("STAGECI_SOURCE_ROOT", s.source_root)
        workers = environ.get("STAGECI_MAX_WORKERS")
        s.max_workers = int(workers) if workers else None
        s.keep_workspaces = _bool(environ.get("STAGECI_KEEP_WORKSPACES"))
        s.purge_artifacts = _bool(environ.get("STAGECI_PURGE_ARTIFACTS"))
        passthrough = environ.get("STAGECI_PASSTHROUGH_ENV")
        if passthrough:
            s.passthrough_env = tuple(p.strip() for p in passthrough.split(",") if p.strip())
        return s
