# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional

from .artifacts import DEFAULT_ARTIFACT_DIR
from .cache import DEFAULT_CACHE_DIR
from .errors import WorkflowError


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Run settings. Precedence: CLI flags > GRIDCI_* environment > defaults.
    """
    workspace: str = "."
    workers: Optional[int] = None          # None -> cpu_count - 1
    cache_dir: str = DEFAULT_CACHE_DIR
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    cache_keep: int = 3
    event: str = "push"
    channel: str = "stable"
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        base = cls()
        try:
            return cls(
                workspace=env.get("GRIDCI_WORKSPACE", base.workspace),
                workers=int(env["GRIDCI_WORKERS"]) if env.get("GRIDCI_WORKERS") else None,
                cache_dir=env.get("GRIDCI_CACHE_DIR", base.cache_dir),
                artifact_dir=env.get("GRIDCI_ARTIFACT_DIR", base.artifact_dir),
                cache_keep=int(env.get("GRIDCI_CACHE_KEEP", base.cache_keep)),
                event=env.get("GRIDCI_EVENT", base.event),
                channel=env.get("GRIDCI_CHANNEL", base.channel),
                debug=_bool(env.get("GRIDCI_DEBUG", "")),
            )
        except ValueError as e:
            raise WorkflowError(f"invalid GRIDCI_* setting: {e}")

    def with_overrides(self, **overrides) -> "Settings":
        """Apply non-None overrides (CLI flags left unset don't clobber env values)."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise TypeError(f"unknown settings: {unknown}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
