"""JSONL telemetry for the governance pipeline.

Components never log through a module-global logger; each one receives a
``TelemetrySink`` at construction time and writes structured events to it.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_TELEMETRY_PATH = ".governor/telemetry.jsonl"


@dataclass(frozen=True)
class TelemetrySink:
    """Thin wrapper around JSONL telemetry.

    Event schema:
      {"timestamp": <float>, "run_id": <str>, "type": <str>, "data": <object>}
    """

    enabled: bool
    path: Path

    @classmethod
    def disabled(cls) -> TelemetrySink:
        return cls(enabled=False, path=Path(DEFAULT_TELEMETRY_PATH))

    @classmethod
    def for_project(cls, project_root: Path, log_path: str, enabled: bool = True) -> TelemetrySink:
        return cls(enabled=enabled, path=Path(project_root) / log_path)

    def log(self, run_id: str, event_type: str, data: dict[str, Any]) -> None:
        if not self.enabled:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        entry = {
            "timestamp": time.time(),
            "run_id": run_id,
            "type": event_type,
            "data": data,
        }

        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")


def prune_telemetry_file(telemetry_path: Path, retention_days: int) -> None:
    """Delete telemetry file if it is older than retention_days (mtime-based)."""
    if retention_days <= 0:
        return
    try:
        if not telemetry_path.exists():
            return
        cutoff = time.time() - (retention_days * 86400)
        if telemetry_path.stat().st_mtime < cutoff:
            telemetry_path.unlink(missing_ok=True)
    except OSError:
        # Best-effort; telemetry should never crash the pipeline.
        return
