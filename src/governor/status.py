from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class StatusWindow:
    seconds: float


def _iter_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if not ln:
                continue
            try:
                events.append(json.loads(ln))
            except json.JSONDecodeError:
                continue
    return events


def _rate(ok_count: int, fail_count: int) -> float | None:
    denom = ok_count + fail_count
    return (ok_count / denom) if denom else None


def _p(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    s = sorted(values)
    idx = int(round((max(0.0, min(100.0, pct)) / 100.0) * (len(s) - 1)))
    return float(s[idx])


def compute_status(telemetry_path: Path, *, window: StatusWindow | None = None) -> dict[str, Any]:
    """Summarize recent governance activity from telemetry.jsonl (best-effort).

    Counts only grow as events are appended inside the window.
    """
    window = window or StatusWindow(seconds=3600.0)
    cutoff = time.time() - float(window.seconds)

    events = _iter_events(telemetry_path)
    recent = [e for e in events if float(e.get("timestamp", 0.0) or 0.0) >= cutoff]

    def _count(event_type: str) -> int:
        return sum(1 for e in recent if e.get("type") == event_type)

    decisions = [e for e in recent if e.get("type") == "council_decision"]
    approved = sum(1 for e in decisions if (e.get("data") or {}).get("approved"))

    # Cycle latencies from start->completed (match by run_id).
    starts: dict[str, float] = {}
    latencies: list[float] = []
    for e in recent:
        rid = str(e.get("run_id") or "")
        ts = float(e.get("timestamp", 0.0) or 0.0)
        if e.get("type") == "cycle_started":
            starts[rid] = ts
        elif e.get("type") == "cycle_completed" and rid in starts:
            latencies.append(max(0.0, ts - starts[rid]))

    auto_rollbacks = _count("auto_rollback")
    last_cycle = next((e for e in reversed(events) if e.get("type") == "cycle_completed"), None)

    return {
        "window_seconds": window.seconds,
        "telemetry_path": str(telemetry_path),
        "cycles_completed": _count("cycle_completed"),
        "proposals_applied": _count("proposal_applied"),
        "proposals_failed": _count("proposal_failed"),
        "apply_success_rate": _rate(_count("apply_succeeded"), _count("apply_failed")),
        "council_decisions": len(decisions),
        "council_approved": approved,
        "council_rejected": len(decisions) - approved,
        "auto_rollbacks": auto_rollbacks,
        "manual_rollbacks": _count("manual_rollback"),
        "records_rolled_back": _count("rollback_completed"),
        "rollbacks_rate_limited": _count("auto_rollback_rate_limited"),
        "cycle_latency_s_p50": _p(latencies, 50.0),
        "cycle_latency_s_p95": _p(latencies, 95.0),
        "last_cycle": last_cycle,
    }
