from __future__ import annotations

import json
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, MutableMapping

from hns_sync.common.kv_store import KeyValueStore

from .constants import last_sync_key
from .dates import utc_now


def _format_duration(seconds: int) -> str:
    seconds = max(0, seconds)
    hh = seconds // 3600
    mm = (seconds % 3600) // 60
    ss = seconds % 60
    return f"{hh:02d}:{mm:02d}:{ss:02d}"


def _normalize_status(raw: str | None) -> str:
    normalized = (raw or "ok").lower()
    if normalized in {"warn", "warning"}:
        return "warning"
    if normalized == "error":
        return "error"
    return "ok"


@dataclass
class SyncSummary:
    """Aggregates log events of one sync run into per-phase counters."""

    run_id: str
    user_id: str
    started_at: datetime = field(default_factory=utc_now)
    phase_counters: MutableMapping[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"ok": 0, "warning": 0, "error": 0})
    )
    stage_outcomes: Dict[str, str] = field(default_factory=dict)
    discovered: List[str] = field(default_factory=list)
    trips_written: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    outcome: str = "running"
    issues: deque[str] = field(default_factory=lambda: deque(maxlen=5))

    def record_log_event(self, payload: Mapping[str, Any]) -> None:
        phase = payload.get("phase")
        if not phase:
            return
        status = _normalize_status(payload.get("status"))
        self.phase_counters[phase][status] += 1
        if status in {"warning", "error"}:
            detail = payload.get("message") or phase
            order_id = payload.get("order_id")
            trip_date = payload.get("date")
            if order_id:
                detail = f"{detail} (order {order_id})"
            if trip_date:
                detail = f"{detail} (date {trip_date})"
            if detail not in self.issues:
                self.issues.append(detail)

        if payload.get("outcome") and str(payload.get("message", "")).startswith("Stage finished"):
            self.stage_outcomes[phase] = str(payload["outcome"])
        if phase in {"gap_fill", "backward"} and payload.get("message") == "Discovered unlisted order":
            order_id = payload.get("order_id")
            if order_id:
                self.discovered.append(str(order_id))
        if phase == "trips" and payload.get("message") == "Trip saved":
            self.trips_written.append(str(payload.get("date")))
        if phase == "trips" and payload.get("message") == "Trip edited by user; reporting conflict":
            self.conflicts.append(str(payload.get("date")))

    def finish(self, outcome: str) -> None:
        self.outcome = outcome

    def overall_status(self) -> str:
        all_counts = [dict(counts) for counts in self.phase_counters.values()]
        if self.outcome == "error" or any(counts.get("error") for counts in all_counts):
            return "error"
        if any(counts.get("warning") for counts in all_counts):
            return "warning"
        return "ok"

    def build_record(self, *, finished_at: datetime) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "user_id": self.user_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": finished_at.isoformat(),
            "total_time_taken": _format_duration(int((finished_at - self.started_at).total_seconds())),
            "outcome": self.outcome,
            "overall_status": self.overall_status(),
            "phases": {phase: dict(counts) for phase, counts in self.phase_counters.items()},
            "stages": dict(self.stage_outcomes),
            "discovered": list(self.discovered),
            "trips_written": list(self.trips_written),
            "conflicts": list(self.conflicts),
            "issues": list(self.issues),
        }


async def persist_summary(store: KeyValueStore, summary: SyncSummary, *, finished_at: datetime) -> Dict[str, Any]:
    record = summary.build_record(finished_at=finished_at)
    await store.put(last_sync_key(summary.user_id), json.dumps(record))
    return record


async def load_last_summary(store: KeyValueStore, user_id: str) -> Dict[str, Any] | None:
    raw = await store.get(last_sync_key(user_id))
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None
