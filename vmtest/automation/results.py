#!/usr/bin/env python3
"""Per-trial result records written next to the trial logs."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TrialResult:
    ratio: int
    params: Dict[str, object]
    should_migrate: bool
    log_dir: str
    fast_nodes: List[str]
    slow_nodes: List[str]
    status: str = "running"
    started_at: str = field(default_factory=_now)
    finished_at: Optional[str] = None
    pids: Dict[str, int] = field(default_factory=dict)
    workload_returncode: Optional[int] = None
    pressure_targets_kb: Dict[str, int] = field(default_factory=dict)
    pressure_skipped: List[str] = field(default_factory=list)
    vm_rss_kb: Optional[int] = None
    error: Optional[str] = None

    def record_pid(self, role: str, pid: int) -> None:
        self.pids[role] = int(pid)

    def finalize(self, status: str) -> None:
        self.status = status
        self.finished_at = _now()
        path = Path(self.log_dir) / "trial.json"
        path.write_text(json.dumps(asdict(self), indent=2, default=str), encoding="utf-8")


def write_summary(path: Path, session_dir: Path, results: List[TrialResult]) -> None:
    payload = {
        "session_dir": str(session_dir),
        "trials": [asdict(result) for result in results],
        "generated_at": _now(),
    }
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
