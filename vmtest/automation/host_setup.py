#!/usr/bin/env python3
"""Host kernel knobs applied before a session, and a record of the host."""

from __future__ import annotations

import json
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

THP_ENABLED = Path("/sys/kernel/mm/transparent_hugepage/enabled")
NUMA_BALANCING = Path("/proc/sys/kernel/numa_balancing")


def _write_knob(path: Path, value) -> bool:
    try:
        path.write_text(f"{value}\n", encoding="utf-8")
        return True
    except OSError as exc:
        print(f"WARNING: cannot write {value} to {path}: {exc}")
        return False


def prepare_host(settings, thp_path: Path = THP_ENABLED, numa_balancing_path: Path = NUMA_BALANCING) -> List[str]:
    """Apply the scheme's host settings; returns what was applied."""
    applied: List[str] = []
    if settings.transparent_hugepage is not None:
        if _write_knob(thp_path, settings.transparent_hugepage):
            applied.append(f"transparent_hugepage={settings.transparent_hugepage}")
    if settings.numa_balancing is not None:
        if _write_knob(numa_balancing_path, settings.numa_balancing):
            applied.append(f"numa_balancing={settings.numa_balancing}")
    for module in settings.modules:
        try:
            cp = subprocess.run(["modprobe", module], check=False)
        except OSError as exc:
            print(f"WARNING: modprobe {module}: {exc}")
            continue
        if cp.returncode != 0:
            print(f"WARNING: modprobe {module} failed with code {cp.returncode}")
            continue
        applied.append(f"module={module}")
    return applied


def _read_optional(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return None


def capture_host_facts(session_dir: Path) -> None:
    def _run(argv: List[str]) -> Optional[str]:
        try:
            cp = subprocess.run(argv, check=False, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
            return cp.stdout.strip()
        except OSError:
            return None

    facts: Dict[str, object] = {
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "uname": _run(["uname", "-a"]),
        "numactl_hardware": _run(["numactl", "--hardware"]) if shutil.which("numactl") else None,
        "numa_balancing": _read_optional(NUMA_BALANCING),
        "transparent_hugepage": _read_optional(THP_ENABLED),
    }
    try:
        session_dir.mkdir(parents=True, exist_ok=True)
        (session_dir / "host_facts.json").write_text(json.dumps(facts, indent=2), encoding="utf-8")
    except OSError:
        pass
