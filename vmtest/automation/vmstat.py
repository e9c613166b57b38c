#!/usr/bin/env python3
"""Per-node memory counters and process RSS readers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

PAGE_SIZE = 4096
NODE_SYSFS_ROOT = Path("/sys/devices/system/node")
PROC_ROOT = Path("/proc")


@dataclass(frozen=True)
class MemorySnapshot:
    node: int
    free_pages: int
    inactive_file_pages: int

    @property
    def reclaimable_pages(self) -> int:
        return self.free_pages + self.inactive_file_pages

    @property
    def reclaimable_kb(self) -> int:
        return self.reclaimable_pages * (PAGE_SIZE >> 10)

    @property
    def reclaimable_bytes(self) -> int:
        return self.reclaimable_pages * PAGE_SIZE


def _parse_counters(text: str) -> Dict[str, int]:
    values: Dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        try:
            values[parts[0]] = int(parts[1])
        except ValueError:
            continue
    return values


class NodeVmstat:
    """Reads ``node<N>/vmstat`` files; any object with ``snapshot(node)`` will do."""

    def __init__(self, root: Optional[Path] = None):
        self.root = root or NODE_SYSFS_ROOT

    def snapshot(self, node) -> MemorySnapshot:
        path = self.root / f"node{node}" / "vmstat"
        counters = _parse_counters(path.read_text(encoding="utf-8"))
        try:
            return MemorySnapshot(
                node=int(node),
                free_pages=counters["nr_free_pages"],
                inactive_file_pages=counters["nr_inactive_file"],
            )
        except KeyError as exc:
            raise ValueError(f"{path} has no {exc.args[0]} counter") from exc


def read_rss_kb(pid: int, proc_root: Optional[Path] = None) -> Optional[int]:
    """VmRSS of ``pid`` in KiB, or None when the process is gone."""
    status = (proc_root or PROC_ROOT) / str(pid) / "status"
    try:
        lines = status.read_text(encoding="utf-8", errors="ignore").splitlines()
    except FileNotFoundError:
        return None
    for line in lines:
        if line.startswith("VmRSS:"):
            _, value = line.split(":", 1)
            return int(value.split()[0])
    return None
