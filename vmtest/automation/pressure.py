#!/usr/bin/env python3
"""Eat free DRAM on the selected fast nodes with node-bound usemem processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from vmtest.automation.node_alloc import NodeSelection
from vmtest.automation.process_utils import ProcessGroup, ProcessHandle, ensure_closed, spawn_process


@dataclass(frozen=True)
class PressureSettings:
    numactl: str = "numactl"
    usemem: str = "usemem"


@dataclass
class PressureReport:
    targets_kb: Dict[str, int] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


class PressureInjector:
    def __init__(self, settings: Optional[PressureSettings] = None):
        self.settings = settings or PressureSettings()
        self.group = ProcessGroup("usemem")
        self.report = PressureReport()
        self.terminated = False

    def usemem_argv(self, node, kb: int) -> List[str]:
        return [
            self.settings.numactl, "--membind", str(node),
            self.settings.usemem, "--sleep", "-1", "--step", "2m", "--mlock", "--prefault", f"{kb >> 10}m",
        ]

    def spawn_usemem(self, node, kb: int) -> Optional[ProcessHandle]:
        if kb < 0:
            print(f"WARNING: negative kb = {kb} for node {node}, not starting usemem")
            self.report.skipped.append(str(node))
            return None
        if kb >> 10 <= 0:
            print(f"WARNING: kb = {kb} for node {node} is under 1M, not starting usemem")
            self.report.skipped.append(str(node))
            return None
        argv = self.usemem_argv(node, kb)
        print("[pressure] " + " ".join(argv))
        self.report.targets_kb[str(node)] = kb
        return self.group.add(spawn_process(f"usemem[{node}]", argv, must_terminate=True))

    def inject(self, selection: NodeSelection, stats, reserve_kb: int = 0) -> List[ProcessHandle]:
        """Start one usemem per fast node sized to its free + inactive-file memory.

        ``reserve_kb`` is subtracted from every node's target, e.g. a share of
        the VM RSS captured in an earlier trial.
        """
        started: List[ProcessHandle] = []
        for node in selection.fast:
            snapshot = stats.snapshot(node)
            free_kb = snapshot.reclaimable_kb
            print(f"[pressure] Node {node}: free {free_kb >> 10}M")
            handle = self.spawn_usemem(node, free_kb - reserve_kb)
            if handle is not None:
                started.append(handle)
        return started

    def terminate_all(self) -> int:
        if self.terminated:
            return 0
        self.terminated = True
        killed = self.group.kill_all()
        ensure_closed(self.group.handles)
        return killed

    def live(self) -> List[ProcessHandle]:
        return self.group.live()
