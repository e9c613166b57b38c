#!/usr/bin/env python3
"""Load an experiment scheme from vmtest/configs/schemes/*.yaml."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from vmtest.automation.guest_shell import GuestShell
from vmtest.automation.guest_vm import VMSettings
from vmtest.automation.pressure import PressureSettings
from vmtest.automation.workload_runner import FixedDelay, MilestoneWait, StartupWait

CONFIG_ROOT = Path("vmtest/configs/schemes")
REQUIRED_KEYS = (
    "dram_nodes",
    "pmem_nodes",
    "ratios",
    "workload_script",
    "workload_params",
    "migrate_cmd",
    "migrate_config",
)
ALLOWED_SCHEME_KEYS = set(REQUIRED_KEYS) | {
    "single_dram_node",
    "host_workspace",
    "scripts_dir",
    "vm",
    "startup_wait",
    "pressure",
    "host",
    "description",
}


@dataclass(frozen=True)
class HostSettings:
    transparent_hugepage: Optional[str] = None
    numa_balancing: Optional[int] = None
    modules: Tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return self.transparent_hugepage is None and self.numa_balancing is None and not self.modules


@dataclass(frozen=True)
class ExperimentScheme:
    dram_nodes: Tuple
    pmem_nodes: Tuple
    ratios: Tuple[int, ...]
    workload_script: str
    workload_params: Tuple[Dict[str, object], ...]
    migrate_cmd: str
    migrate_config: str
    single_dram_node: bool = False
    base_dir: Path = Path(".")
    scripts_dir: Path = Path(".")
    host_workspace: Path = Path("log")
    vm: VMSettings = field(default_factory=lambda: VMSettings(script=Path("kvm.sh")))
    startup_wait: StartupWait = FixedDelay()
    pressure: PressureSettings = field(default_factory=PressureSettings)
    host: HostSettings = field(default_factory=HostSettings)

    @property
    def workload_path(self) -> Path:
        return self.scripts_dir / self.workload_script


def _warn_unknown_keys(label: str, mapping: Dict) -> None:
    unknown = sorted(set(mapping.keys()) - ALLOWED_SCHEME_KEYS)
    if unknown:
        print(
            f"[scheme] warning: unrecognized top-level keys {unknown} in {label}; they will be ignored",
            file=sys.stderr,
        )


def _resolve(base: Path, value) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base / path


def parse_startup_wait(raw: Optional[Dict]) -> StartupWait:
    if not raw:
        return FixedDelay()
    if "milestone" in raw and "delay_s" in raw:
        raise ValueError("startup_wait takes either 'milestone' or 'delay_s', not both")
    if "milestone" in raw:
        return MilestoneWait(text=str(raw["milestone"]), timeout_s=int(raw.get("timeout_s", 300)))
    return FixedDelay(seconds=float(raw.get("delay_s", 5)))


def _parse_vm(raw: Dict, scripts_dir: Path) -> VMSettings:
    shell = GuestShell(
        port=str(raw.get("ssh_port", 2222)),
        user_host=str(raw.get("user_host", "root@localhost")),
        workdir=str(raw.get("guest_workspace", "~/test")),
        ssh_bin=str(raw.get("ssh", "ssh")),
        rsync_bin=str(raw.get("rsync", "rsync")),
        ssh_options=[str(opt) for opt in raw.get("ssh_options", [])],
    )
    return VMSettings(
        script=_resolve(scripts_dir, raw.get("script", "kvm.sh")),
        smp=str(raw.get("smp", 2)),
        mem=str(raw.get("mem", "8G")),
        boot_attempts=int(raw.get("boot_attempts", 9)),
        capture_rss=bool(raw.get("capture_rss", False)),
        shell=shell,
    )


def scheme_from_dict(raw: Dict, base_dir: Path, label: str = "<scheme>") -> ExperimentScheme:
    if not isinstance(raw, dict):
        raise ValueError(f"{label}: scheme must be a mapping")
    _warn_unknown_keys(label, raw)
    missing = [key for key in REQUIRED_KEYS if key not in raw]
    if missing:
        raise ValueError(f"{label}: missing required keys {missing}")
    ratios = tuple(int(r) for r in raw["ratios"])
    if any(r < 0 for r in ratios):
        raise ValueError(f"{label}: ratios must be non-negative, got {list(ratios)}")
    # [] runs no trials; a bare {} entry runs the script without extra env
    params = raw["workload_params"]
    if not isinstance(params, list) or not all(isinstance(p, dict) for p in params):
        raise ValueError(f"{label}: workload_params must be a list of mappings")
    if not str(raw["migrate_cmd"]).split():
        raise ValueError(f"{label}: migrate_cmd is empty")

    scripts_dir = _resolve(base_dir, raw.get("scripts_dir", "."))
    host_raw = raw.get("host") or {}
    pressure_raw = raw.get("pressure") or {}
    return ExperimentScheme(
        dram_nodes=tuple(raw["dram_nodes"] or ()),
        pmem_nodes=tuple(raw["pmem_nodes"] or ()),
        ratios=ratios,
        workload_script=str(raw["workload_script"]),
        workload_params=tuple(dict(p) for p in params),
        migrate_cmd=str(raw["migrate_cmd"]),
        migrate_config=str(raw["migrate_config"]),
        single_dram_node=bool(raw.get("single_dram_node", False)),
        base_dir=base_dir,
        scripts_dir=scripts_dir,
        host_workspace=_resolve(base_dir, raw.get("host_workspace", "log")),
        vm=_parse_vm(raw.get("vm") or {}, scripts_dir),
        startup_wait=parse_startup_wait(raw.get("startup_wait")),
        pressure=PressureSettings(
            numactl=str(pressure_raw.get("numactl", "numactl")),
            usemem=str(pressure_raw.get("usemem", "usemem")),
        ),
        host=HostSettings(
            transparent_hugepage=(
                str(host_raw["transparent_hugepage"]) if host_raw.get("transparent_hugepage") is not None else None
            ),
            numa_balancing=int(host_raw["numa_balancing"]) if host_raw.get("numa_balancing") is not None else None,
            modules=tuple(str(m) for m in host_raw.get("modules", [])),
        ),
    )


def load_scheme(name: str, path_override: Optional[str] = None) -> ExperimentScheme:
    path = Path(path_override) if path_override else CONFIG_ROOT / f"{name}.yaml"
    if not path.exists():
        raise FileNotFoundError(f"scheme not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    return scheme_from_dict(raw, base_dir=path.resolve().parent, label=str(path))
