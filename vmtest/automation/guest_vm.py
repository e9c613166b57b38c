#!/usr/bin/env python3
"""Boot, probe and shut down the QEMU guest a trial runs in."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from vmtest.automation.guest_shell import GuestShell, quote_guest_path
from vmtest.automation.node_alloc import NodeSelection
from vmtest.automation.process_utils import ProcessHandle, spawn_process
from vmtest.automation.vmstat import read_rss_kb


class VMReadinessError(RuntimeError):
    pass


class VMState(enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class VMSettings:
    script: Path
    smp: str = "2"
    mem: str = "8G"
    boot_attempts: int = 9
    capture_rss: bool = False
    shell: GuestShell = field(default_factory=GuestShell)


class GuestVM:
    def __init__(self, settings: VMSettings, log_path: Path):
        self.settings = settings
        self.log_path = log_path
        self.state = VMState.NOT_STARTED
        self.handle: Optional[ProcessHandle] = None
        self.rss_kb: Optional[int] = None
        self.probe_attempts = 0

    @property
    def shell(self) -> GuestShell:
        return self.settings.shell

    def launch_env(self, selection: NodeSelection) -> dict:
        return {
            "interleave": selection.interleave_arg(),
            "qemu_smp": str(self.settings.smp),
            "qemu_mem": str(self.settings.mem),
            "qemu_ssh": str(self.shell.port),
            "qemu_log": str(self.log_path),
        }

    def start(self, selection: NodeSelection) -> ProcessHandle:
        if self.state is not VMState.NOT_STARTED:
            raise RuntimeError(f"VM already {self.state.value}")
        env = self.launch_env(selection)
        argv = [str(self.settings.script)]
        print("[vm] env " + " ".join(f"{k}={v}" for k, v in env.items()) + " " + argv[0])
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.handle = spawn_process("qemu", argv, env=env, must_terminate=True)
        self.state = VMState.STARTING
        return self.handle

    def probe(self) -> bool:
        return self.shell.run(f"mkdir -p {quote_guest_path(self.shell.workdir)}") == 0

    def backoff_schedule(self, max_attempts: Optional[int] = None) -> List[int]:
        attempts = self.settings.boot_attempts if max_attempts is None else max_attempts
        return list(range(attempts, 0, -1))

    def wait_ready(self, max_attempts: Optional[int] = None) -> None:
        """Probe the guest with a shrinking sleep before each try (9s, 8s, ... 1s).

        Raises VMReadinessError after killing the VM if no probe succeeds.
        """
        if self.state is not VMState.STARTING:
            raise RuntimeError(f"cannot wait for a VM in state {self.state.value}")
        for delay in self.backoff_schedule(max_attempts):
            time.sleep(delay)
            self.probe_attempts += 1
            if self.probe():
                self.state = VMState.READY
                return
        print("[vm] failed to ssh VM")
        self.handle.kill()
        self.state = VMState.FAILED
        raise VMReadinessError(
            f"guest unreachable on ssh port {self.shell.port} after {self.probe_attempts} attempts"
        )

    def mark_running(self) -> None:
        if self.state is VMState.READY:
            self.state = VMState.RUNNING

    def capture_rss(self) -> Optional[int]:
        """Record QEMU's resident set so a later trial can size memory pressure."""
        if self.handle is None:
            return None
        rss_kb = read_rss_kb(self.handle.pid)
        if rss_kb is not None:
            self.rss_kb = rss_kb
            print(f"[vm] QEMU RSS: {rss_kb >> 10}M")
        return rss_kb

    def stop(self) -> None:
        if self.settings.capture_rss:
            self.capture_rss()
        self.state = VMState.SHUTTING_DOWN
        # QEMU may not exit on halt
        self.shell.run("/sbin/reboot")
        if self.handle is not None:
            self.handle.wait()
        self.state = VMState.STOPPED

    def kill(self) -> None:
        if self.handle is not None:
            self.handle.kill()
        self.state = VMState.STOPPED
