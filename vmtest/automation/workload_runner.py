#!/usr/bin/env python3
"""Push the workload script into the guest, run it and follow its log."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from vmtest.automation.guest_shell import GuestShell
from vmtest.automation.process_utils import ProcessHandle, spawn_process

DEFAULT_MILESTONE_TIMEOUT_S = 300
DEFAULT_SETTLE_S = 5


class DeploymentError(RuntimeError):
    pass


@dataclass(frozen=True)
class MilestoneWait:
    text: str
    timeout_s: int = DEFAULT_MILESTONE_TIMEOUT_S


@dataclass(frozen=True)
class FixedDelay:
    seconds: float = DEFAULT_SETTLE_S


StartupWait = Union[MilestoneWait, FixedDelay]


def wait_log_message(log_path: Path, message: str, timeout_s: int = DEFAULT_MILESTONE_TIMEOUT_S) -> bool:
    """Poll ``log_path`` once a second until it contains ``message``.

    A timeout is not an error: a warning is printed and False returned.
    """
    for _ in range(timeout_s):
        time.sleep(1)
        try:
            if message in log_path.read_text(encoding="utf-8", errors="replace"):
                return True
        except FileNotFoundError:
            continue
    print(f"WARNING: timeout waiting for '{message}' in {log_path}")
    return False


class WorkloadRunner:
    def __init__(self, script: Path, shell: GuestShell):
        self.script = script
        self.shell = shell
        self.handle: Optional[ProcessHandle] = None

    def deploy(self) -> None:
        try:
            self.shell.push(self.script)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise DeploymentError(f"failed to sync {self.script} to guest {self.shell.workdir}: {exc}") from exc

    def launch(self, params: Dict[str, object], log_path: Path) -> ProcessHandle:
        argv = self.shell.env_argv(params, self.script.name)
        print("[workload] " + " ".join(argv) + " > " + str(log_path))
        self.handle = spawn_process("workload", argv, log_path=log_path, must_terminate=True)
        return self.handle

    def wait_startup(self, strategy: StartupWait, log_path: Path) -> bool:
        if isinstance(strategy, MilestoneWait):
            return wait_log_message(log_path, strategy.text, strategy.timeout_s)
        time.sleep(strategy.seconds)
        return True

    def await_completion(self) -> int:
        # no timeout: a hung workload hangs the session
        if self.handle is None:
            raise RuntimeError("workload was never launched")
        return self.handle.wait()
