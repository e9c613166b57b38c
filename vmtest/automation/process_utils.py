#!/usr/bin/env python3
"""Process handles for the VM, the guest workload and the background helpers."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, IO, List, Optional


class ProcessLaunchError(RuntimeError):
    pass


class ProcessLeakError(RuntimeError):
    pass


@dataclass
class ProcessHandle:
    name: str
    proc: subprocess.Popen
    log_path: Optional[Path] = None
    must_terminate: bool = False
    _log_file: Optional[IO[str]] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    def alive(self) -> bool:
        return self.proc.poll() is None

    def wait(self) -> int:
        try:
            return self.proc.wait()
        finally:
            self._close_log()

    def kill(self) -> None:
        """SIGKILL the process (if still running) and reap it."""
        if self.proc.poll() is None:
            self.proc.kill()
        self.proc.wait()
        self._close_log()

    def _close_log(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None


def spawn_process(
    name: str,
    argv: List[str],
    log_path: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    must_terminate: bool = False,
) -> ProcessHandle:
    """Start a process without waiting for it.

    When ``log_path`` is given, stdout and stderr go to that file, which
    starts with a one-line header naming the command. ``env`` is merged on top
    of the current environment.
    """
    stdout = None
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stdout = open(log_path, "w", encoding="utf-8")
        stdout.write(f"[launcher] starting {name}: {' '.join(argv)}\n")
        stdout.flush()
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)
    try:
        proc = subprocess.Popen(
            argv,
            env=full_env,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.STDOUT if stdout else None,
        )
    except OSError as exc:
        if stdout:
            stdout.close()
        raise ProcessLaunchError(f"failed to start {name}: {exc}") from exc
    return ProcessHandle(name=name, proc=proc, log_path=log_path, must_terminate=must_terminate, _log_file=stdout)


def ensure_closed(handles: List[ProcessHandle]) -> None:
    """Raise ProcessLeakError if a handle marked must_terminate is still running."""
    leaked = [f"{h.name}(pid={h.pid})" for h in handles if h.must_terminate and h.alive()]
    if leaked:
        raise ProcessLeakError(f"processes still running at close: {', '.join(leaked)}")


class ProcessGroup:
    """Handles that must all be gone before their owner is closed.

    Used as a context manager: leaving the block force-kills every member
    that is still running.
    """

    def __init__(self, label: str):
        self.label = label
        self.handles: List[ProcessHandle] = []

    def add(self, handle: ProcessHandle) -> ProcessHandle:
        self.handles.append(handle)
        return handle

    def live(self) -> List[ProcessHandle]:
        return [h for h in self.handles if h.alive()]

    def kill_all(self) -> int:
        killed = 0
        for handle in self.handles:
            if handle.alive():
                killed += 1
            handle.kill()
        return killed

    def __enter__(self) -> "ProcessGroup":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.kill_all()
        ensure_closed(self.handles)

    def __len__(self) -> int:
        return len(self.handles)
