#!/usr/bin/env python3
"""ssh/rsync access to the guest through the VM's forwarded ssh port."""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List


def quote_guest_path(path: str) -> str:
    # keep ~/ unquoted so the guest shell expands it
    if path.startswith("~/") and " " not in path:
        return path
    return shlex.quote(path)


@dataclass
class GuestShell:
    port: str = "2222"
    user_host: str = "root@localhost"
    workdir: str = "~/test"
    ssh_bin: str = "ssh"
    rsync_bin: str = "rsync"
    ssh_options: List[str] = field(default_factory=list)

    def guest_path(self, name: str) -> str:
        return f"{self.workdir.rstrip('/')}/{name}"

    def ssh_argv(self, remote_cmd: str) -> List[str]:
        return [self.ssh_bin, *self.ssh_options, "-p", str(self.port), self.user_host, remote_cmd]

    def env_argv(self, params: Dict[str, object], script: str) -> List[str]:
        """``env K=V ... <workdir>/<script>`` run through ssh."""
        assignments = [shlex.quote(f"{key}={value}") for key, value in params.items()]
        remote_cmd = " ".join(["env", *assignments, quote_guest_path(self.guest_path(script))])
        return self.ssh_argv(remote_cmd)

    def run(self, remote_cmd: str) -> int:
        try:
            cp = subprocess.run(self.ssh_argv(remote_cmd), check=False, stdin=subprocess.DEVNULL)
        except OSError as exc:
            print(f"[ssh] {self.ssh_bin}: {exc}")
            return 127
        return cp.returncode

    def rsync_argv(self, local: Path) -> List[str]:
        transport = " ".join([self.ssh_bin, *self.ssh_options, "-p", str(self.port)])
        return [self.rsync_bin, "-a", "-e", transport, str(local), f"{self.user_host}:{self.workdir.rstrip('/')}/"]

    def push(self, local: Path) -> None:
        """Copy ``local`` into the guest workdir; raises CalledProcessError/OSError."""
        argv = self.rsync_argv(local)
        print("[rsync] " + " ".join(argv))
        subprocess.run(argv, check=True, stdin=subprocess.DEVNULL)
