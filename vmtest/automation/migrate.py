#!/usr/bin/env python3
"""The page-migration tool under test; runs until it is killed."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import List, Optional

from vmtest.automation.process_utils import ProcessHandle, spawn_process


def migrate_base_name(migrate_cmd: str) -> str:
    return Path(migrate_cmd.split()[0]).name


def build_migrate_argv(migrate_cmd: str, migrate_config: str, base_dir: Path) -> List[str]:
    argv = shlex.split(migrate_cmd)
    binary = Path(argv[0])
    # bare names that are not in base_dir are looked up on PATH
    if not binary.is_absolute() and ("/" in argv[0] or (base_dir / binary).exists()):
        binary = base_dir / binary
    config = Path(migrate_config)
    if not config.is_absolute():
        config = base_dir / config
    return [str(binary), *argv[1:], "-c", str(config)]


class MigrationTrigger:
    def __init__(self, argv: List[str]):
        self.argv = argv
        self.handle: Optional[ProcessHandle] = None

    def start(self, log_path: Path) -> ProcessHandle:
        print("[migrate] " + " ".join(self.argv) + " > " + str(log_path))
        self.handle = spawn_process("migrate", self.argv, log_path=log_path, must_terminate=True)
        return self.handle

    def terminate(self) -> None:
        if self.handle is not None:
            self.handle.kill()
