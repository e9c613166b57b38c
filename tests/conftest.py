import shutil
from pathlib import Path

import pytest

from vmtest.automation import guest_vm, migrate, pressure, workload_runner
from vmtest.automation.process_utils import spawn_process
from vmtest.automation.scheme import scheme_from_dict


def make_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


FAKE_KVM = """\
echo "$interleave" >> "$FAKE_VM_DIR/interleave"
echo "qemu booted smp=$qemu_smp mem=$qemu_mem ssh=$qemu_ssh" > "$qemu_log"
while [ ! -f "$FAKE_VM_DIR/halt" ]; do sleep 0.05; done
rm -f "$FAKE_VM_DIR/halt"
"""

FAKE_SSH = """\
echo "$*" >> "$FAKE_VM_DIR/ssh.log"
case "$*" in
  *reboot*) touch "$FAKE_VM_DIR/halt" ;;
  *" env "*) echo "Threads started"; sleep "${FAKE_WORKLOAD_S:-0.5}"; echo "workload done" ;;
esac
exit 0
"""

FAKE_RSYNC = """\
echo "$*" >> "$FAKE_VM_DIR/rsync.log"
exit "${FAKE_RSYNC_RC:-0}"
"""

FAKE_NUMACTL = """\
echo "$*" >> "$FAKE_VM_DIR/usemem.log"
exec sleep 60
"""

FAKE_MIGRATE = """\
echo "migrating $*"
exec sleep 60
"""


@pytest.fixture
def fake_host(tmp_path, monkeypatch):
    """Fake launcher, ssh, rsync, numactl and migration tool plus per-node vmstat files."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    state = tmp_path / "state"
    state.mkdir()
    monkeypatch.setenv("FAKE_VM_DIR", str(state))

    make_script(bin_dir / "kvm.sh", FAKE_KVM)
    make_script(bin_dir / "ssh", FAKE_SSH)
    make_script(bin_dir / "rsync", FAKE_RSYNC)
    make_script(bin_dir / "numactl", FAKE_NUMACTL)
    make_script(bin_dir / "sys-refs", FAKE_MIGRATE)
    make_script(bin_dir / "run-sysbench.sh", "echo sysbench\n")
    (bin_dir / "sys-refs.yaml").write_text("interval: 1\n")

    nodes = tmp_path / "nodes"
    for nid, free in ((0, 262144), (1, 131072)):
        (nodes / f"node{nid}").mkdir(parents=True)
        (nodes / f"node{nid}" / "vmstat").write_text(
            f"nr_free_pages {free}\nnr_zone_inactive_anon 7\nnr_inactive_file 1024\n"
        )

    return {"bin": bin_dir, "state": state, "nodes": nodes, "root": tmp_path}


@pytest.fixture
def scheme_dict(fake_host):
    bin_dir = fake_host["bin"]
    return {
        "dram_nodes": [0, 1],
        "pmem_nodes": [2, 3, 4, 5],
        "ratios": [4],
        "workload_script": "run-sysbench.sh",
        "workload_params": [{"memory": "1G", "threads": 2}],
        "migrate_cmd": "bin/sys-refs -d 1",
        "migrate_config": "bin/sys-refs.yaml",
        "scripts_dir": "bin",
        "host_workspace": "log",
        "startup_wait": {"milestone": "Threads started", "timeout_s": 5},
        "vm": {
            "script": "kvm.sh",
            "smp": 2,
            "mem": "1G",
            "ssh": str(bin_dir / "ssh"),
            "rsync": str(bin_dir / "rsync"),
            "boot_attempts": 1,
        },
        "pressure": {"numactl": str(bin_dir / "numactl"), "usemem": "usemem"},
    }


@pytest.fixture
def make_scheme(fake_host, scheme_dict):
    def _make(**overrides):
        raw = dict(scheme_dict)
        raw.update(overrides)
        return scheme_from_dict(raw, base_dir=fake_host["root"], label="test-scheme")

    return _make


@pytest.fixture
def spawned(monkeypatch):
    """Record every ProcessHandle the automation modules start."""
    handles = []

    def _recording_spawn(*args, **kwargs):
        handle = spawn_process(*args, **kwargs)
        handles.append(handle)
        return handle

    for module in (guest_vm, workload_runner, pressure, migrate):
        monkeypatch.setattr(module, "spawn_process", _recording_spawn)
    return handles


@pytest.fixture
def false_bin():
    path = shutil.which("false")
    assert path, "false(1) is required"
    return path
