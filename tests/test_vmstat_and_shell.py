import os

import pytest

from vmtest.automation.guest_shell import GuestShell, quote_guest_path
from vmtest.automation.migrate import MigrationTrigger, build_migrate_argv, migrate_base_name
from vmtest.automation.vmstat import PAGE_SIZE, MemorySnapshot, NodeVmstat, read_rss_kb


def test_node_vmstat_reads_free_and_inactive_file(fake_host):
    snapshot = NodeVmstat(fake_host["nodes"]).snapshot(1)
    assert snapshot == MemorySnapshot(node=1, free_pages=131072, inactive_file_pages=1024)
    assert snapshot.reclaimable_bytes == (131072 + 1024) * PAGE_SIZE
    assert snapshot.reclaimable_kb == snapshot.reclaimable_bytes // 1024


def test_node_vmstat_missing_counter(tmp_path):
    (tmp_path / "node0").mkdir()
    (tmp_path / "node0" / "vmstat").write_text("nr_free_pages 10\n")
    with pytest.raises(ValueError, match="nr_inactive_file"):
        NodeVmstat(tmp_path).snapshot(0)


def test_read_rss_kb(tmp_path):
    (tmp_path / "42").mkdir()
    (tmp_path / "42" / "status").write_text("Name:\tqemu\nVmRSS:\t  123456 kB\n")
    assert read_rss_kb(42, proc_root=tmp_path) == 123456
    assert read_rss_kb(43, proc_root=tmp_path) is None
    assert read_rss_kb(os.getpid()) > 0


def test_guest_paths_keep_tilde_unquoted():
    assert quote_guest_path("~/test") == "~/test"
    assert quote_guest_path("/guest dir/x") == "'/guest dir/x'"


def test_shell_argv_forms(tmp_path):
    shell = GuestShell(port="2222", ssh_options=["-o", "BatchMode=yes"])
    assert shell.ssh_argv("/sbin/reboot") == ["ssh", "-o", "BatchMode=yes", "-p", "2222", "root@localhost", "/sbin/reboot"]
    assert shell.env_argv({"size": "1G", "label": "a b"}, "wl.sh")[-1] == "env size=1G 'label=a b' ~/test/wl.sh"
    assert shell.rsync_argv(tmp_path / "wl.sh") == [
        "rsync", "-a", "-e", "ssh -o BatchMode=yes -p 2222", str(tmp_path / "wl.sh"), "root@localhost:~/test/",
    ]


def test_migrate_argv_and_base_name(tmp_path):
    assert migrate_base_name("bin/sys-refs -d 10 -s 5") == "sys-refs"
    argv = build_migrate_argv("bin/sys-refs -d 10", "conf/refs.yaml", tmp_path)
    assert argv == [str(tmp_path / "bin/sys-refs"), "-d", "10", "-c", str(tmp_path / "conf/refs.yaml")]
    assert build_migrate_argv("sleep 5", "/etc/refs.yaml", tmp_path) == ["sleep", "5", "-c", "/etc/refs.yaml"]


def test_migration_trigger_is_killed_not_waited(fake_host, tmp_path, capsys):
    trigger = MigrationTrigger([str(fake_host["bin"] / "sys-refs"), "-d", "1"])
    log = tmp_path / "migrate.log"
    handle = trigger.start(log)
    assert handle.alive()
    trigger.terminate()
    assert not handle.alive()
    assert handle.returncode == -9
    assert "[launcher] starting migrate:" in log.read_text()
    assert capsys.readouterr().out.startswith("[migrate] " + str(fake_host["bin"] / "sys-refs") + " -d 1 > ")
