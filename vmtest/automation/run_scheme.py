#!/usr/bin/env python3
"""Run baseline and migration trials for every ratio of a scheme.

Basic test scheme:

baseline run:
    - run qemu on interleaved DRAM+PMEM nodes
    - run workload in qemu

migrate run:
    - run qemu on interleaved DRAM+PMEM nodes
    - run workload in qemu
    - run usemem to consume DRAM pages
    - run the migration tool, which moves hot pages to DRAM and so pushes
      cold pages out to PMEM
"""

from __future__ import annotations

import argparse
import contextlib
import json
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from vmtest.automation.guest_vm import GuestVM, VMReadinessError
from vmtest.automation.host_setup import capture_host_facts, prepare_host
from vmtest.automation.migrate import MigrationTrigger, build_migrate_argv, migrate_base_name
from vmtest.automation.node_alloc import NodeSelection, allocate_nodes
from vmtest.automation.pressure import PressureInjector
from vmtest.automation.process_utils import ProcessHandle, ensure_closed
from vmtest.automation.results import TrialResult, write_summary
from vmtest.automation.scheme import ExperimentScheme, load_scheme
from vmtest.automation.vmstat import NodeVmstat
from vmtest.automation.workload_runner import DeploymentError, WorkloadRunner

SESSION_TIME_FORMAT = "%Y-%m-%d.%H:%M:%S"


@dataclass(frozen=True)
class RunContext:
    ratio: int
    params: Dict[str, object]
    should_migrate: bool
    log_dir: Path

    @property
    def workload_log(self) -> Path:
        return self.log_dir / "workload.log"

    @property
    def migrate_log(self) -> Path:
        return self.log_dir / "migrate.log"

    @property
    def vm_log(self) -> Path:
        return self.log_dir / "vm.log"


def params_key(params: Dict[str, object]) -> str:
    return "#".join(f"{key}={value}" for key, value in params.items()) or "default"


def trial_log_dir(session_dir: Path, ratio: int, params: Dict[str, object], migrate_name: Optional[str] = None) -> Path:
    key = params_key(params)
    if migrate_name:
        key += "." + migrate_name
    return session_dir / f"ratio={ratio}" / key


def new_session_dir(host_workspace: Path, now: Optional[datetime] = None) -> Path:
    return host_workspace / (now or datetime.now()).strftime(SESSION_TIME_FORMAT)


def plan_trials(scheme: ExperimentScheme, session_dir: Path) -> Iterator[Tuple[RunContext, NodeSelection]]:
    """Yield (context, nodes) for every trial, in run order."""
    migrate_name = migrate_base_name(scheme.migrate_cmd)
    for ratio in scheme.ratios:
        selection = allocate_nodes(scheme.dram_nodes, scheme.pmem_nodes, ratio, scheme.single_dram_node)
        for params in scheme.workload_params:
            yield RunContext(ratio, dict(params), False, trial_log_dir(session_dir, ratio, params)), selection
            # nothing to migrate to without DRAM
            if selection.fast:
                log_dir = trial_log_dir(session_dir, ratio, params, migrate_name)
                yield RunContext(ratio, dict(params), True, log_dir), selection


def _log_progress(session_dir: Path, message: str) -> None:
    """Append a progress line to the session log so users can follow execution."""
    try:
        session_dir.mkdir(parents=True, exist_ok=True)
        with (session_dir / "progress.log").open("a", encoding="utf-8") as f:
            ts = datetime.now().isoformat(timespec="seconds")
            f.write(f"[{ts}] {message}\n")
    except OSError:
        # Best-effort only: don't break experiments if logging fails.
        pass


def _drive_workload(
    scheme: ExperimentScheme,
    ctx: RunContext,
    selection: NodeSelection,
    vm: GuestVM,
    runner: WorkloadRunner,
    result: TrialResult,
    stats,
    prior_rss_kb: Optional[int],
    handles: List[ProcessHandle],
) -> str:
    try:
        runner.deploy()
    except DeploymentError as exc:
        print(f"WARNING: {exc}")
        result.error = str(exc)
        return "deploy_failed"

    # Leaving the stack kills the migration tool, then usemem, then the workload.
    with contextlib.ExitStack() as stack:
        workload = runner.launch(ctx.params, ctx.workload_log)
        handles.append(workload)
        stack.callback(workload.kill)
        vm.mark_running()
        result.record_pid("workload", workload.pid)

        if ctx.should_migrate:
            runner.wait_startup(scheme.startup_wait, ctx.workload_log)
            rss_kb = vm.capture_rss() if scheme.vm.capture_rss else None
            if rss_kb is None:
                rss_kb = prior_rss_kb
            reserve_kb = rss_kb // len(selection.fast) if rss_kb else 0

            injector = PressureInjector(scheme.pressure)
            stack.callback(injector.terminate_all)
            for handle in injector.inject(selection, stats, reserve_kb=reserve_kb):
                handles.append(handle)
                result.record_pid(handle.name, handle.pid)
            result.pressure_targets_kb = dict(injector.report.targets_kb)
            result.pressure_skipped = list(injector.report.skipped)

            trigger = MigrationTrigger(build_migrate_argv(scheme.migrate_cmd, scheme.migrate_config, scheme.base_dir))
            stack.callback(trigger.terminate)
            migrate = trigger.start(ctx.migrate_log)
            handles.append(migrate)
            result.record_pid("migrate", migrate.pid)

        result.workload_returncode = runner.await_completion()
    return "ok"


def run_trial(
    scheme: ExperimentScheme,
    ctx: RunContext,
    selection: NodeSelection,
    stats=None,
    prior_rss_kb: Optional[int] = None,
) -> TrialResult:
    """Run one baseline or migrate trial; every child is gone when this returns.

    VMReadinessError propagates and is meant to end the session. Any other
    exception kills the VM before propagating.
    """
    print("-" * 80)
    print(f"{datetime.now()}  Running test with params {ctx.params} should_migrate={ctx.should_migrate}")
    ctx.log_dir.mkdir(parents=True, exist_ok=True)
    result = TrialResult(
        ratio=ctx.ratio,
        params=dict(ctx.params),
        should_migrate=ctx.should_migrate,
        log_dir=str(ctx.log_dir),
        fast_nodes=[str(n) for n in selection.fast],
        slow_nodes=[str(n) for n in selection.slow],
    )

    handles: List[ProcessHandle] = []
    vm = GuestVM(scheme.vm, ctx.vm_log)
    try:
        handles.append(vm.start(selection))
        result.record_pid("qemu", vm.handle.pid)
        vm.wait_ready()
        runner = WorkloadRunner(scheme.workload_path, scheme.vm.shell)
        status = _drive_workload(
            scheme, ctx, selection, vm, runner, result, stats or NodeVmstat(), prior_rss_kb, handles
        )
        vm.stop()
    except VMReadinessError as exc:
        result.error = str(exc)
        result.finalize("vm_unreachable")
        raise
    except BaseException as exc:
        vm.kill()
        result.error = f"{type(exc).__name__}: {exc}"
        result.finalize("error")
        raise

    ensure_closed(handles)
    result.vm_rss_kb = vm.rss_kb
    result.finalize(status)
    return result


def run_session(scheme: ExperimentScheme, session_dir: Path, stats=None) -> List[TrialResult]:
    results: List[TrialResult] = []
    last_rss_kb: Optional[int] = None
    for ctx, selection in plan_trials(scheme, session_dir):
        _log_progress(
            session_dir,
            f"[runner] ratio={ctx.ratio} params={params_key(ctx.params)} migrate={ctx.should_migrate} "
            f"interleave={selection.interleave_arg()}",
        )
        result = run_trial(scheme, ctx, selection, stats=stats, prior_rss_kb=last_rss_kb)
        if result.vm_rss_kb is not None:
            last_rss_kb = result.vm_rss_kb
        _log_progress(session_dir, f"[runner] trial {result.status}: {ctx.log_dir}")
        results.append(result)
    return results


def describe_plan(scheme: ExperimentScheme, session_dir: Path) -> List[Dict[str, object]]:
    return [
        {
            "ratio": ctx.ratio,
            "params": ctx.params,
            "should_migrate": ctx.should_migrate,
            "dram_nodes": list(selection.fast),
            "pmem_nodes": list(selection.slow),
            "interleave": selection.interleave_arg(),
            "log_dir": str(ctx.log_dir),
        }
        for ctx, selection in plan_trials(scheme, session_dir)
    ]


def run_scheme(args) -> List[TrialResult]:
    scheme = load_scheme(args.scheme, args.config)
    workspace = Path(args.host_workspace) if args.host_workspace else scheme.host_workspace
    session_dir = new_session_dir(workspace)

    if args.dry_run:
        try:
            print(json.dumps(describe_plan(scheme, session_dir), indent=2, default=str))
        except BrokenPipeError:
            # Common when piping to `head`; exit cleanly.
            pass
        return []

    if not args.skip_host_setup and not scheme.host.is_empty():
        for item in prepare_host(scheme.host):
            print(f"[host] {item}")
    capture_host_facts(session_dir)
    _log_progress(session_dir, f"[runner] starting scheme {args.config or args.scheme}")

    try:
        results = run_session(scheme, session_dir)
    except VMReadinessError as exc:
        _log_progress(session_dir, f"[runner] aborted: {exc}")
        print(f"[run_scheme] error: {exc}", file=sys.stderr)
        print(f"[run_scheme] hint: check {session_dir}/ratio=*/*/vm.log", file=sys.stderr)
        raise SystemExit(1)

    _log_progress(session_dir, f"[runner] session complete, {len(results)} trials")
    if args.summary:
        write_summary(Path(args.summary), session_dir, results)
    return results


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Run baseline/migration VM trials for a scheme")
    parser.add_argument("--scheme", default="default", help="Scheme name under vmtest/configs/schemes")
    parser.add_argument("--config", help="Scheme YAML path (overrides --scheme)")
    parser.add_argument("--host-workspace", help="Root for session log directories")
    parser.add_argument("--dry-run", action="store_true", help="Print the trial plan and exit")
    parser.add_argument("--skip-host-setup", action="store_true")
    parser.add_argument("--summary", help="Write JSON summary to path")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    run_scheme(parse_args(argv))


if __name__ == "__main__":
    main()
