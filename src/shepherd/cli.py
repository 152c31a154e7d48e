"""CLI entry points for shepherd.

Commands:
  shepherd register <name> --repo <path>  Register a project for supervision
  shepherd unregister <name>              Remove a project and its state
  shepherd status [name]                  Show daemon and project status
  shepherd run                            Run the supervision daemon
  shepherd once                           Run a single cycle and exit
  shepherd stop                           Ask a running daemon to stop
  shepherd clear-quarantine <name>        Resume a quarantined project
  shepherd approve <name>                 Approve the current phase
  shepherd transition <name> [--force]    Transition the current phase now
  shepherd budget                         Show advisory spend against caps
  shepherd decisions <name>               Render a project's decision log
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from shepherd.budget import BudgetLedger
from shepherd.config import (
    ConfigError,
    GlobalConfig,
    PhaseSpec,
    ProjectConfig,
    load_global_config,
)
from shepherd.lifecycle import format_project_summary, render_decision_log
from shepherd.orchestrator import OrchestratorRuntime, build_orchestrator
from shepherd.project import StateStore

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="shepherd",
        description="Supervisor for long-running coding-agent sessions",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-c", "--config", default=None,
        help="Path to config.yaml (default: $SHEPHERD_CONFIG or ~/.shepherd/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # register
    p_register = subparsers.add_parser("register", help="Register a project")
    p_register.add_argument("name", help="Project name")
    p_register.add_argument("--repo", required=True, help="Repository path")
    p_register.add_argument("--session", default="", help="Session id hint")
    p_register.add_argument("--branch", default="main", help="Branch to push (default: main)")
    p_register.add_argument("--auto-continue", action="store_true", help="Continue automatically when work remains")
    p_register.add_argument("--auto-commit", action="store_true", help="Commit and advance when a phase completes")
    p_register.add_argument("--auto-push", action="store_true", help="Push after each phase commit")
    p_register.add_argument(
        "--phase", action="append", default=[], dest="phases",
        help="Phase name, in order (repeatable; suffix with '!' to require approval)",
    )
    p_register.add_argument(
        "--approval-pattern", action="append", default=[], dest="approval_patterns",
        help="Problem pattern that always needs a human (repeatable)",
    )

    # unregister
    p_unregister = subparsers.add_parser("unregister", help="Remove a project and its state")
    p_unregister.add_argument("name", help="Project name")

    # status
    p_status = subparsers.add_parser("status", help="Show daemon and project status")
    p_status.add_argument("name", nargs="?", default=None, help="Project name (default: all)")
    p_status.add_argument("--json", action="store_true", dest="json_output", help="Output as JSON")

    # run
    p_run = subparsers.add_parser("run", help="Run the supervision daemon")
    p_run.add_argument("--interval", type=int, default=None, help="Seconds between cycles")
    p_run.add_argument("--max-cycles", type=int, default=None, help="Stop after N cycles")

    # once
    subparsers.add_parser("once", help="Run a single cycle and exit")

    # stop
    subparsers.add_parser("stop", help="Ask a running daemon to stop after its current cycle")

    # clear-quarantine
    p_clear = subparsers.add_parser("clear-quarantine", help="Resume a quarantined project")
    p_clear.add_argument("name", help="Project name")

    # approve
    p_approve = subparsers.add_parser("approve", help="Approve the current phase")
    p_approve.add_argument("name", help="Project name")

    # transition
    p_transition = subparsers.add_parser("transition", help="Transition the current phase")
    p_transition.add_argument("name", help="Project name")
    p_transition.add_argument("--force", action="store_true", help="Skip the completion check")

    # budget
    subparsers.add_parser("budget", help="Show advisory spend against caps")

    # decisions
    p_decisions = subparsers.add_parser("decisions", help="Render a project's decision log")
    p_decisions.add_argument("name", help="Project name")
    p_decisions.add_argument("--limit", type=int, default=50, help="Most recent N decisions")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        global_config = load_global_config(args.config)
        _dispatch(args, global_config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)


def _dispatch(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    if args.command == "register":
        cmd_register(args, global_config)
    elif args.command == "unregister":
        cmd_unregister(args, global_config)
    elif args.command == "status":
        cmd_status(args, global_config)
    elif args.command == "run":
        asyncio.run(cmd_run(args, global_config))
    elif args.command == "once":
        asyncio.run(cmd_once(args, global_config))
    elif args.command == "stop":
        cmd_stop(args, global_config)
    elif args.command == "clear-quarantine":
        cmd_clear_quarantine(args, global_config)
    elif args.command == "approve":
        cmd_approve(args, global_config)
    elif args.command == "transition":
        asyncio.run(cmd_transition(args, global_config))
    elif args.command == "budget":
        cmd_budget(args, global_config)
    elif args.command == "decisions":
        cmd_decisions(args, global_config)


def _require_project(store: StateStore, name: str) -> ProjectConfig:
    projects = store.load_projects()
    if name not in projects:
        print(f"Unknown project: {name}", file=sys.stderr)
        sys.exit(1)
    return projects[name]


def cmd_register(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    """Register (or re-register) a project."""
    phases = [
        PhaseSpec(name=p.rstrip("!"), require_approval=p.endswith("!"))
        for p in args.phases
    ] or [PhaseSpec(name="main")]
    config = ProjectConfig(
        name=args.name,
        repo_path=args.repo,
        session_id=args.session,
        branch=args.branch,
        auto_continue=args.auto_continue,
        auto_commit=args.auto_commit,
        auto_push=args.auto_push,
        human_approval_patterns=args.approval_patterns,
        phases=phases,
    )
    store = StateStore(global_config.state_path)
    store.init()
    store.register(config)
    print(f"Registered project: {args.name}")
    print(f"  Repo: {args.repo}")
    print(f"  Phases: {', '.join(p.name for p in phases)}")
    print(f"  Edit {store.registry_path} to add remedies")


def cmd_unregister(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    store = StateStore(global_config.state_path)
    if store.unregister(args.name):
        print(f"Unregistered project: {args.name}")
    else:
        print(f"Unknown project: {args.name}", file=sys.stderr)
        sys.exit(1)


def cmd_status(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    """Show daemon health and per-project summaries."""
    from shepherd.daemon import check_daemon_health

    store = StateStore(global_config.state_path)
    projects = store.load_projects()
    names = [args.name] if args.name else list(projects)
    if args.name:
        _require_project(store, args.name)

    health = check_daemon_health(store.state_dir)

    if args.json_output:
        data = {
            "daemon": health,
            "projects": {
                name: store.load_state(name, projects[name]).model_dump(mode="json")
                for name in names
            },
        }
        print(json.dumps(data, indent=2))
        return

    if health["alive"]:
        print(f"Daemon: running (PID {health['pid']})")
    elif health["pid"]:
        print(f"Daemon: PID file for {health['pid']} but process not found (stale?)")
    else:
        print("Daemon: not running")
    if health["shutdown_pending"]:
        print("  Shutdown requested")

    if not names:
        print("No projects registered. Use 'shepherd register' to add one.")
        return

    for name in names:
        config = projects[name]
        state = store.load_state(name, config)
        print()
        print(format_project_summary(state, total_phases=len(config.phases)))
        audit = store.load_audit(name)
        for entry in audit[-3:]:
            print(f"    {entry.get('timestamp', '')[:19]} {entry.get('action', '')} — {entry.get('detail', '')}")


async def cmd_run(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    """Run the polling daemon until stopped."""
    from shepherd.daemon import Daemon, check_daemon_health

    health = check_daemon_health(global_config.state_path)
    if health["alive"]:
        print(f"Daemon already running (PID {health['pid']})", file=sys.stderr)
        sys.exit(1)

    runtime = OrchestratorRuntime()
    orchestrator = build_orchestrator(global_config, is_cancelled=lambda: not runtime.running)
    interval = args.interval if args.interval is not None else global_config.poll_interval
    daemon = Daemon(
        orchestrator,
        poll_interval=interval,
        max_runtime_hours=global_config.max_runtime_hours,
        runtime=runtime,
    )

    print(f"Daemon starting: {orchestrator.store.state_dir}")
    print(f"  Projects: {len(orchestrator.load_projects())}")
    print(f"  Interval: {interval}s")
    print("  Stop with: shepherd stop")
    print()

    runtime = await daemon.run(max_cycles=args.max_cycles)
    print()
    print(
        f"Stopped after {runtime.cycles} cycles: {runtime.decisions} decisions, "
        f"{runtime.project_failures} project failures"
    )


async def cmd_once(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    """Run exactly one cycle."""
    orchestrator = build_orchestrator(global_config)
    orchestrator.startup()
    try:
        report = await orchestrator.run_cycle()
    finally:
        await orchestrator.close()

    for name, decision in report.decisions.items():
        print(f"{name}: {decision.action.value} ({decision.method.value}, {decision.confidence:.2f}) — {decision.rationale}")
    for name, error in report.failed.items():
        print(f"{name}: FAILED — {error}")
    for name in report.skipped:
        print(f"{name}: skipped")
    for name in report.quarantined:
        print(f"{name}: QUARANTINED")


def cmd_stop(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    from shepherd.daemon import request_shutdown

    if request_shutdown(global_config.state_path):
        print("Shutdown requested; the daemon stops after its current cycle")
    else:
        print("No daemon running (sentinel left for the next start to clear)")


def cmd_clear_quarantine(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    orchestrator = build_orchestrator(global_config)
    try:
        orchestrator.clear_quarantine(args.name)
    except KeyError:
        print(f"Unknown project: {args.name}", file=sys.stderr)
        sys.exit(1)
    print(f"Quarantine cleared: {args.name}")


def cmd_approve(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    """Set the manual approval flag for the current phase."""
    orchestrator = build_orchestrator(global_config)
    config = _require_project(orchestrator.store, args.name)
    state = orchestrator.store.load_state(args.name, config)
    orchestrator.phase_manager.approve(state)
    print(f"Approved phase '{state.phase.name}' for {args.name}")


async def cmd_transition(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    """Transition the current phase now, optionally skipping the completion check."""
    orchestrator = build_orchestrator(global_config)
    config = _require_project(orchestrator.store, args.name)
    state = orchestrator.store.load_state(args.name, config)
    try:
        result = await orchestrator.phase_manager.transition(state, config, force=args.force)
    finally:
        await orchestrator.close()

    if not result.transitioned:
        print(f"No transition: {result.message}")
        if not args.force:
            print("  Use --force to transition anyway")
        sys.exit(1)
    print(result.message)


def cmd_budget(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    store = StateStore(global_config.state_path)
    ledger = BudgetLedger(
        store.budget_path,
        daily_cap=global_config.daily_cost_cap,
        weekly_cap=global_config.weekly_cost_cap,
    )
    summary = ledger.summary()
    print(f"Today:     ${summary['daily_spend']:.4f} / ${global_config.daily_cost_cap:.2f}")
    print(f"This week: ${summary['weekly_spend']:.4f} / ${global_config.weekly_cost_cap:.2f}")
    print(f"Headroom:  {'yes' if ledger.has_headroom() else 'no (advisory calls paused)'}")
    for name in store.load_projects():
        spend = ledger.project_spend(name)
        if spend:
            print(f"  {name}: ${spend:.4f} today")


def cmd_decisions(args: argparse.Namespace, global_config: GlobalConfig) -> None:
    store = StateStore(global_config.state_path)
    _require_project(store, args.name)
    decisions = store.load_decisions(args.name, limit=args.limit)
    print(render_decision_log(args.name, decisions), end="")
