from __future__ import annotations

import argparse
from dataclasses import asdict
import json
from pathlib import Path
import sys

from agentrelay.app_context import build_app_context
from agentrelay.config import AppConfig, load_config
from agentrelay.durable import WorkflowJournal
from agentrelay.manager import (
    RunAlreadyActiveError,
    TriggerValidationError,
    UpstreamConnectionError,
    describe_trigger_error,
)
from agentrelay.observability import configure_logging
from agentrelay.observability_tui import run_observability_tui
from agentrelay.service_runner import run_service
from agentrelay.state import StateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentrelay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", help="Initialize the state and journal databases and register projects"
    )
    _add_common_arguments(init_parser)

    service_parser = subparsers.add_parser(
        "service", help="Poll configured projects and drive agent runs until stopped"
    )
    _add_common_arguments(service_parser)
    service_parser.add_argument(
        "--once", action="store_true", help="Poll each project once and wait for started runs"
    )

    trigger_parser = subparsers.add_parser("trigger", help="Start a manual agent run")
    _add_common_arguments(trigger_parser)
    trigger_parser.add_argument("--project", required=True, help="Configured project id")
    target = trigger_parser.add_mutually_exclusive_group()
    target.add_argument("--item", type=int, help="Issue number to work on")
    target.add_argument("--pr", type=int, help="Pull request number to follow up on")
    trigger_parser.add_argument("--prompt", help="Custom prompt, alone or alongside --item")
    trigger_parser.add_argument("--agent-type", help="Agent type; defaults to agent.default_type")

    stop_parser = subparsers.add_parser("stop", help="Stop a project's poll loop or cancel a run")
    _add_common_arguments(stop_parser)
    stop_target = stop_parser.add_mutually_exclusive_group(required=True)
    stop_target.add_argument("--project", help="Project whose poll loop should stop")
    stop_target.add_argument("--run", type=int, help="Run id to cancel")

    runs_parser = subparsers.add_parser("runs", help="Inspect agent runs")
    _add_common_arguments(runs_parser)
    runs_subparsers = runs_parser.add_subparsers(dest="runs_command", required=True)
    runs_list_parser = runs_subparsers.add_parser("list", help="List recent runs")
    runs_list_parser.add_argument("--project", help="Only show runs for this project")
    runs_list_parser.add_argument("--active", action="store_true", help="Only active runs")
    runs_list_parser.add_argument("--limit", type=int, default=50)
    runs_list_parser.add_argument("--json", action="store_true", help="Emit JSON")

    sweep_parser = subparsers.add_parser(
        "sweep", help="Reclaim orphaned worktrees and time out abandoned runs"
    )
    _add_common_arguments(sweep_parser)

    top_parser = subparsers.add_parser("top", help="Open the terminal observability dashboard")
    _add_common_arguments(top_parser)
    top_parser.add_argument("--refresh-seconds", type=int, default=2)
    top_parser.add_argument("--window", default="24h", choices=("1h", "24h", "7d", "30d"))

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("agentrelay.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default level: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    state_dir = config.runtime.base_dir if args.command == "service" else None
    configure_logging(args.verbose, state_dir=state_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "service":
        _cmd_service(config, once=bool(args.once))
        return
    if args.command == "trigger":
        _cmd_trigger(config, args)
        return
    if args.command == "stop":
        _cmd_stop(config, args)
        return
    if args.command == "runs":
        _cmd_runs_list(
            config,
            project_id=args.project,
            active_only=bool(args.active),
            limit=args.limit,
            as_json=bool(args.json),
        )
        return
    if args.command == "sweep":
        _cmd_sweep(config)
        return
    if args.command == "top":
        run_observability_tui(
            state_db_path=config.runtime.state_db_path,
            journal_db_path=config.runtime.journal_db_path,
            refresh_seconds=args.refresh_seconds,
            default_window=args.window,
        )
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    store = StateStore(config.runtime.state_db_path)
    WorkflowJournal(config.runtime.journal_db_path)
    for project in config.projects:
        store.upsert_project(project)

    print(f"Initialized agentrelay base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")
    print(f"Journal DB: {config.runtime.journal_db_path}")
    for project in config.projects:
        status = "active" if project.active else "inactive"
        print(f"Project: {project.project_id} ({project.full_name}, {status})")


def _cmd_service(config: AppConfig, *, once: bool) -> None:
    run_service(context=build_app_context(config), once=once)


def _cmd_trigger(config: AppConfig, args: argparse.Namespace) -> None:
    context = build_app_context(config, execute_locally=False)
    try:
        for project in config.projects:
            if project.project_id == args.project:
                context.store.upsert_project(project)
        result = context.manager.trigger_manual_run(
            args.project,
            item_number=args.item,
            prompt=args.prompt,
            source_pr_number=args.pr,
            agent_type=args.agent_type,
        )
    except (RunAlreadyActiveError, TriggerValidationError, UpstreamConnectionError) as exc:
        print(describe_trigger_error(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    finally:
        context.close()
    print(f"Started workflow {result.workflow_id}")


def _cmd_stop(config: AppConfig, args: argparse.Namespace) -> None:
    context = build_app_context(config, execute_locally=False)
    try:
        if args.run is not None:
            cancelled = context.manager.cancel_run(args.run)
            target = f"run {args.run}"
        else:
            cancelled = context.manager.stop_polling(args.project)
            target = f"poll loop for {args.project}"
    except TriggerValidationError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    finally:
        context.close()
    if cancelled:
        print(f"Cancellation requested for {target}.")
    else:
        print(f"No running {target}.")


def _cmd_runs_list(
    config: AppConfig,
    *,
    project_id: str | None,
    active_only: bool,
    limit: int,
    as_json: bool,
) -> None:
    store = StateStore(config.runtime.state_db_path)
    runs = store.list_runs(project_id=project_id, active_only=active_only, limit=limit)
    if as_json:
        print(json.dumps([asdict(run) for run in runs], indent=2))
        return
    if not runs:
        print("No runs found.")
        return
    for run in runs:
        target = f"pr=#{run.source_pr_number}" if run.is_followup else f"item={run.work_item_id}"
        print(
            f"run={run.id} project={run.project_id} status={run.status} "
            f"agent={run.agent_type} {target} workflow={run.workflow_id}"
        )
        if run.pr_url:
            print(f"pr_url={run.pr_url}")
        if run.error:
            print(f"error={run.error}")


def _cmd_sweep(config: AppConfig) -> None:
    context = build_app_context(config, execute_locally=False)
    try:
        report = context.sweeper.sweep()
    finally:
        context.close()
    print(
        f"Timed out {report.runs_timed_out} run(s); "
        f"cleaned {report.worktrees_cleaned} worktree(s), "
        f"{report.worktrees_failed} failed, {report.worktrees_skipped} skipped."
    )
