#!/usr/bin/env python3
"""
Conductor CLI

Inspects and drives runs, human checkpoints, missions and recovery from the
command line.

Usage:
    conductor runs
    conductor start "Add retry to the HTTP client"
    conductor status RUN_ID [--json]
    conductor stop RUN_ID [--reason ...]
    conductor history [RUN_ID]
    conductor crps RUN_ID
    conductor respond RUN_ID CRP_ID DECISION [--rationale ...] [--notes ...]
                      [--applies-to-future] [--resume]
    conductor recover [RUN_ID] [--yes]
    conductor missions
    conductor mission-run MISSION_ID [--phase N | --task ID] [--continue-on-failure]
    conductor mission-skip MISSION_ID TASK_ID [--reason ...]

Exit code 0 on success, 1 on a conductor error (message on stderr).
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from conductor.config.runtime_config import load_config
from conductor.runtime.errors import ConductorError
from conductor.runtime.orchestrator import STOPPED_BY_USER
from conductor.runtime.recovery import RecoveryResult
from conductor.runtime.service import ConductorService
from conductor.runtime.types import PhaseRunResult, RunState, run_state_to_dict

logger = logging.getLogger(__name__)


def _build_service(args: argparse.Namespace) -> ConductorService:
    config = load_config(args.config)
    if args.state_dir is not None:
        config = dataclasses.replace(config, state_dir=args.state_dir)
    return ConductorService(config)


def _print_state(state: RunState) -> None:
    print(f"Run:        {state.run_id}")
    print(f"Phase:      {state.phase.value}")
    print(f"Iteration:  {state.iteration}/{state.max_iterations}")
    if state.pending_crp:
        print(f"Pending:    {state.pending_crp}")
    for name, record in state.agents.items():
        line = f"  {name:<11} {record.status.value}"
        if record.error:
            line += f"  ({record.error})"
        print(line)
    if state.errors:
        print("Errors:")
        for error in state.errors:
            print(f"  - {error}")


def _print_phase_result(result: PhaseRunResult) -> None:
    print(
        f"Phase {result.phase_number}: {result.status.value} "
        f"({result.tasks_completed} passed, {result.tasks_failed} failed)"
    )
    if result.failed_task:
        print(f"  First failure: {result.failed_task}")
    if result.tasks_blocked:
        print(f"  Blocked: {', '.join(result.tasks_blocked)}")
    if result.tasks_waiting:
        print(f"  Waiting on a human: {', '.join(result.tasks_waiting)}")


def _print_recovery(result: RecoveryResult) -> None:
    strategy = result.strategy.value if result.strategy else "none"
    status = "ok" if result.success else "FAILED"
    print(f"{result.run_id}: {status} [{strategy}] {result.message}")
    if result.error:
        print(f"  {result.error}")


# =============================================================================
# Commands
# =============================================================================


def cmd_runs(service: ConductorService, args: argparse.Namespace) -> int:
    runs = service.list_runs()
    if not runs:
        print("No runs.")
        return 0
    for state in runs:
        pending = f"  pending={state.pending_crp}" if state.pending_crp else ""
        print(f"{state.run_id}  {state.phase.value:<16} iter {state.iteration}/{state.max_iterations}{pending}")
    return 0


def cmd_start(service: ConductorService, args: argparse.Namespace) -> int:
    state = service.orchestrator.start_run(args.briefing, max_iterations=args.max_iterations)
    if not args.no_advance:
        state = asyncio.run(service.orchestrator.advance(state.run_id))
    _print_state(state)
    return 0


def cmd_status(service: ConductorService, args: argparse.Namespace) -> int:
    state = service.get_run(args.run_id)
    if args.json:
        print(json.dumps(run_state_to_dict(state), indent=2))
    else:
        _print_state(state)
    return 0


def cmd_stop(service: ConductorService, args: argparse.Namespace) -> int:
    state = service.orchestrator.stop_run(args.run_id, reason=args.reason)
    print(f"Stopped {state.run_id}: {state.errors[-1]}")
    return 0


def cmd_history(service: ConductorService, args: argparse.Namespace) -> int:
    if args.run_id:
        state = service.get_run(args.run_id)
        print(f"{state.run_id}  {state.phase.value}  started {state.started_at.isoformat()}")
        for entry in state.history:
            print(f"  {entry.timestamp.isoformat()}  {entry.phase.value:<16} {entry.result}")
        return 0

    runs = sorted(service.list_runs(), key=lambda s: s.started_at, reverse=True)
    if not runs:
        print("No runs.")
        return 0
    for state in runs:
        print(
            f"{state.started_at.isoformat()}  {state.run_id}  {state.phase.value:<16} "
            f"iter {state.iteration}/{state.max_iterations}"
        )
    return 0


def cmd_crps(service: ConductorService, args: argparse.Namespace) -> int:
    crps = service.protocol.list_crps(args.run_id)
    if not crps:
        print("No CRPs.")
        return 0
    for crp in crps:
        vcr = service.protocol.get_vcr_for_crp(args.run_id, crp.crp_id)
        resolution = f"-> {vcr.decision} ({vcr.vcr_id})" if vcr else "PENDING"
        print(f"{crp.crp_id} [{crp.created_by}] {crp.question}  {resolution}")
        for option in crp.options:
            print(f"    {option.id}: {option.label}")
    return 0


def cmd_respond(service: ConductorService, args: argparse.Namespace) -> int:
    vcr, state = asyncio.run(
        service.respond(
            args.run_id,
            args.crp_id,
            args.decision,
            args.rationale,
            notes=args.notes,
            applies_to_future=args.applies_to_future,
            resume=args.resume,
        )
    )
    print(f"Recorded {vcr.vcr_id} for {args.crp_id}: {vcr.decision}")
    print(f"Run {state.run_id} is {state.phase.value}")
    return 0


def cmd_recover(service: ConductorService, args: argparse.Namespace) -> int:
    if args.run_id:
        result = asyncio.run(service.recovery.recover(args.run_id, confirmed=args.yes))
        _print_recovery(result)
        return 0 if result.success else 1

    records = service.recovery.detect_interrupted_runs()
    print(service.recovery.summarize(records))
    if not records or not args.yes:
        if records:
            print("Re-run with --yes to apply the resume strategies.")
        return 0

    failed = 0
    for record in records:
        result = asyncio.run(service.recovery.recover(record.run_id, confirmed=True))
        _print_recovery(result)
        failed += 0 if result.success else 1
    return 1 if failed else 0


def cmd_missions(service: ConductorService, args: argparse.Namespace) -> int:
    missions = service.missions.list_missions()
    if not missions:
        print("No missions.")
        return 0
    for mission in missions:
        stats = mission.stats
        current = f"phase {stats.current_phase}" if stats.current_phase else "-"
        print(
            f"{mission.mission_id}  {mission.status.value:<12} {current:<8} "
            f"{stats.completed_tasks}/{stats.total_tasks} tasks  {mission.title}"
        )
    return 0


def cmd_mission_skip(service: ConductorService, args: argparse.Namespace) -> int:
    result = service.missions.skip_task(args.mission_id, args.task_id, reason=args.reason)
    print(f"{result.task_id}: {result.status.value} ({result.error})")
    return 0


def cmd_mission_run(service: ConductorService, args: argparse.Namespace) -> int:
    engine = service.missions
    if args.task:
        result = asyncio.run(engine.run_task(args.mission_id, args.task))
        detail = result.error or (f"waiting on {result.pending_crp}" if result.pending_crp else None)
        print(f"{result.task_id}: {result.status.value}" + (f" ({detail})" if detail else ""))
        return 0 if result.error is None else 1

    if args.phase is not None:
        phase_result = asyncio.run(
            engine.run_phase(args.mission_id, args.phase, continue_on_failure=args.continue_on_failure)
        )
    else:
        phase_result = asyncio.run(engine.run_next(args.mission_id, continue_on_failure=args.continue_on_failure))
        if phase_result is None:
            print("All phases completed.")
            return 0
    _print_phase_result(phase_result)
    return 0 if phase_result.tasks_failed == 0 else 1


COMMANDS = {
    "runs": cmd_runs,
    "start": cmd_start,
    "status": cmd_status,
    "stop": cmd_stop,
    "history": cmd_history,
    "crps": cmd_crps,
    "respond": cmd_respond,
    "recover": cmd_recover,
    "missions": cmd_missions,
    "mission-run": cmd_mission_run,
    "mission-skip": cmd_mission_skip,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Conductor runs, checkpoints, missions and recovery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--state-dir", type=Path, default=None, help="State directory (default: from config)")
    parser.add_argument("--config", type=Path, default=None, help="Path to a runtime.yaml")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("runs", help="List runs")

    start_parser = subparsers.add_parser("start", help="Start a run and advance it")
    start_parser.add_argument("briefing", help="Goal of the run")
    start_parser.add_argument("--max-iterations", type=int, default=None)
    start_parser.add_argument("--no-advance", action="store_true", help="Only create the run")

    status_parser = subparsers.add_parser("status", help="Show the state of a run")
    status_parser.add_argument("run_id")
    status_parser.add_argument("--json", action="store_true", help="Print the raw state record")

    stop_parser = subparsers.add_parser("stop", help="Stop a run and mark it failed")
    stop_parser.add_argument("run_id")
    stop_parser.add_argument("--reason", default=STOPPED_BY_USER)

    history_parser = subparsers.add_parser("history", help="List runs newest first, or one run's history")
    history_parser.add_argument("run_id", nargs="?", default=None)

    crps_parser = subparsers.add_parser("crps", help="List the CRPs of a run")
    crps_parser.add_argument("run_id")

    respond_parser = subparsers.add_parser("respond", help="Answer the pending CRP of a run")
    respond_parser.add_argument("run_id")
    respond_parser.add_argument("crp_id")
    respond_parser.add_argument("decision", help="Option id")
    respond_parser.add_argument("--rationale", default="", help="Why this option")
    respond_parser.add_argument("--notes", default=None)
    respond_parser.add_argument(
        "--applies-to-future",
        action="store_true",
        help="Reuse this decision for identical questions in the run",
    )
    respond_parser.add_argument("--resume", action="store_true", help="Resume the run afterwards")

    recover_parser = subparsers.add_parser("recover", help="Detect and recover interrupted runs")
    recover_parser.add_argument("run_id", nargs="?", default=None)
    recover_parser.add_argument("--yes", action="store_true", help="Apply resume strategies")

    subparsers.add_parser("missions", help="List missions")

    mission_parser = subparsers.add_parser("mission-run", help="Run a mission phase or task")
    mission_parser.add_argument("mission_id")
    target = mission_parser.add_mutually_exclusive_group()
    target.add_argument("--phase", type=int, default=None, help="Phase number (default: next runnable)")
    target.add_argument("--task", default=None, help="Single task id")
    mission_parser.add_argument("--continue-on-failure", action="store_true")

    skip_parser = subparsers.add_parser("mission-skip", help="Skip a mission task")
    skip_parser.add_argument("mission_id")
    skip_parser.add_argument("task_id")
    skip_parser.add_argument("--reason", default=None)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    service = _build_service(args)
    try:
        return COMMANDS[args.command](service, args)
    except ConductorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
