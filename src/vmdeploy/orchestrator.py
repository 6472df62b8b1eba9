from __future__ import annotations

"""Deployment session orchestration.

CONTRACT
- Inputs: RunConfig (plan file, state file, run id, fresh/dry-run flags)
- Outputs (required):
  - RunResult (status, exit_code, run_dir)
  - Artifacts in .vmdeploy/runs/<run_id>/
    - RUN.json, RUN_STATUS.json, events.jsonl, logs/
    - FAILURE.md when a step aborts the run, CRASH.txt on unexpected errors
- Invariants:
  - The plan is validated before the state file is touched
  - Always writes RUN_STATUS.json
  - The state file is held under lock for the whole run and flushed on every
    exit path, including KeyboardInterrupt
  - Dry runs never execute actions, checks, or modify state
- Failure:
  - Exit code 2 for invalid plans/graphs or a locked state file
  - Exit code 1 when a step fails or the session crashes
  - KeyboardInterrupt is re-raised after state and status are written
"""

import time
import traceback
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger

from .artifacts.schemas import DeploymentState, RunMeta, RunRecord, RunStatus
from .artifacts.state import StateStore
from .artifacts.store import ArtifactStore
from .config import PlanConfig, RunConfig, load_plan_file
from .engine import EngineOutcome, ExecutionEngine, PlannedStep
from .errors import StateLockedError, ValidationError
from .registry import StepRegistry
from .util.events import EventLog
from .util.redaction import Redactor
from .util.shell import CommandRunner

EXIT_OK = 0
EXIT_STEP_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130

_SECRET_VAR_HINTS = ("password", "secret", "token", "key")


@dataclass(frozen=True)
class RunResult:
    status: str
    exit_code: int
    run_dir: Path
    message: str = ""
    failed_step: str | None = None
    failure: RunRecord | None = None
    outcome: EngineOutcome | None = None
    planned: list[PlannedStep] = field(default_factory=list)


def _redactor_for(plan: PlanConfig) -> Redactor:
    secrets = tuple(
        v for k, v in plan.vars.items() if v and any(h in k.lower() for h in _SECRET_VAR_HINTS)
    )
    return Redactor(literals=secrets)


def failure_report(step_id: str, rec: RunRecord) -> str:
    lines = [
        "# FAILURE",
        "",
        f"Step: `{step_id}`",
        f"Attempts: {rec.attempts}",
        f"Exit code: {rec.exit_code if rec.exit_code is not None else 'n/a'}",
        f"Message: {rec.message}",
        "",
        "## Output",
        "```text",
        rec.output.rstrip() or "(no output captured)",
        "```",
        "",
        f"Re-run `vmdeploy run` to resume from step `{step_id}`.",
    ]
    return "\n".join(lines) + "\n"


def run_deployment(
    cfg: RunConfig,
    *,
    runner: CommandRunner | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunResult:
    store = ArtifactStore(cfg.run_dir())
    store.ensure()
    ev = EventLog(store.path("events.jsonl"), run_id=cfg.run_id, context={"plan": str(cfg.plan_file)})

    try:
        plan = load_plan_file(cfg.plan_file)
        registry = StepRegistry.from_plan(plan)
        order = [s.id for s in registry.topological_order()]
    except ValidationError as exc:
        logger.error(f"Plan validation failed: {exc}")
        ev.emit(stage="validate", action="failed", error=str(exc))
        store.write_status(RunStatus(run_id=cfg.run_id, status="INVALID", message=str(exc)))
        return RunResult(status="INVALID", exit_code=EXIT_INVALID, run_dir=store.run_dir, message=str(exc))

    store.write_run_meta(
        RunMeta(
            run_id=cfg.run_id,
            plan_file=str(cfg.plan_file),
            state_file=str(cfg.state_file),
            fresh=cfg.fresh,
            dry_run=cfg.dry_run,
            order=order,
            retry=asdict(plan.retry),
        )
    )
    ev.emit(stage="validate", action="ok", steps=len(order))

    runner = runner or CommandRunner(cwd=plan.cwd, default_timeout_s=plan.timeout_s, log_dir=store.logs_dir)
    engine = ExecutionEngine(
        registry,
        runner,
        retry=plan.retry,
        events=ev,
        redactor=_redactor_for(plan),
        run_id=cfg.run_id,
        sleep=sleep,
    )

    state_store = StateStore(cfg.state_file)
    if cfg.dry_run:
        state = DeploymentState() if cfg.fresh else state_store.peek()
        planned = engine.plan(state)
        store.write_status(RunStatus(run_id=cfg.run_id, status="DRY_RUN", message="planned only"))
        ev.emit(stage="dry_run", action="planned", order=order)
        return RunResult(status="DRY_RUN", exit_code=EXIT_OK, run_dir=store.run_dir, planned=planned)

    try:
        with state_store:
            if cfg.fresh:
                logger.info(f"Discarding prior state in {cfg.state_file}")
                ev.emit(stage="state", action="reset")
                state_store.reset()

            store.write_status(RunStatus(run_id=cfg.run_id, status="RUNNING", message="starting"))
            outcome = engine.run(state_store.state, on_record=state_store.record)
    except StateLockedError as exc:
        logger.error(str(exc))
        store.write_status(RunStatus(run_id=cfg.run_id, status="INVALID", message=str(exc)))
        return RunResult(status="INVALID", exit_code=EXIT_INVALID, run_dir=store.run_dir, message=str(exc))
    except KeyboardInterrupt:
        ev.emit(stage="crash", action="interrupted")
        store.write_status(
            RunStatus(run_id=cfg.run_id, status="INTERRUPTED", message="interrupted by operator")
        )
        raise
    except Exception as exc:  # pragma: no cover
        ev.emit(stage="crash", action="exception", error=str(exc))
        store.write_text("CRASH.txt", traceback.format_exc())
        store.write_status(RunStatus(run_id=cfg.run_id, status="FAILED", message=f"crash: {exc}"))
        return RunResult(status="FAILED", exit_code=EXIT_STEP_FAILED, run_dir=store.run_dir, message=str(exc))

    status = RunStatus(
        run_id=cfg.run_id,
        status="OK" if outcome.ok else "FAILED",
        message="completed" if outcome.ok else f"step {outcome.failed_step} failed",
        failed_step=outcome.failed_step,
        executed=outcome.executed,
        skipped=outcome.skipped,
        resumed=outcome.resumed,
    )
    store.write_status(status)
    if not outcome.ok and outcome.failure is not None:
        store.write_text("FAILURE.md", failure_report(outcome.failed_step, outcome.failure))

    return RunResult(
        status=status.status,
        exit_code=outcome.exit_code,
        run_dir=store.run_dir,
        message=status.message,
        failed_step=outcome.failed_step,
        failure=outcome.failure,
        outcome=outcome,
    )
