from __future__ import annotations

"""Execution engine.

CONTRACT
- Inputs: StepRegistry, CommandRunner, RetryPolicy, incoming DeploymentState
- Outputs (required):
  - EngineOutcome with the new DeploymentState (the input is not mutated)
  - One RunRecord per attempted step, handed to `on_record` as soon as it exists
- Invariants:
  - Steps run one at a time in topological order
  - A step already recorded succeeded/skipped is not touched (idempotent restart)
  - A step whose check reports satisfied is recorded `skipped`, action not run
  - Transient failures are retried up to max_attempts with bounded exponential
    backoff; `attempts` on the record equals the number of action executions
  - The first failed step stops the run; later steps stay pending
  - Captured output is redacted before it is recorded
- Failure:
  - ValidationError from the registry propagates before anything executes
  - Step failures never raise; they end the run with failed_step set
"""

import time
import traceback
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

from .artifacts.schemas import DeploymentState, RunRecord, StepStatus
from .config import RetryPolicy
from .errors import FatalExecutionError, TransientExecutionError
from .registry import StepRegistry
from .steps.base import Step, StepContext
from .util.events import EventLog
from .util.redaction import Redactor
from .util.shell import CommandRunner

MAX_RECORDED_OUTPUT = 20_000


@dataclass(frozen=True)
class PlannedStep:
    step_id: str
    description: str
    requires: tuple[str, ...]
    status: StepStatus
    has_check: bool

    @property
    def will_run(self) -> bool:
        return not self.status.done


@dataclass
class EngineOutcome:
    state: DeploymentState
    order: list[str]
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)
    failed_step: str | None = None
    failure: RunRecord | None = None

    @property
    def ok(self) -> bool:
        return self.failed_step is None

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def pending(self) -> list[str]:
        return [sid for sid in self.order if self.state.status_of(sid) is StepStatus.PENDING]


def _tail(text: str, limit: int = MAX_RECORDED_OUTPUT) -> str:
    if len(text) <= limit:
        return text
    return "[... output truncated ...]\n" + text[-limit:]


class ExecutionEngine:
    def __init__(
        self,
        registry: StepRegistry,
        runner: CommandRunner,
        *,
        retry: RetryPolicy | None = None,
        events: EventLog | None = None,
        redactor: Redactor | None = None,
        run_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.runner = runner
        self.retry = retry or RetryPolicy()
        self.events = events
        self.redactor = redactor or Redactor()
        self.run_id = run_id
        self.sleep = sleep

    def _emit(self, **event) -> None:
        if self.events is not None:
            self.events.emit(**event)

    def plan(self, state: DeploymentState) -> list[PlannedStep]:
        """Planned order with each step's recorded status. Executes nothing."""
        return [
            PlannedStep(
                step_id=step.id,
                description=step.description,
                requires=step.requires,
                status=state.status_of(step.id),
                has_check=step.check is not None,
            )
            for step in self.registry.topological_order()
        ]

    def run(
        self,
        state: DeploymentState,
        *,
        on_record: Callable[[RunRecord], None] | None = None,
    ) -> EngineOutcome:
        order = self.registry.topological_order()
        outcome = EngineOutcome(state=state, order=[s.id for s in order])
        self._emit(stage="engine", action="start", order=outcome.order)

        for step in order:
            prior = outcome.state.status_of(step.id)
            if prior.done:
                logger.info(f"[{step.id}] {prior.value} in a previous run; not re-running")
                self._emit(stage="step", step=step.id, action="resume_skip", prior=prior.value)
                outcome.resumed.append(step.id)
                continue

            if self._satisfied(step):
                logger.info(f"[{step.id}] already satisfied; skipping")
                rec = self._record(step, StepStatus.SKIPPED, attempts=0, message="already satisfied")
                outcome.state = self._commit(outcome.state, rec, on_record)
                outcome.skipped.append(step.id)
                continue

            rec = self._execute(step)
            outcome.state = self._commit(outcome.state, rec, on_record)
            if rec.status is StepStatus.FAILED:
                outcome.failed_step = step.id
                outcome.failure = rec
                self._emit(stage="engine", action="abort", step=step.id)
                break
            outcome.executed.append(step.id)

        if outcome.ok:
            self._emit(stage="engine", action="done")
        return outcome

    def _commit(
        self,
        state: DeploymentState,
        rec: RunRecord,
        on_record: Callable[[RunRecord], None] | None,
    ) -> DeploymentState:
        if on_record is not None:
            on_record(rec)
        return state.with_record(rec)

    def _satisfied(self, step: Step) -> bool:
        if step.check is None:
            return False
        ctx = StepContext(step_id=step.id, attempt=0, runner=self.runner)
        try:
            satisfied = bool(step.check(ctx))
        except Exception as exc:
            logger.warning(f"[{step.id}] idempotency check errored ({exc}); treating as not satisfied")
            self._emit(stage="step", step=step.id, action="check_error", error=str(exc))
            return False
        self._emit(stage="step", step=step.id, action="check", satisfied=satisfied)
        return satisfied

    def _record(
        self,
        step: Step,
        status: StepStatus,
        *,
        attempts: int,
        exit_code: int | None = None,
        output: str = "",
        message: str = "",
    ) -> RunRecord:
        rec = RunRecord(
            step_id=step.id,
            status=status,
            attempts=attempts,
            exit_code=exit_code,
            output=_tail(self.redactor.redact(output)),
            message=self.redactor.redact(message),
            run_id=self.run_id,
        )
        self._emit(
            stage="step",
            step=step.id,
            action="record",
            status=status.value,
            attempts=attempts,
            exit_code=exit_code,
        )
        return rec

    def _execute(self, step: Step) -> RunRecord:
        max_attempts = step.max_attempts or self.retry.max_attempts
        attempt = 0
        while True:
            attempt += 1
            ctx = StepContext(step_id=step.id, attempt=attempt, runner=self.runner)
            logger.info(f"[{step.id}] attempt {attempt}/{max_attempts}: {step.description or step.id}")
            self._emit(stage="step", step=step.id, action="attempt", attempt=attempt)
            try:
                result = step.action(ctx)
            except TransientExecutionError as exc:
                if attempt >= max_attempts:
                    logger.error(f"[{step.id}] still failing after {attempt} attempts: {exc}")
                    return self._record(
                        step,
                        StepStatus.FAILED,
                        attempts=attempt,
                        exit_code=exc.exit_code,
                        output=exc.output,
                        message=f"transient failure persisted after {attempt} attempts: {exc}",
                    )
                delay = self.retry.delay_for(attempt)
                logger.warning(f"[{step.id}] transient failure ({exc}); retrying in {delay:.1f}s")
                self._emit(stage="step", step=step.id, action="retry", attempt=attempt, delay_s=delay)
                self.sleep(delay)
                continue
            except FatalExecutionError as exc:
                logger.error(f"[{step.id}] failed: {exc}")
                return self._record(
                    step,
                    StepStatus.FAILED,
                    attempts=attempt,
                    exit_code=exc.exit_code,
                    output=exc.output,
                    message=str(exc),
                )
            except Exception as exc:
                logger.error(f"[{step.id}] crashed: {exc!r}")
                return self._record(
                    step,
                    StepStatus.FAILED,
                    attempts=attempt,
                    output=traceback.format_exc(),
                    message=f"{type(exc).__name__}: {exc}",
                )

            logger.info(f"[{step.id}] succeeded")
            return self._record(
                step,
                StepStatus.SUCCEEDED,
                attempts=attempt,
                exit_code=result.returncode if result is not None else None,
                output=result.output if result is not None else "",
            )
