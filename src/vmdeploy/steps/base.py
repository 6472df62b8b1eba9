from __future__ import annotations

"""Step definition.

CONTRACT
- Inputs: id, description, prerequisites, action, optional idempotency check
- Outputs:
  - action(ctx): performs the step; returns an optional CmdResult
  - check(ctx): True when the step's effect is already present
- Invariants:
  - Step ids are unique within a registry and stable across runs
  - Actions signal failure by raising TransientExecutionError or
    FatalExecutionError; any other exception is treated as fatal
- Failure:
  - N/A (definitions only)
"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from ..util.shell import CmdResult, CommandRunner


@dataclass(frozen=True)
class StepContext:
    step_id: str
    attempt: int
    runner: CommandRunner

    @property
    def label(self) -> str:
        return f"{self.step_id}.{self.attempt}"


class Action(Protocol):
    def __call__(self, ctx: StepContext) -> Optional[CmdResult]: ...


Check = Callable[[StepContext], bool]


@dataclass(frozen=True)
class Step:
    id: str
    action: Action
    description: str = ""
    requires: tuple[str, ...] = ()
    check: Check | None = None
    max_attempts: int | None = None
