"""Shell command steps.

CONTRACT
- Inputs: command (str for shell, list for argv), timeout, env, cwd,
  transient classification rules
- Outputs (required):
  - ShellAction returns the CmdResult of a zero exit
  - ShellCheck returns True when the check command exits 0
- Invariants:
  - A timeout is transient; a missing executable is fatal
  - A non-zero exit is transient when its code is listed in
    transient_exit_codes or its output matches a transient pattern,
    fatal otherwise
  - ShellCheck treats a missing executable as "not satisfied"
- Failure:
  - ShellAction raises TransientExecutionError / FatalExecutionError
  - ShellCheck lets CommandTimeoutError propagate
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from ..config import DEFAULT_TRANSIENT_PATTERNS
from ..errors import (
    CommandNotFoundError,
    CommandTimeoutError,
    FatalExecutionError,
    TransientExecutionError,
)
from ..util.shell import CmdResult
from .base import StepContext


def _joined(stdout: str, stderr: str) -> str:
    return "\n".join(s.rstrip() for s in (stdout, stderr) if s and s.strip())


@dataclass
class ShellAction:
    cmd: str | list[str]
    timeout_s: float | None = None
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None
    transient_patterns: tuple[str, ...] = DEFAULT_TRANSIENT_PATTERNS
    transient_exit_codes: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        self._transient_res = [re.compile(p) for p in self.transient_patterns]

    def is_transient(self, result: CmdResult) -> bool:
        if result.returncode in self.transient_exit_codes:
            return True
        text = result.output
        return any(p.search(text) for p in self._transient_res)

    def __call__(self, ctx: StepContext) -> CmdResult:
        try:
            res = ctx.runner.run(
                self.cmd, timeout_s=self.timeout_s, cwd=self.cwd, env=self.env, label=ctx.label
            )
        except CommandTimeoutError as exc:
            raise TransientExecutionError(str(exc), output=_joined(exc.stdout, exc.stderr)) from exc
        except CommandNotFoundError as exc:
            raise FatalExecutionError(str(exc), output=_joined(exc.stdout, exc.stderr)) from exc

        if res.ok:
            return res
        message = f"Command exited {res.returncode}: {res.cmd}"
        if self.is_transient(res):
            raise TransientExecutionError(message, output=res.output, exit_code=res.returncode)
        raise FatalExecutionError(message, output=res.output, exit_code=res.returncode)


@dataclass
class ShellCheck:
    cmd: str | list[str]
    timeout_s: float | None = 60.0
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None

    def __call__(self, ctx: StepContext) -> bool:
        try:
            res = ctx.runner.run(
                self.cmd,
                timeout_s=self.timeout_s,
                cwd=self.cwd,
                env=self.env,
                label=f"{ctx.step_id}.check",
            )
        except CommandNotFoundError:
            logger.debug(f"Check for {ctx.step_id}: executable missing, not satisfied")
            return False
        return res.ok
