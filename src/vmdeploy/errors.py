from __future__ import annotations

"""Error taxonomy.

CONTRACT
- Inputs: messages, step ids, captured command output
- Outputs:
  - Exception classes rooted at DeployError
- Invariants:
  - ValidationError subclasses are raised before any step executes
  - Execution errors carry the captured output of the failing command
- Failure:
  - N/A (definitions only)
"""


class DeployError(Exception):
    """Base class for all vmdeploy errors."""


class ValidationError(DeployError):
    """Bad step graph or plan file. Always fatal, reported before execution."""


class DuplicateStepError(ValidationError):
    def __init__(self, step_id: str):
        super().__init__(f"Duplicate step id: {step_id}")
        self.step_id = step_id


class MissingPrerequisiteError(ValidationError):
    def __init__(self, step_id: str, missing: str):
        super().__init__(f"Step {step_id} requires unknown step: {missing}")
        self.step_id = step_id
        self.missing = missing


class CycleError(ValidationError):
    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class PlanError(ValidationError):
    """Plan file is missing, unparseable or does not match the schema."""


class ExecutionError(DeployError):
    def __init__(self, message: str, *, output: str = "", exit_code: int | None = None):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class TransientExecutionError(ExecutionError):
    """Retryable failure (lock contention, network, timeout)."""


class FatalExecutionError(ExecutionError):
    """Non-retryable failure. Aborts the run."""


class StateCorruptionError(DeployError):
    """Persisted state could not be parsed."""


CorruptStateError = StateCorruptionError


class StateLockedError(DeployError):
    """Another process holds the state file lock."""


class CommandError(DeployError):
    def __init__(self, message: str, *, cmd: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.cmd = cmd
        self.stdout = stdout
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    pass


class CommandNotFoundError(CommandError):
    pass
