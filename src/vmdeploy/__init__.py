"""vmdeploy package.

Simple API for provisioning scripts:

    import vmdeploy

    # Run (or resume) a deployment plan
    result = vmdeploy.deploy("deploy.yaml")

    # Show what would run, without executing anything
    result = vmdeploy.deploy("deploy.yaml", dry_run=True)
"""

from pathlib import Path
from typing import Optional

__version__ = "0.1.0"

from .config import RetryPolicy, RunConfig, default_state_file
from .engine import EngineOutcome, ExecutionEngine
from .orchestrator import RunResult, run_deployment
from .registry import StepRegistry
from .steps.base import Step, StepContext
from .util.ids import new_run_id


def deploy(
    plan_file: str | Path,
    *,
    state_file: Optional[str | Path] = None,
    fresh: bool = False,
    dry_run: bool = False,
    run_id: Optional[str] = None,
) -> dict:
    """Run a deployment plan. Returns structured result.

    Args:
        plan_file: Path to deploy.yaml
        state_file: Optional state file (defaults to .vmdeploy/state.jsonl)
        fresh: Discard prior state before running
        dry_run: Only compute the planned order
        run_id: Optional custom run ID (auto-generated if not provided)

    Returns:
        dict with keys: status, exit_code, run_dir, failed_step, executed, skipped
    """
    cfg = RunConfig(
        plan_file=Path(plan_file),
        run_id=run_id or new_run_id(),
        state_file=Path(state_file) if state_file else default_state_file(),
        fresh=fresh,
        dry_run=dry_run,
    )
    result = run_deployment(cfg)
    outcome = result.outcome
    return {
        "status": result.status,
        "exit_code": result.exit_code,
        "run_dir": str(result.run_dir),
        "failed_step": result.failed_step,
        "executed": list(outcome.executed) if outcome else [],
        "skipped": list(outcome.skipped) if outcome else [],
        "planned": [p.step_id for p in result.planned],
    }


__all__ = [
    "deploy",
    "EngineOutcome",
    "ExecutionEngine",
    "RetryPolicy",
    "RunConfig",
    "RunResult",
    "Step",
    "StepContext",
    "StepRegistry",
    "run_deployment",
]
