"""CLI entrypoint.

Primary command:
- vmdeploy run [--resume/--fresh] [--dry-run]

Utilities:
- vmdeploy plan
- vmdeploy status
- vmdeploy init
- vmdeploy doctor

CONTRACT
- Inputs: Command line arguments (parsed by Typer)
- Outputs (required):
  - Exit code 0 when every step succeeded or was already satisfied
  - Exit code 1 when a step failure aborted the run
  - Exit code 2 on configuration/validation errors
  - Exit code 130 when interrupted
  - Console output (rich) describing progress/results
- Invariants:
  - Run ids are validated before anything is written
  - Deployment work is delegated to the orchestrator
- Failure:
  - Invalid arguments raise Typer exit/error
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from . import __version__
from .artifacts.state import StateStore
from .artifacts.schemas import StepStatus
from .config import DEFAULT_HOME, DEFAULT_PLAN_FILE, RunConfig, default_state_file, load_plan_file
from .doctor import doctor_report
from .engine import PlannedStep
from .errors import ValidationError
from .init import write_plan_template
from .orchestrator import EXIT_INTERRUPTED, EXIT_INVALID, RunResult, run_deployment
from .registry import StepRegistry
from .util.ids import new_run_id, validate_run_id

app = typer.Typer(add_completion=False, help="Idempotent, resumable VM deployment runner.")
console = Console()

_STATUS_STYLE = {
    StepStatus.SUCCEEDED: "green",
    StepStatus.SKIPPED: "cyan",
    StepStatus.FAILED: "red",
    StepStatus.PENDING: "yellow",
}


def _version_callback(value: bool):
    if value:
        console.print(f"vmdeploy version: {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        format="<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> {message}",
    )


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    _configure_logging(verbose)


_PLAN_OPTION = typer.Option(DEFAULT_PLAN_FILE, "--plan", "-p", help="Deployment plan (YAML).")
_STATE_OPTION = typer.Option(
    None, "--state-file", help="State file (default: $VMDEPLOY_STATE_FILE or .vmdeploy/state.jsonl)."
)
_ARTIFACTS_DIR_OPTION = typer.Option(DEFAULT_HOME / "runs", "--artifacts-dir", help="Run artifacts root.")
_RUN_ID_OPTION = typer.Option(None, "--run-id", help="Run id (default: auto).")


def _status_cell(status: StepStatus) -> str:
    style = _STATUS_STYLE[status]
    return f"[{style}]{status.value}[/{style}]"


def _print_plan(planned: list[PlannedStep], title: str) -> None:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Requires")
    table.add_column("Status")
    table.add_column("Action")
    for i, p in enumerate(planned, start=1):
        if not p.will_run:
            action = "keep"
        elif p.has_check:
            action = "check, then run"
        else:
            action = "run"
        table.add_row(str(i), p.step_id, ", ".join(p.requires) or "-", _status_cell(p.status), action)
    console.print(table)


def _print_result(result: RunResult) -> None:
    if result.status == "INVALID":
        console.print(f"[red]Invalid configuration:[/red] {result.message}")
        return
    outcome = result.outcome
    if outcome is None:
        console.print(f"[red]Run failed:[/red] {result.message}")
        return
    console.print(
        f"executed={len(outcome.executed)} skipped={len(outcome.skipped)} "
        f"resumed={len(outcome.resumed)} pending={len(outcome.pending())}"
    )
    if result.failure is not None:
        rec = result.failure
        console.print(f"[bold red]Step {result.failed_step} failed[/bold red] after {rec.attempts} attempt(s): {rec.message}")
        if rec.output.strip():
            console.rule("output")
            console.print(rec.output.rstrip(), markup=False, highlight=False)
            console.rule()
        console.print(f"Re-run [bold]vmdeploy run[/bold] to resume from step [bold]{result.failed_step}[/bold].")
    else:
        console.print("[green]All steps succeeded or were already satisfied.[/green]")


@app.command()
def run(
    plan: Path = _PLAN_OPTION,
    resume: bool = typer.Option(True, "--resume/--fresh", help="Resume from saved state, or discard it."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the planned order without executing."),
    state_file: Path | None = _STATE_OPTION,
    artifacts_dir: Path = _ARTIFACTS_DIR_OPTION,
    run_id: str | None = _RUN_ID_OPTION,
) -> None:
    """Run the deployment plan."""
    try:
        rid = validate_run_id(run_id or new_run_id())
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--run-id") from exc

    cfg = RunConfig(
        plan_file=plan,
        run_id=rid,
        state_file=state_file or default_state_file(),
        artifacts_root=artifacts_dir,
        fresh=not resume,
        dry_run=dry_run,
    )
    try:
        result = run_deployment(cfg)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow] State holds only completed steps; re-run to resume.")
        raise typer.Exit(code=EXIT_INTERRUPTED)

    if result.status == "DRY_RUN":
        _print_plan(result.planned, title=f"Planned order ({plan})")
    else:
        console.print(f"[bold]Run[/bold] {rid} finished with status: {result.status}")
        _print_result(result)
    console.print(f"Artifacts: {result.run_dir}")
    raise typer.Exit(code=result.exit_code)


@app.command("plan")
def show_plan(
    plan: Path = _PLAN_OPTION,
    state_file: Path | None = _STATE_OPTION,
) -> None:
    """Validate the plan and show the execution order."""
    from .engine import ExecutionEngine
    from .util.shell import CommandRunner

    try:
        registry = StepRegistry.from_plan(load_plan_file(plan))
        state = StateStore(state_file or default_state_file()).peek()
        planned = ExecutionEngine(registry, CommandRunner()).plan(state)
    except ValidationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=EXIT_INVALID)
    _print_plan(planned, title=f"Execution order ({plan})")


@app.command()
def status(state_file: Path | None = _STATE_OPTION) -> None:
    """Show the persisted state of every recorded step."""
    path = state_file or default_state_file()
    state = StateStore(path).peek()
    if not len(state):
        console.print(f"No recorded steps in {path}.")
        return
    table = Table(title=f"vmdeploy state ({path})")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Timestamp")
    table.add_column("Message")
    for rec in state.records.values():
        table.add_row(rec.step_id, _status_cell(rec.status), str(rec.attempts), rec.timestamp, rec.message)
    console.print(table)


@app.command()
def init(
    plan: Path = _PLAN_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing plan."),
) -> None:
    """Write a starter deploy.yaml."""
    if write_plan_template(plan, force=force):
        console.print(f"[green]Wrote plan template to[/green] {plan}")
    else:
        console.print(f"[yellow]{plan} already exists[/yellow] (use --force to overwrite)")


@app.command()
def doctor(
    plan: Path = _PLAN_OPTION,
    state_file: Path | None = _STATE_OPTION,
) -> None:
    """Environment and preflight checks."""
    report = doctor_report(plan_file=plan, state_file=state_file or default_state_file())
    table = Table(title="vmdeploy doctor")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")
    for item in report.items:
        table.add_row(item.name, item.status, item.details)
    console.print(table)
    if report.ok:
        console.print("[green]OK[/green]")
    else:
        raise typer.Exit(code=EXIT_INVALID)


if __name__ == "__main__":
    app()
