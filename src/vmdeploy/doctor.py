from __future__ import annotations

"""Environment preflight checks.

CONTRACT
- Inputs: Plan file path, state file path
- Outputs (required):
  - DoctorReport (ok=bool, items=[(name, status, details)])
- Invariants:
  - Checks: plan validity (schema, ids, graph), state file readability,
    collaborator binaries on PATH
  - Does not modify system state (read-only checks)
- Failure:
  - Returns DoctorReport with ok=False if the plan is missing or invalid
"""

from dataclasses import dataclass
from pathlib import Path

from .artifacts.state import parse_state
from .config import load_plan_file
from .errors import StateCorruptionError, ValidationError
from .registry import StepRegistry
from .util.shell import which

# (binary, status when missing, what it is used for)
COLLABORATORS = [
    ("apt-get", "WARN", "package manager"),
    ("psql", "INFO", "database administration client (installed by the plan)"),
    ("systemctl", "WARN", "process supervisor"),
    ("nginx", "INFO", "reverse proxy (installed by the plan)"),
    ("redis-cli", "INFO", "Redis client (installed by the plan)"),
    ("certbot", "INFO", "certificate issuance"),
    ("python3", "WARN", "application runtime"),
]


@dataclass(frozen=True)
class DoctorItem:
    name: str
    status: str
    details: str


@dataclass(frozen=True)
class DoctorReport:
    ok: bool
    items: list[DoctorItem]


def doctor_report(plan_file: Path, state_file: Path) -> DoctorReport:
    items: list[DoctorItem] = []
    ok = True

    # 1. Critical: plan file
    try:
        plan = load_plan_file(plan_file)
        order = StepRegistry.from_plan(plan).topological_order()
        items.append(DoctorItem("plan", "OK", f"{len(order)} steps in {plan_file}"))
    except ValidationError as e:
        ok = False
        items.append(DoctorItem("plan", "FAIL", str(e)))

    # 2. State file
    if not state_file.exists():
        items.append(DoctorItem("state", "INFO", f"No state yet at {state_file} (first run)"))
    else:
        try:
            state = parse_state(state_file.read_text(encoding="utf-8"))
            items.append(DoctorItem("state", "OK", f"{len(state)} step records"))
        except (StateCorruptionError, UnicodeDecodeError) as e:
            items.append(DoctorItem("state", "WARN", f"Corrupt, next run starts empty: {e}"))

    # 3. Collaborators
    for binary, missing_status, purpose in COLLABORATORS:
        found = which(binary)
        if found:
            items.append(DoctorItem(binary, "OK", found))
        else:
            items.append(DoctorItem(binary, missing_status, f"not found on PATH ({purpose})"))

    return DoctorReport(ok=ok, items=items)
