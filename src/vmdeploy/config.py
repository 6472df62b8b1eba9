from __future__ import annotations

"""Configuration models.

CONTRACT
- Inputs: YAML plan file path (deploy.yaml) or dictionary data
- Outputs (required):
  - Validated PlanConfig (steps, retry policy, vars) and RunConfig objects
- Invariants:
  - Step ids match `[A-Za-z0-9][A-Za-z0-9_.-]{0,63}`
  - Each step has exactly one of `run` or `write`
  - `{{ name }}` placeholders are fully resolved from `vars`
  - Default values are safe (3 attempts, bounded backoff, 600s action timeout,
    60s check timeout)
- Failure:
  - Raises PlanError on unreadable YAML, schema mismatch, bad ids or unknown vars
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from .errors import PlanError
from .util.ids import validate_step_id

DEFAULT_PLAN_FILE = Path("deploy.yaml")
DEFAULT_HOME = Path(".vmdeploy")
STATE_FILE_ENV = "VMDEPLOY_STATE_FILE"

# stderr/stdout fragments that mean "try again later"
DEFAULT_TRANSIENT_PATTERNS = (
    r"Could not get lock",
    r"dpkg frontend lock",
    r"Unable to acquire the dpkg",
    r"Temporary failure resolving",
    r"Temporary failure in name resolution",
    r"Connection timed out",
    r"Connection refused",
    r"Could not resolve host",
    r"Failed to fetch",
)

_VAR_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def default_state_file() -> Path:
    env = os.environ.get(STATE_FILE_ENV)
    return Path(env) if env else DEFAULT_HOME / "state.jsonl"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 2.0
    max_delay_s: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt that follows `attempt` (1-based)."""
        return min(self.base_delay_s * (2 ** (attempt - 1)), self.max_delay_s)


@dataclass(frozen=True)
class WriteSpec:
    path: Path
    content: str
    mode: int | None = None


@dataclass(frozen=True)
class StepSpec:
    id: str
    description: str = ""
    requires: tuple[str, ...] = ()
    run: str | list[str] | None = None
    check: str | list[str] | None = None
    write: WriteSpec | None = None
    timeout_s: float | None = None
    check_timeout_s: float | None = None
    max_attempts: int | None = None
    transient_patterns: tuple[str, ...] = ()
    transient_exit_codes: tuple[int, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None


@dataclass(frozen=True)
class PlanConfig:
    steps: list[StepSpec]
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    vars: dict[str, str] = field(default_factory=dict)
    timeout_s: float = 600.0
    check_timeout_s: float = 60.0
    cwd: Path | None = None
    source: Path | None = None


@dataclass(frozen=True)
class RunConfig:
    plan_file: Path
    run_id: str
    state_file: Path = field(default_factory=default_state_file)
    artifacts_root: Path = DEFAULT_HOME / "runs"
    fresh: bool = False
    dry_run: bool = False

    def run_dir(self) -> Path:
        return self.artifacts_root / self.run_id


_COMMAND = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {"type": "array", "items": {"type": "string"}, "minItems": 1},
    ]
}

PLAN_SCHEMA = {
    "type": "object",
    "properties": {
        "vars": {"type": "object", "additionalProperties": {"type": ["string", "number", "boolean"]}},
        "retry": {
            "type": "object",
            "properties": {
                "max_attempts": {"type": "integer", "minimum": 1},
                "base_delay_s": {"type": "number", "minimum": 0},
                "max_delay_s": {"type": "number", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "defaults": {
            "type": "object",
            "properties": {
                "timeout_s": {"type": "number", "exclusiveMinimum": 0},
                "check_timeout_s": {"type": "number", "exclusiveMinimum": 0},
                "cwd": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "description": {"type": "string"},
                    "requires": {"type": "array", "items": {"type": "string"}},
                    "run": _COMMAND,
                    "check": _COMMAND,
                    "write": {
                        "type": "object",
                        "properties": {
                            "path": {"type": "string", "minLength": 1},
                            "content": {"type": "string"},
                            "mode": {"type": "string", "pattern": "^0?[0-7]{3,4}$"},
                        },
                        "required": ["path", "content"],
                        "additionalProperties": False,
                    },
                    "timeout_s": {"type": "number", "exclusiveMinimum": 0},
                    "check_timeout_s": {"type": "number", "exclusiveMinimum": 0},
                    "max_attempts": {"type": "integer", "minimum": 1},
                    "transient_patterns": {"type": "array", "items": {"type": "string"}},
                    "transient_exit_codes": {"type": "array", "items": {"type": "integer"}},
                    "env": {"type": "object", "additionalProperties": {"type": "string"}},
                    "cwd": {"type": "string"},
                },
                "required": ["id"],
                "oneOf": [{"required": ["run"]}, {"required": ["write"]}],
                "additionalProperties": False,
            },
        },
    },
    "required": ["steps"],
}


def render(text: str, variables: dict[str, str], *, where: str) -> str:
    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in variables:
            raise PlanError(f"Unknown variable {{{{ {name} }}}} in {where}")
        return variables[name]

    return _VAR_RE.sub(_sub, text)


def _render_cmd(cmd: Any, variables: dict[str, str], *, where: str) -> str | list[str] | None:
    if cmd is None:
        return None
    if isinstance(cmd, list):
        return [render(str(c), variables, where=where) for c in cmd]
    return render(str(cmd), variables, where=where)


def _check_patterns(patterns: list[str], *, where: str) -> tuple[str, ...]:
    for p in patterns:
        try:
            re.compile(p)
        except re.error as exc:
            raise PlanError(f"Invalid regex {p!r} in {where}: {exc}") from exc
    return tuple(patterns)


def parse_plan(data: dict[str, Any], *, source: Path | None = None) -> PlanConfig:
    try:
        jsonschema.validate(instance=data, schema=PLAN_SCHEMA)
    except jsonschema.ValidationError as e:
        loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise PlanError(f"Invalid plan schema at {loc}: {e.message}") from e

    variables = {str(k): str(v) for k, v in (data.get("vars") or {}).items()}
    retry_raw = data.get("retry") or {}
    retry = RetryPolicy(
        max_attempts=int(retry_raw.get("max_attempts", 3)),
        base_delay_s=float(retry_raw.get("base_delay_s", 2.0)),
        max_delay_s=float(retry_raw.get("max_delay_s", 30.0)),
    )
    defaults = data.get("defaults") or {}

    steps: list[StepSpec] = []
    for raw in data["steps"]:
        try:
            step_id = validate_step_id(str(raw["id"]))
        except ValueError as exc:
            raise PlanError(str(exc)) from exc
        where = f"step {step_id}"
        write = None
        if "write" in raw:
            w = raw["write"]
            write = WriteSpec(
                path=Path(render(w["path"], variables, where=where)),
                content=render(w["content"], variables, where=where),
                mode=int(w["mode"], 8) if w.get("mode") else None,
            )
        steps.append(
            StepSpec(
                id=step_id,
                description=render(str(raw.get("description", "")), variables, where=where),
                requires=tuple(str(r) for r in raw.get("requires", []) or []),
                run=_render_cmd(raw.get("run"), variables, where=where),
                check=_render_cmd(raw.get("check"), variables, where=where),
                write=write,
                timeout_s=float(raw["timeout_s"]) if "timeout_s" in raw else None,
                check_timeout_s=float(raw["check_timeout_s"]) if "check_timeout_s" in raw else None,
                max_attempts=int(raw["max_attempts"]) if "max_attempts" in raw else None,
                transient_patterns=_check_patterns(list(raw.get("transient_patterns", [])), where=where),
                transient_exit_codes=tuple(int(c) for c in raw.get("transient_exit_codes", [])),
                env={str(k): render(str(v), variables, where=where) for k, v in (raw.get("env") or {}).items()},
                cwd=Path(render(raw["cwd"], variables, where=where)) if raw.get("cwd") else None,
            )
        )

    return PlanConfig(
        steps=steps,
        retry=retry,
        vars=variables,
        timeout_s=float(defaults.get("timeout_s", 600.0)),
        check_timeout_s=float(defaults.get("check_timeout_s", 60.0)),
        cwd=Path(defaults["cwd"]) if defaults.get("cwd") else None,
        source=source,
    )


def load_plan_file(path: Path) -> PlanConfig:
    if not path.exists():
        raise PlanError(f"Plan file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise PlanError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise PlanError(f"Plan file {path} must contain a mapping at the top level")
    return parse_plan(data, source=path)


if __name__ == "__main__":
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="Plan Loader CLI")
    parser.add_argument("--plan", required=True, help="Path to deploy.yaml")
    args = parser.parse_args()

    try:
        cfg = load_plan_file(Path(args.plan))
        print(f"Loaded {len(cfg.steps)} steps.")
        print(f"Retry: {cfg.retry}")
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
