from __future__ import annotations

"""Template initializer.

CONTRACT
- Inputs: Destination plan path
- Outputs (required):
  - Writes a starter deploy.yaml for the PostgreSQL/Gunicorn/Nginx/Redis/Celery stack
- Invariants:
  - Creates parent directory if missing
  - Does not overwrite an existing plan (by default)
- Failure:
  - Raises OSError on permission issues
"""

from pathlib import Path

from .util.paths import copy_template

PLAN_TEMPLATE = "deploy.yaml"


def write_plan_template(dest: Path, force: bool = False) -> bool:
    return copy_template(PLAN_TEMPLATE, dest, overwrite=force)
