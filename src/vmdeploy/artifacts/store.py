from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .schemas import RunMeta, RunStatus


@dataclass(frozen=True)
class ArtifactStore:
    """Per-run artifact directory.

    CONTRACT
    - Inputs: Run directory path
    - Outputs:
      - Writes files under .vmdeploy/runs/<run_id>/ (RUN.json, RUN_STATUS.json,
        FAILURE.md, logs/)
    - Invariants:
      - Enforces path safety (prevents traversal outside run_dir)
      - Ensures parent directories exist on write
    - Failure:
      - Raises ValueError on unsafe path access
    """
    run_dir: Path

    @property
    def logs_dir(self) -> Path:
        return self.run_dir / "logs"

    def ensure(self) -> None:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(exist_ok=True)

    def path(self, *parts: str) -> Path:
        p = self.run_dir.joinpath(*parts)
        base = self.run_dir.resolve(strict=False)
        try:
            p.resolve(strict=False).relative_to(base)
        except ValueError as exc:
            raise ValueError(f"Refusing to access path outside run_dir: {p}") from exc
        return p

    def write_json(self, rel: str, data: Any) -> Path:
        p = self.path(rel)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        return p

    def read_json(self, rel: str) -> Any:
        return json.loads(self.path(rel).read_text(encoding="utf-8"))

    def write_text(self, rel: str, text: str) -> Path:
        p = self.path(rel)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p

    def write_run_meta(self, meta: RunMeta) -> Path:
        return self.write_json("RUN.json", meta.model_dump(mode="json"))

    def write_status(self, status: RunStatus) -> Path:
        return self.write_json("RUN_STATUS.json", status.model_dump(mode="json"))

    def read_status(self) -> RunStatus | None:
        if not self.path("RUN_STATUS.json").exists():
            return None
        return RunStatus.model_validate(self.read_json("RUN_STATUS.json"))
