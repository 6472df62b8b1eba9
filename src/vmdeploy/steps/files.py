"""Rendered file steps (systemd units, Nginx sites, env files)."""

from __future__ import annotations

import stat
from dataclasses import dataclass
from pathlib import Path

from ..errors import FatalExecutionError
from ..util.paths import atomic_write_text
from .base import StepContext


@dataclass
class WriteFile:
    path: Path
    content: str
    mode: int | None = None

    def __call__(self, ctx: StepContext) -> None:
        try:
            atomic_write_text(self.path, self.content, mode=self.mode)
        except OSError as exc:
            raise FatalExecutionError(f"Cannot write {self.path}: {exc}") from exc


@dataclass
class FileMatches:
    """Satisfied when the file exists with identical content (and mode, if set)."""

    path: Path
    content: str
    mode: int | None = None

    def __call__(self, ctx: StepContext) -> bool:
        try:
            if self.path.read_text(encoding="utf-8") != self.content:
                return False
            if self.mode is not None and stat.S_IMODE(self.path.stat().st_mode) != self.mode:
                return False
        except (FileNotFoundError, UnicodeDecodeError):
            return False
        return True
