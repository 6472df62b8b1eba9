from __future__ import annotations

"""Persisted deployment state.

CONTRACT
- Inputs: State file path (line-delimited JSON, one RunRecord per line)
- Outputs (required):
  - DeploymentState loaded at acquisition, flushed on release
- Invariants:
  - Single writer: an exclusive flock on `<state>.lock` is held while open
  - Every record() is written through with an atomic replace, so an
    interrupted run leaves only fully completed records on disk
  - serialize_state(parse_state(text)) == text for any text this module wrote
  - Release (flush + unlock) happens on every exit path, including exceptions
- Failure:
  - Unparseable content raises CorruptStateError inside parse_state(); load()
    recovers by moving the file aside and starting empty, with a warning
  - Raises StateLockedError if another process holds the lock
"""

import fcntl
import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..errors import CorruptStateError, StateLockedError
from ..util.paths import atomic_write_text
from .schemas import DeploymentState, RunRecord


def serialize_state(state: DeploymentState) -> str:
    return "".join(rec.model_dump_json() + "\n" for rec in state.records.values())


def parse_state(text: str) -> DeploymentState:
    records: dict[str, RunRecord] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            rec = RunRecord.model_validate_json(line)
        except PydanticValidationError as exc:
            raise CorruptStateError(f"Unparseable state record on line {lineno}: {exc}") from exc
        # Later lines supersede earlier ones for the same step.
        records.pop(rec.step_id, None)
        records[rec.step_id] = rec
    return DeploymentState(records=records)


class StateStore:
    """Scoped owner of the state file.

    Use as a context manager::

        with StateStore(path) as store:
            store.record(rec)
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._state: DeploymentState | None = None
        self._lock_fd: int | None = None

    @property
    def state(self) -> DeploymentState:
        if self._state is None:
            self._state = self.load()
        return self._state

    @property
    def locked(self) -> bool:
        return self._lock_fd is not None

    def load(self) -> DeploymentState:
        if not self.path.exists():
            return DeploymentState()
        try:
            text = self.path.read_bytes().decode("utf-8")
            return parse_state(text)
        except (CorruptStateError, UnicodeDecodeError) as exc:
            aside = self.path.with_name(self.path.name + ".corrupt")
            os.replace(self.path, aside)
            logger.warning(
                f"State file {self.path} is corrupt ({exc}); moved to {aside} and starting from "
                "empty state. Step checks will decide what still needs to run."
            )
            return DeploymentState()

    def peek(self) -> DeploymentState:
        """Read without locking or repairing; corrupt content reads as empty."""
        if not self.path.exists():
            return DeploymentState()
        try:
            return parse_state(self.path.read_bytes().decode("utf-8"))
        except (CorruptStateError, UnicodeDecodeError) as exc:
            logger.warning(f"State file {self.path} is corrupt ({exc}); treating as empty")
            return DeploymentState()

    def record(self, rec: RunRecord) -> None:
        self._state = self.state.with_record(rec)
        self.flush()

    def reset(self) -> None:
        self._state = DeploymentState()
        self.flush()

    def flush(self) -> None:
        if self._state is None:
            return
        atomic_write_text(self.path, serialize_state(self._state), mode=0o600)

    def _acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise StateLockedError(
                f"State file {self.path} is locked by another vmdeploy process"
            ) from exc
        self._lock_fd = fd

    def _release(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def __enter__(self) -> StateStore:
        self._acquire()
        try:
            self._state = self.load()
        except BaseException:
            self._release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.flush()
        finally:
            self._release()
