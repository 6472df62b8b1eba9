from __future__ import annotations

"""Path utilities.

CONTRACT
- Inputs: strings (labels) or paths
- Outputs:
  - safe_filename() returns sanitized string (no path separators)
  - copy_template() writes bundled resource to dest
  - atomic_write_text() replaces a file in one rename
- Invariants:
  - safe_filename removes dangerous chars `[^A-Za-z0-9_.-]`
  - copy_template never overwrites existing files (unless `overwrite=True`)
  - atomic_write_text never leaves a half-written destination and, without an
    explicit mode, keeps the existing mode (or the umask default for new files)
- Failure:
  - copy_template raises if resource missing
"""

import importlib.resources
import os
import re
import stat
import tempfile
from pathlib import Path

from .. import templates

_SAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def copy_template(template_name: str, dest: Path, overwrite: bool = False) -> bool:
    """Write a bundled template. Returns True if the file was written."""
    if dest.exists() and not overwrite:
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    text = importlib.resources.files(templates).joinpath(template_name).read_text(encoding="utf-8")
    dest.write_text(text, encoding="utf-8")
    return True


def safe_filename(name: str, *, default: str = "item") -> str:
    cleaned = _SAFE_FILENAME_RE.sub("_", name).strip("._-")
    return cleaned or default


def _default_mode(path: Path) -> int:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def atomic_write_text(path: Path, text: str, *, mode: int | None = None) -> None:
    """Replace `path` with `text` in one rename.

    Without `mode`, an existing file keeps its permissions and a new file gets
    the umask default, like a plain open().
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        mode = _default_mode(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
