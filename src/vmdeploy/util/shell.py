from __future__ import annotations

"""Shell command execution.

CONTRACT
- Inputs: Command (str or argv list), cwd, env, timeout
- Outputs (required):
  - CmdResult(returncode, stdout, stderr, elapsed_s)
  - Optional copies of stdout/stderr in log files (mode 0600)
- Invariants:
  - Every call has an explicit timeout
  - str commands run with shell=True, list commands with shell=False
- Failure:
  - Raises CommandTimeoutError when the timeout elapses (partial output attached)
  - Raises CommandNotFoundError when the executable is missing
  - Does NOT raise on other non-zero exits; caller inspects return code
"""

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from ..errors import CommandNotFoundError, CommandTimeoutError
from .paths import safe_filename

DEFAULT_TIMEOUT_S = 600.0
SHELL_NOT_FOUND_RC = 127


def which(cmd: str) -> str | None:
    for p in os.environ.get("PATH", "").split(os.pathsep):
        if not p:
            continue
        candidate = Path(p) / cmd
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


@dataclass(frozen=True)
class CmdResult:
    cmd: str
    returncode: int
    stdout: str
    stderr: str
    elapsed_s: float
    stdout_path: Path | None = None
    stderr_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        parts = [s.rstrip() for s in (self.stdout, self.stderr) if s and s.strip()]
        return "\n".join(parts)


def _decode(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _write_log(path: Path | None, text: str) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    # Raw output can carry credentials; owner-only.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)


def run_cmd(
    cmd: str | list[str],
    cwd: Path | None = None,
    *,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    env: dict[str, str] | None = None,
    stdout_path: Path | None = None,
    stderr_path: Path | None = None,
) -> CmdResult:
    """Run a command and capture its output.

    CONTRACT:
    - Accepts cmd as str (run with shell=True) or list[str] (run with shell=False).
    - Writes stdout/stderr files when paths are given, also on timeout.
    - Records duration.
    """
    use_shell = isinstance(cmd, str)
    cmd_text = cmd if isinstance(cmd, str) else " ".join(cmd)

    start_t = time.monotonic()
    try:
        # Own process group so a timeout also kills grandchildren (sh -c, apt's dpkg).
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd) if cwd else None,
            shell=use_shell,
            env=(os.environ | env) if env else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise CommandNotFoundError(
            f"Executable not found: {cmd_text.split()[0] if cmd_text else cmd_text}", cmd=cmd_text
        ) from exc

    try:
        stdout, stderr = proc.communicate(timeout=timeout_s)
    except subprocess.TimeoutExpired as exc:
        _kill_group(proc)
        out, err = proc.communicate()
        out, err = _decode(out), _decode(err)
        _write_log(stdout_path, out)
        _write_log(stderr_path, err + f"\nTimeout expired after {timeout_s}s.\n")
        raise CommandTimeoutError(
            f"Command timed out after {timeout_s}s: {cmd_text}", cmd=cmd_text, stdout=out, stderr=err
        ) from exc
    except BaseException:
        _kill_group(proc)
        proc.wait()
        raise
    elapsed = time.monotonic() - start_t
    stdout, stderr = _decode(stdout), _decode(stderr)

    _write_log(stdout_path, stdout)
    _write_log(stderr_path, stderr)

    if use_shell and proc.returncode == SHELL_NOT_FOUND_RC:
        raise CommandNotFoundError(
            f"Command not found (exit {SHELL_NOT_FOUND_RC}): {cmd_text}",
            cmd=cmd_text,
            stdout=stdout,
            stderr=stderr,
        )

    return CmdResult(
        cmd=cmd_text,
        returncode=proc.returncode,
        stdout=stdout,
        stderr=stderr,
        elapsed_s=elapsed,
        stdout_path=stdout_path,
        stderr_path=stderr_path,
    )


@dataclass
class CommandRunner:
    """Runs external commands for deployment steps.

    Holds the defaults (cwd, env, timeout) and an optional log directory;
    when set, each call writes `<label>.stdout.log` / `<label>.stderr.log`.
    """

    cwd: Path | None = None
    env: dict[str, str] | None = None
    default_timeout_s: float = DEFAULT_TIMEOUT_S
    log_dir: Path | None = None

    def run(
        self,
        cmd: str | list[str],
        *,
        timeout_s: float | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        label: str | None = None,
    ) -> CmdResult:
        merged_env = (self.env or {}) | (env or {})
        stdout_path = stderr_path = None
        if self.log_dir is not None and label:
            name = safe_filename(label)
            stdout_path = self.log_dir / f"{name}.stdout.log"
            stderr_path = self.log_dir / f"{name}.stderr.log"
        return run_cmd(
            cmd,
            cwd or self.cwd,
            timeout_s=timeout_s if timeout_s is not None else self.default_timeout_s,
            env=merged_env or None,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


if __name__ == "__main__":
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="Run a shell command with a timeout")
    parser.add_argument("--cmd", required=True, help="Command to run")
    parser.add_argument("--cwd", default=".", help="Working directory")
    parser.add_argument("--timeout", type=float, default=10, help="Timeout in seconds")
    args = parser.parse_args()

    try:
        res = run_cmd(args.cmd, Path(args.cwd), timeout_s=args.timeout)
        print(f"Exit code: {res.returncode}")
        print(f"Stdout: {res.stdout}")
        print(f"Stderr: {res.stderr}")
        sys.exit(res.returncode)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
