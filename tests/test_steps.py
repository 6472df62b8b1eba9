import os
import stat
import sys

import pytest

from vmdeploy.errors import (
    CommandTimeoutError,
    FatalExecutionError,
    TransientExecutionError,
)
from vmdeploy.steps.base import StepContext
from vmdeploy.steps.files import FileMatches, WriteFile
from vmdeploy.steps.shell import ShellAction, ShellCheck
from vmdeploy.util.shell import CommandRunner

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")


@pytest.fixture
def ctx(tmp_path):
    return StepContext(step_id="demo", attempt=1, runner=CommandRunner(cwd=tmp_path, default_timeout_s=10))


def test_shell_action_success(ctx):
    res = ShellAction("echo ready")(ctx)
    assert res.ok
    assert res.stdout.strip() == "ready"


def test_shell_action_fatal_on_plain_failure(ctx):
    with pytest.raises(FatalExecutionError) as exc_info:
        ShellAction("echo 'syntax error in config' >&2; exit 2")(ctx)
    assert exc_info.value.exit_code == 2
    assert "syntax error" in exc_info.value.output


def test_shell_action_transient_on_lock_message(ctx):
    cmd = "echo 'E: Could not get lock /var/lib/dpkg/lock-frontend' >&2; exit 100"
    with pytest.raises(TransientExecutionError) as exc_info:
        ShellAction(cmd)(ctx)
    assert exc_info.value.exit_code == 100


def test_shell_action_transient_exit_code(ctx):
    with pytest.raises(TransientExecutionError):
        ShellAction("exit 75", transient_exit_codes=(75,))(ctx)


def test_shell_action_custom_pattern(ctx):
    action = ShellAction("echo 'remote: try later' >&2; exit 1", transient_patterns=("try later",))
    with pytest.raises(TransientExecutionError):
        action(ctx)


@pytest.mark.timeout(10)
def test_shell_action_timeout_is_transient(ctx):
    with pytest.raises(TransientExecutionError) as exc_info:
        ShellAction("sleep 5", timeout_s=0.3)(ctx)
    assert isinstance(exc_info.value.__cause__, CommandTimeoutError)


def test_shell_action_missing_binary_is_fatal(ctx):
    with pytest.raises(FatalExecutionError):
        ShellAction(["definitely-not-a-real-binary-xyz"])(ctx)


def test_shell_action_passes_env(ctx, tmp_path):
    ShellAction("echo $GREETING > greeting.txt", env={"GREETING": "hi"})(ctx)
    assert (tmp_path / "greeting.txt").read_text().strip() == "hi"


def test_shell_check(ctx):
    assert ShellCheck("true")(ctx) is True
    assert ShellCheck("false")(ctx) is False
    assert ShellCheck(["definitely-not-a-real-binary-xyz"])(ctx) is False


def test_write_file_and_match(ctx, tmp_path):
    target = tmp_path / "etc" / "gunicorn.service"
    content = "[Unit]\nDescription=gunicorn daemon\n"
    check = FileMatches(target, content, 0o640)
    assert check(ctx) is False

    WriteFile(target, content, 0o640)(ctx)
    assert target.read_text() == content
    assert check(ctx) is True

    target.write_text(content + "# drift\n")
    assert check(ctx) is False


def test_file_match_detects_mode_drift(ctx, tmp_path):
    target = tmp_path / "app.env"
    WriteFile(target, "A=1\n", 0o600)(ctx)
    assert FileMatches(target, "A=1\n", 0o600)(ctx)
    os.chmod(target, 0o644)
    assert not FileMatches(target, "A=1\n", 0o600)(ctx)
    assert FileMatches(target, "A=1\n")(ctx)


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root ignores permissions")
def test_write_file_permission_error_is_fatal(ctx, tmp_path):
    locked = tmp_path / "locked"
    locked.mkdir()
    os.chmod(locked, 0o500)
    try:
        with pytest.raises(FatalExecutionError):
            WriteFile(locked / "site.conf", "server {}\n")(ctx)
    finally:
        os.chmod(locked, 0o700)


@pytest.fixture
def umask_022():
    old = os.umask(0o022)
    yield
    os.umask(old)


def test_write_file_without_mode_uses_umask_default(ctx, tmp_path, umask_022):
    target = tmp_path / "gunicorn.service"
    WriteFile(target, "[Unit]\n")(ctx)
    assert stat.S_IMODE(target.stat().st_mode) == 0o644


def test_write_file_without_mode_keeps_existing_mode(ctx, tmp_path, umask_022):
    target = tmp_path / "myapp.conf"
    target.write_text("server {}\n")
    os.chmod(target, 0o640)
    WriteFile(target, "server { listen 80; }\n")(ctx)
    assert target.read_text() == "server { listen 80; }\n"
    assert stat.S_IMODE(target.stat().st_mode) == 0o640
