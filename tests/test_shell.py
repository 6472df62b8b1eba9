import stat
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from vmdeploy.errors import CommandNotFoundError, CommandTimeoutError
from vmdeploy.util.shell import CommandRunner, run_cmd, which

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")


def test_run_cmd_success(tmp_path):
    res = run_cmd("echo 'hello'", tmp_path, timeout_s=10)
    assert res.returncode == 0
    assert res.ok
    assert res.stdout.strip() == "hello"
    assert res.elapsed_s >= 0


def test_run_cmd_failure_does_not_raise(tmp_path):
    res = run_cmd("echo oops >&2; exit 3", tmp_path, timeout_s=10)
    assert res.returncode == 3
    assert not res.ok
    assert "oops" in res.stderr
    assert res.output == "oops"


@pytest.mark.timeout(10)
def test_run_cmd_timeout(tmp_path):
    with pytest.raises(CommandTimeoutError) as exc_info:
        run_cmd("sleep 5", tmp_path, timeout_s=0.5)
    assert "timed out" in str(exc_info.value)
    assert exc_info.value.cmd == "sleep 5"


@pytest.mark.timeout(10)
def test_run_cmd_timeout_writes_logs(tmp_path):
    err = tmp_path / "logs" / "err.log"
    with pytest.raises(CommandTimeoutError):
        run_cmd("sleep 5", tmp_path, timeout_s=0.5, stderr_path=err)
    assert "Timeout expired" in err.read_text()


def test_missing_executable_list_form(tmp_path):
    with pytest.raises(CommandNotFoundError):
        run_cmd(["definitely-not-a-real-binary-xyz", "--help"], tmp_path, timeout_s=10)


def test_missing_executable_shell_form(tmp_path):
    with pytest.raises(CommandNotFoundError):
        run_cmd("definitely-not-a-real-binary-xyz --help", tmp_path, timeout_s=10)


def test_run_cmd_list_mode_uses_no_shell(tmp_path):
    with patch("subprocess.Popen") as mock_popen:
        proc = MagicMock(returncode=0)
        proc.communicate.return_value = ("", "")
        mock_popen.return_value = proc
        res = run_cmd(["ls", "-l"], tmp_path, timeout_s=7)
        args, kwargs = mock_popen.call_args
        assert args[0] == ["ls", "-l"]
        assert kwargs["shell"] is False
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["start_new_session"] is True
        assert proc.communicate.call_args.kwargs["timeout"] == 7
        assert res.ok


def test_env_is_merged(tmp_path):
    res = run_cmd("echo $VMDEPLOY_TEST_VAR", tmp_path, timeout_s=10, env={"VMDEPLOY_TEST_VAR": "val"})
    assert res.stdout.strip() == "val"


def test_runner_writes_labelled_logs(tmp_path):
    runner = CommandRunner(cwd=tmp_path, log_dir=tmp_path / "logs", default_timeout_s=10)
    res = runner.run("echo out; echo err >&2", label="install_packages.1")
    assert res.stdout_path == tmp_path / "logs" / "install_packages.1.stdout.log"
    assert res.stdout_path.read_text().strip() == "out"
    assert res.stderr_path.read_text().strip() == "err"
    assert stat.S_IMODE(res.stdout_path.stat().st_mode) == 0o600
    assert stat.S_IMODE(res.stderr_path.stat().st_mode) == 0o600


def test_runner_default_timeout_applies(tmp_path):
    runner = CommandRunner(default_timeout_s=3)
    with patch("vmdeploy.util.shell.run_cmd") as mock_run_cmd:
        runner.run("true")
        assert mock_run_cmd.call_args.kwargs["timeout_s"] == 3
        runner.run("true", timeout_s=9)
        assert mock_run_cmd.call_args.kwargs["timeout_s"] == 9


def test_which_finds_shell():
    assert which("sh") is not None
    assert which("definitely-not-a-real-binary-xyz") is None
    assert Path(which("sh")).name == "sh"
