from pathlib import Path

import pytest

from vmdeploy.config import (
    STATE_FILE_ENV,
    RetryPolicy,
    default_state_file,
    load_plan_file,
    parse_plan,
    render,
)
from vmdeploy.errors import PlanError, ValidationError
from vmdeploy.init import write_plan_template
from vmdeploy.registry import StepRegistry, step_from_spec
from vmdeploy.steps.files import FileMatches, WriteFile
from vmdeploy.steps.shell import ShellAction, ShellCheck


def _plan(**extra):
    data = {
        "vars": {"db_name": "shop", "db_password": "s3cret"},
        "steps": [
            {"id": "install_packages", "run": "apt-get install -y postgresql"},
            {
                "id": "create_database",
                "requires": ["install_packages"],
                "run": "createdb {{ db_name }}",
                "check": ["psql", "-lqt", "{{db_name}}"],
            },
        ],
    }
    data.update(extra)
    return data


def test_parse_minimal_plan_uses_defaults():
    plan = parse_plan({"steps": [{"id": "a", "run": "true"}]})
    assert [s.id for s in plan.steps] == ["a"]
    assert plan.retry == RetryPolicy()
    assert plan.timeout_s == 600.0
    assert plan.vars == {}


def test_vars_are_rendered():
    plan = parse_plan(_plan())
    db = plan.steps[1]
    assert db.run == "createdb shop"
    assert db.check == ["psql", "-lqt", "shop"]
    assert db.requires == ("install_packages",)


def test_unknown_var_is_rejected():
    data = _plan()
    data["steps"][0]["run"] = "echo {{ missing }}"
    with pytest.raises(PlanError, match="missing"):
        parse_plan(data)


def test_render_leaves_plain_text_alone():
    assert render("echo ${HOME} {x}", {}, where="test") == "echo ${HOME} {x}"


def test_step_needs_exactly_one_of_run_or_write():
    with pytest.raises(PlanError, match="schema"):
        parse_plan({"steps": [{"id": "a"}]})
    with pytest.raises(PlanError, match="schema"):
        parse_plan({"steps": [{"id": "a", "run": "true", "write": {"path": "/x", "content": ""}}]})


def test_unknown_step_key_is_rejected():
    with pytest.raises(PlanError):
        parse_plan({"steps": [{"id": "a", "run": "true", "retries": 3}]})


def test_invalid_step_id():
    with pytest.raises(PlanError, match="Invalid step id"):
        parse_plan({"steps": [{"id": "bad id", "run": "true"}]})


def test_invalid_transient_pattern():
    with pytest.raises(PlanError, match="Invalid regex"):
        parse_plan({"steps": [{"id": "a", "run": "true", "transient_patterns": ["(unclosed"]}]})


def test_retry_and_defaults_sections():
    plan = parse_plan(
        _plan(retry={"max_attempts": 5, "base_delay_s": 0.5}, defaults={"timeout_s": 30, "cwd": "/srv"})
    )
    assert plan.retry == RetryPolicy(max_attempts=5, base_delay_s=0.5, max_delay_s=30.0)
    assert plan.timeout_s == 30.0
    assert plan.cwd == Path("/srv")


def test_write_step_mode_is_octal():
    plan = parse_plan(
        {"steps": [{"id": "env", "write": {"path": "/srv/app/.env", "content": "A=1\n", "mode": "0600"}}]}
    )
    assert plan.steps[0].write.mode == 0o600
    assert plan.steps[0].run is None


def test_load_plan_file_errors(tmp_path):
    with pytest.raises(PlanError, match="not found"):
        load_plan_file(tmp_path / "nope.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("steps: [\n", encoding="utf-8")
    with pytest.raises(PlanError, match="Invalid YAML"):
        load_plan_file(bad)

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_plan_file(scalar)


def test_default_state_file_honours_env(monkeypatch, tmp_path):
    monkeypatch.delenv(STATE_FILE_ENV, raising=False)
    assert default_state_file() == Path(".vmdeploy") / "state.jsonl"
    monkeypatch.setenv(STATE_FILE_ENV, str(tmp_path / "s.jsonl"))
    assert default_state_file() == tmp_path / "s.jsonl"


def test_step_from_spec_builds_actions():
    plan = parse_plan(
        {
            "defaults": {"timeout_s": 45},
            "steps": [
                {"id": "venv", "run": "python3 -m venv venv", "check": "test -d venv", "transient_patterns": ["busy"]},
                {"id": "unit", "write": {"path": "/etc/x.service", "content": "[Unit]\n", "mode": "644"}},
            ],
        }
    )
    venv = step_from_spec(plan.steps[0], plan)
    assert isinstance(venv.action, ShellAction)
    assert venv.action.timeout_s == 45.0
    assert "busy" in venv.action.transient_patterns
    assert "Could not get lock" in venv.action.transient_patterns
    assert isinstance(venv.check, ShellCheck)

    unit = step_from_spec(plan.steps[1], plan)
    assert isinstance(unit.action, WriteFile)
    assert isinstance(unit.check, FileMatches)
    assert unit.action.mode == 0o644


def test_bundled_template_is_a_valid_plan(tmp_path):
    dest = tmp_path / "deploy.yaml"
    assert write_plan_template(dest)
    assert not write_plan_template(dest)

    order = [s.id for s in StepRegistry.from_plan(load_plan_file(dest)).topological_order()]
    pos = {sid: i for i, sid in enumerate(order)}
    assert order[0] == "install_packages"
    assert pos["create_db_user"] < pos["create_database"] < pos["configure_app"]
    assert pos["setup_venv"] < pos["install_requirements"] < pos["configure_app"]
    assert pos["configure_app"] < pos["start_service"] < pos["enable_nginx_site"]
    assert pos["enable_nginx_site"] < pos["obtain_certificate"]


def test_check_timeout_reaches_shell_check():
    plan = parse_plan(
        {
            "defaults": {"check_timeout_s": 90},
            "steps": [
                {"id": "db", "run": "createdb shop", "check": "psql -lqt", "check_timeout_s": 240},
                {"id": "venv", "run": "python3 -m venv venv", "check": "test -d venv"},
            ],
        }
    )
    assert step_from_spec(plan.steps[0], plan).check.timeout_s == 240.0
    assert step_from_spec(plan.steps[1], plan).check.timeout_s == 90.0

    default_plan = parse_plan({"steps": [{"id": "venv", "run": "true", "check": "true"}]})
    assert step_from_spec(default_plan.steps[0], default_plan).check.timeout_s == 60.0
