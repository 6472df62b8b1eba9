import pytest

from vmdeploy.util.ids import new_run_id, validate_run_id, validate_step_id


def test_validate_run_id_valid():
    assert validate_run_id("20260101_120000_ab12") == "20260101_120000_ab12"
    assert validate_run_id("release-1.2") == "release-1.2"


def test_validate_run_id_invalid():
    with pytest.raises(ValueError, match="Invalid run id"):
        validate_run_id("invalid/id")
    with pytest.raises(ValueError, match="Invalid run id"):
        validate_run_id("invalid id")
    with pytest.raises(ValueError):
        validate_run_id("")
    with pytest.raises(ValueError):
        validate_run_id("../escape")


def test_new_run_id():
    rid = new_run_id()
    assert validate_run_id(rid) == rid


def test_validate_step_id_valid():
    assert validate_step_id("install_packages") == "install_packages"
    assert validate_step_id("Nginx-Site.2") == "Nginx-Site.2"
    assert validate_step_id("a") == "a"
    assert validate_step_id("a" * 64) == "a" * 64


def test_validate_step_id_invalid():
    with pytest.raises(ValueError):
        validate_step_id("a" * 65)
    with pytest.raises(ValueError):
        validate_step_id("invalid name")
    with pytest.raises(ValueError):
        validate_step_id("invalid/name")
    with pytest.raises(ValueError):
        validate_step_id(".starts_with_period")
    with pytest.raises(ValueError):
        validate_step_id("")
