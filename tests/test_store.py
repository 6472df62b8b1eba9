import pytest

from vmdeploy.artifacts.schemas import RunMeta, RunStatus
from vmdeploy.artifacts.store import ArtifactStore


def test_store_path_ok(tmp_path):
    store = ArtifactStore(tmp_path / "runs" / "r1")
    p = store.path("logs", "install_packages.1.stdout.log")
    assert p == tmp_path / "runs" / "r1" / "logs" / "install_packages.1.stdout.log"


def test_store_path_traversal(tmp_path):
    store = ArtifactStore(tmp_path / "runs" / "r1")

    with pytest.raises(ValueError, match="Refusing to access path"):
        store.path("..", "secret.txt")

    with pytest.raises(ValueError, match="Refusing to access path"):
        store.path("logs", "../../secret.txt")


def test_store_ensure(tmp_path):
    store = ArtifactStore(tmp_path / "runs" / "r1")
    assert not store.run_dir.exists()
    store.ensure()
    assert store.run_dir.is_dir()
    assert store.logs_dir.is_dir()


def test_store_write_json(tmp_path):
    store = ArtifactStore(tmp_path / "runs")
    store.ensure()
    store.write_json("foo.json", {"a": 1})
    assert (tmp_path / "runs" / "foo.json").read_text().strip() == '{\n  "a": 1\n}'
    assert store.read_json("foo.json") == {"a": 1}


def test_store_status_round_trip(tmp_path):
    store = ArtifactStore(tmp_path / "runs" / "r1")
    store.ensure()
    assert store.read_status() is None

    store.write_status(RunStatus(run_id="r1", status="FAILED", failed_step="create_database", executed=["a"]))
    status = store.read_status()
    assert status.status == "FAILED"
    assert status.failed_step == "create_database"
    assert status.schema_version == 1

    store.write_run_meta(RunMeta(run_id="r1", plan_file="deploy.yaml", state_file="s.jsonl", order=["a"]))
    assert store.read_json("RUN.json")["order"] == ["a"]
