import pytest
import yaml
from click.testing import CliRunner

from robium_engine import cli as cli_module
from robium_engine.cli import cli
from robium_engine.client import ControlError

RECORD = {
    "identity": {"project_id": "p1", "workspace_id": "w1", "run_id": "r1", "name": "robium-p1-w1-r1"},
    "state": "running",
    "handle": "0123456789abcdef",
    "artifact_hash": "f" * 64,
    "constraints": {"network": "robium-net-p1"},
    "last_activity": 1700000000.0,
    "last_error": None,
}


class FakeClient:
    """Stands in for ControlClient."""

    instances: list = []

    def __init__(self, url, token=None):
        self.url = url
        self.token = token
        self.calls = []
        FakeClient.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass

    def start(self, *args):
        self.calls.append(("start", args))
        return RECORD

    def stop(self, *args):
        self.calls.append(("stop", args))
        return dict(RECORD, state="stopped", handle=None)

    def destroy(self, *args):
        raise ControlError(409, "InvalidTransition", "cannot destroy robium-p1-w1-r1 from state running")

    def status(self, *args):
        return RECORD if args[2] == "r1" else None

    def list_runs(self, state=None, project_id=None):
        self.calls.append(("list", state, project_id))
        return [RECORD]

    def sweep(self):
        return {"failed": [], "reaped": ["robium-p1-w1-r0"], "orphans": [], "skipped": [], "errors": []}


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.instances = []
    monkeypatch.setattr(cli_module, "ControlClient", FakeClient)
    return FakeClient


@pytest.fixture
def workspace_file(tmp_path):
    path = tmp_path / "workspace.yaml"
    path.write_text(yaml.safe_dump({"base_image": "ros:humble-ros-base", "packages": ["nav2"]}))
    return path


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "robium-engine" in result.output


def test_compile_writes_artifacts(workspace_file, tmp_path):
    out = tmp_path / "out"
    result = CliRunner().invoke(cli, ["compile", str(workspace_file), "-o", str(out)])
    assert result.exit_code == 0, result.output
    assert "Compiled robium/workspace:" in result.output
    assert (out / "Dockerfile").read_text().startswith("FROM ros:humble-ros-base")
    assert yaml.safe_load((out / "compose.yaml").read_text())["services"]["workspace"]


def test_compile_reports_invalid_spec(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"base_image": "x", "packages": ["nope"]}))
    result = CliRunner().invoke(cli, ["compile", str(path)])
    assert result.exit_code == 1
    assert "unresolvable package" in result.output


def test_run_sends_spec(fake_client, workspace_file):
    result = CliRunner().invoke(
        cli,
        ["--token", "t", "run", str(workspace_file), "-P", "p1", "-W", "w1", "-R", "r1"],
    )
    assert result.exit_code == 0, result.output
    client = fake_client.instances[0]
    assert client.token == "t"
    name, args = client.calls[0]
    assert name == "start"
    assert args[:3] == ("p1", "w1", "r1")
    assert args[3]["packages"] == ["nav2"]
    assert "running" in result.output


def test_stop(fake_client):
    result = CliRunner().invoke(cli, ["stop", "p1", "w1", "r1"])
    assert result.exit_code == 0
    assert "stopped" in result.output


def test_destroy_error_exits_nonzero(fake_client):
    result = CliRunner().invoke(cli, ["destroy", "p1", "w1", "r1"])
    assert result.exit_code == 1
    assert "InvalidTransition" in result.output


def test_status_table(fake_client):
    result = CliRunner().invoke(cli, ["status", "--state", "running"])
    assert result.exit_code == 0
    assert "p1" in result.output
    assert fake_client.instances[0].calls == [("list", "running", None)]


def test_status_single_missing(fake_client):
    result = CliRunner().invoke(cli, ["status", "p1", "w1", "r9"])
    assert result.exit_code == 1


def test_sweep(fake_client):
    result = CliRunner().invoke(cli, ["sweep"])
    assert result.exit_code == 0
    assert "robium-p1-w1-r0" in result.output
