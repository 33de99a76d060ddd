from __future__ import annotations

import itertools
import os
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

# Load .env from project root so local ROBIUM_* overrides are visible
load_dotenv(_PROJECT_ROOT / ".env", override=False)

# Resolve relative ROBIUM_WORKSPACE_ROOT against project root
_root = os.environ.get("ROBIUM_WORKSPACE_ROOT", "")
if _root and not os.path.isabs(_root):
    os.environ["ROBIUM_WORKSPACE_ROOT"] = str((_PROJECT_ROOT / _root).resolve())

from robium_engine.config import EngineSettings  # noqa: E402
from robium_engine.engine.base import (  # noqa: E402
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    ResourceInfo,
    RuntimeEngine,
)
from robium_engine.errors import EngineError, EngineUnavailable  # noqa: E402
from robium_engine.lifecycle import LifecycleController, RunRequest  # noqa: E402
from robium_engine.workspace import WorkspaceSpec  # noqa: E402


def _matches(labels: dict[str, str], wanted: Optional[dict[str, str]]) -> bool:
    return all(labels.get(k) == v for k, v in (wanted or {}).items())


class FakeEngine(RuntimeEngine):
    """In-memory engine with scriptable failures."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.networks: dict[str, dict[str, str]] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.images: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.available = True
        self.stop_hang: Optional[threading.Event] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ── scripting ────────────────────────────────────────────

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([error] * times)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _check(self, operation: str, target: str = "") -> None:
        with self._lock:
            self.calls.append((operation, target))
            if not self.available:
                raise EngineUnavailable(operation, "engine down", target)
            queue = self.failures.get(operation)
            if queue:
                raise queue.pop(0)

    def _find(self, handle: str) -> Optional[str]:
        if handle in self.containers:
            return handle
        for cid, c in self.containers.items():
            if c["name"] == handle:
                return cid
        return None

    def by_name(self, name: str) -> Optional[dict]:
        cid = self._find(name)
        return self.containers.get(cid) if cid else None

    def set_status(self, name: str, status: ContainerStatus, exit_code: Optional[int] = None) -> None:
        container = self.by_name(name)
        container["status"] = status
        container["exit_code"] = exit_code

    # ── RuntimeEngine ────────────────────────────────────────

    def is_available(self) -> bool:
        return self.available

    def ensure_image(self, tag: str, dockerfile: str, labels: Optional[dict[str, str]] = None) -> None:
        self._check("build", tag)
        self.images.setdefault(tag, dockerfile)

    def create_container(self, spec: ContainerSpec) -> str:
        self._check("create", spec.name)
        if spec.network and spec.network not in self.networks:
            raise EngineError("create", f"network {spec.network} not found", spec.name)
        for v in spec.volumes:
            if v.name not in self.volumes:
                raise EngineError("create", f"volume {v.name} not found", spec.name)
        if self._find(spec.name):
            raise EngineError("create", f"name {spec.name} already in use", spec.name)
        cid = f"{next(self._ids):012x}"
        self.containers[cid] = {
            "name": spec.name,
            "spec": spec,
            "labels": dict(spec.labels),
            "status": ContainerStatus.CREATED,
            "exit_code": None,
        }
        return cid

    def start_container(self, handle: str) -> None:
        self._check("start", handle)
        cid = self._find(handle)
        if cid is None:
            raise EngineError("start", "no such container", handle)
        self.containers[cid]["status"] = ContainerStatus.RUNNING

    def stop_container(self, handle: str, timeout: float) -> None:
        self._check("stop", handle)
        if self.stop_hang is not None:
            self.stop_hang.wait(10)
            return
        cid = self._find(handle)
        if cid:
            self.containers[cid]["status"] = ContainerStatus.EXITED
            self.containers[cid]["exit_code"] = 0

    def kill_container(self, handle: str) -> None:
        self._check("kill", handle)
        cid = self._find(handle)
        if cid:
            self.containers[cid]["status"] = ContainerStatus.EXITED
            self.containers[cid]["exit_code"] = 137

    def remove_container(self, handle: str, force: bool = True) -> None:
        self._check("rm", handle)
        cid = self._find(handle)
        if cid:
            del self.containers[cid]

    def inspect_container(self, handle: str) -> Optional[ContainerInfo]:
        self._check("inspect", handle)
        cid = self._find(handle)
        if cid is None:
            return None
        c = self.containers[cid]
        return ContainerInfo(id=cid, name=c["name"], status=c["status"], exit_code=c["exit_code"], labels=c["labels"])

    def list_containers(self, labels: Optional[dict[str, str]] = None) -> list[ContainerInfo]:
        self._check("ps")
        return [
            ContainerInfo(id=cid, name=c["name"], status=c["status"], exit_code=c["exit_code"], labels=c["labels"])
            for cid, c in self.containers.items()
            if _matches(c["labels"], labels)
        ]

    def create_network(self, name: str, labels: Optional[dict[str, str]] = None) -> None:
        self._check("network create", name)
        self.networks.setdefault(name, dict(labels or {}))

    def remove_network(self, name: str) -> None:
        self._check("network rm", name)
        self.networks.pop(name, None)

    def list_networks(self, labels: Optional[dict[str, str]] = None) -> list[ResourceInfo]:
        self._check("network ls")
        return [ResourceInfo(name=n, labels=l) for n, l in self.networks.items() if _matches(l, labels)]

    def create_volume(self, name: str, labels: Optional[dict[str, str]] = None) -> None:
        self._check("volume create", name)
        self.volumes.setdefault(name, dict(labels or {}))

    def remove_volume(self, name: str) -> None:
        self._check("volume rm", name)
        self.volumes.pop(name, None)

    def list_volumes(self, labels: Optional[dict[str, str]] = None) -> list[ResourceInfo]:
        self._check("volume ls")
        return [ResourceInfo(name=n, labels=l) for n, l in self.volumes.items() if _matches(l, labels)]


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return replace(
        EngineSettings(),
        workspace_root=tmp_path / "workspaces",
        grace_period_s=0.1,
        call_timeout_s=5.0,
        idle_timeout_s=600.0,
        retry_base_s=1.0,
        retry_max_s=8.0,
        retry_ceiling=3,
    )


@pytest.fixture
def controller(engine, settings):
    ctl = LifecycleController.from_settings(settings, engine)
    yield ctl
    ctl.shutdown()


@pytest.fixture
def spec() -> WorkspaceSpec:
    return WorkspaceSpec.from_dict(
        {
            "base_image": "ros:humble-ros-base",
            "packages": ["nav2"],
            "env": {"ROS_DOMAIN_ID": "7"},
            "limits": {"memory": "512m", "cpu_shares": 512},
            "mounts": [{"source": "src", "target": "/workspace/src"}],
        }
    )


@pytest.fixture
def make_request(spec):
    def _make(project_id: str = "p1", workspace_id: str = "w1", run_id: str = "r1", workspace: Optional[WorkspaceSpec] = None):
        return RunRequest(project_id=project_id, workspace_id=workspace_id, run_id=run_id, spec=workspace or spec)

    return _make
