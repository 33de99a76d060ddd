"""Docker (or Podman) CLI runtime engine."""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Optional

from ..errors import EngineError, EngineTimeout, EngineUnavailable
from .base import ContainerInfo, ContainerSpec, ContainerStatus, ResourceInfo, RuntimeEngine

logger = logging.getLogger("robium.engine")

_UNREACHABLE = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "cannot connect to podman",
)
_MISSING = (
    "no such container",
    "no such image",
    "no such network",
    "no such volume",
    "no such object",
    "not found",
)


def _parse_labels(raw) -> dict[str, str]:
    """``docker ls`` prints labels as ``k=v,k2=v2``; inspect prints a mapping."""
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    labels: dict[str, str] = {}
    for item in (raw or "").split(","):
        if "=" in item:
            k, v = item.split("=", 1)
            labels[k.strip()] = v.strip()
    return labels


def _label_filters(labels: Optional[dict[str, str]]) -> list[str]:
    args: list[str] = []
    for key, value in sorted((labels or {}).items()):
        args.extend(["--filter", f"label={key}={value}"])
    return args


def _label_args(labels: Optional[dict[str, str]]) -> list[str]:
    args: list[str] = []
    for key, value in sorted((labels or {}).items()):
        args.extend(["--label", f"{key}={value}"])
    return args


class DockerCliEngine(RuntimeEngine):
    """Drives the ``docker`` CLI through :mod:`subprocess`.

    ``binary="podman"`` works as well; the subset of commands used here is
    CLI-compatible.
    """

    def __init__(self, binary: str = "docker", timeout: float = 30.0, build_timeout: float = 900.0):
        self.binary = binary
        self.timeout = timeout
        self.build_timeout = build_timeout

    def _run(
        self,
        operation: str,
        args: list[str],
        *,
        target: Optional[str] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        missing_ok: bool = False,
    ) -> Optional[str]:
        cmd = [self.binary, *args]
        deadline = timeout or self.timeout
        logger.debug(f"$ {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=deadline,
                input=input,
            )
        except subprocess.TimeoutExpired:
            raise EngineTimeout(operation, deadline, target)
        except FileNotFoundError:
            raise EngineUnavailable(operation, f"{self.binary} binary not found", target)

        if result.returncode == 0:
            return result.stdout

        stderr = (result.stderr or "").strip()
        lowered = stderr.lower()
        if any(marker in lowered for marker in _UNREACHABLE):
            raise EngineUnavailable(operation, stderr, target)
        if missing_ok and any(marker in lowered for marker in _MISSING):
            return None
        raise EngineError(operation, stderr or f"exit code {result.returncode}", target)

    def is_available(self) -> bool:
        try:
            self._run("version", ["version", "--format", "{{.Server.Version}}"], timeout=5)
            return True
        except EngineError:
            return False

    def ensure_image(self, tag: str, dockerfile: str, labels: Optional[dict[str, str]] = None) -> None:
        if self._run("image inspect", ["image", "inspect", tag], target=tag, missing_ok=True) is not None:
            return
        logger.info(f"Building image {tag}")
        self._run(
            "build",
            ["build", "-t", tag, *_label_args(labels), "-"],
            target=tag,
            timeout=self.build_timeout,
            input=dockerfile,
        )

    def create_container(self, spec: ContainerSpec) -> str:
        cmd = ["create", "--name", spec.name]
        cmd.extend(_label_args(spec.labels))

        if spec.network:
            cmd.extend(["--network", spec.network])
            for alias in spec.network_aliases:
                cmd.extend(["--network-alias", alias])
        else:
            cmd.extend(["--network", "none"])

        for key, value in sorted(spec.env.items()):
            cmd.extend(["-e", f"{key}={value}"])

        # Resource limits
        if spec.cpu_shares:
            cmd.extend(["--cpu-shares", str(spec.cpu_shares)])
        if spec.memory_bytes:
            cmd.extend(["--memory", str(spec.memory_bytes)])
        if spec.pids:
            cmd.extend(["--pids-limit", str(spec.pids)])

        # Security options
        if spec.read_only_rootfs:
            cmd.append("--read-only")
            cmd.extend(["--tmpfs", "/tmp"])
        if spec.no_new_privileges:
            cmd.append("--security-opt=no-new-privileges:true")
        for cap in spec.drop_capabilities:
            cmd.extend(["--cap-drop", cap])

        for m in spec.mounts:
            suffix = ":ro" if m.read_only else ""
            cmd.extend(["-v", f"{m.host_path}:{m.container_path}{suffix}"])
        for v in spec.volumes:
            cmd.extend(["--mount", f"type=volume,src={v.name},dst={v.container_path}"])

        cmd.append(spec.image)
        cmd.extend(spec.command)

        out = self._run("create", cmd, target=spec.name) or ""
        handle = out.strip().splitlines()[-1] if out.strip() else ""
        if not handle:
            raise EngineError("create", "engine returned no container id", spec.name)
        return handle

    def start_container(self, handle: str) -> None:
        self._run("start", ["start", handle], target=handle)

    def stop_container(self, handle: str, timeout: float) -> None:
        self._run(
            "stop",
            ["stop", "-t", str(int(timeout)), handle],
            target=handle,
            timeout=self.timeout + timeout,
            missing_ok=True,
        )

    def kill_container(self, handle: str) -> None:
        self._run("kill", ["kill", handle], target=handle, missing_ok=True)

    def remove_container(self, handle: str, force: bool = True) -> None:
        args = ["rm", "-v"]
        if force:
            args.append("-f")
        self._run("rm", [*args, handle], target=handle, missing_ok=True)

    def inspect_container(self, handle: str) -> Optional[ContainerInfo]:
        out = self._run(
            "inspect",
            ["inspect", "--type", "container", handle],
            target=handle,
            missing_ok=True,
        )
        if out is None:
            return None
        try:
            data = json.loads(out)[0]
            state = data.get("State", {})
            return ContainerInfo(
                id=data["Id"],
                name=data.get("Name", "").lstrip("/"),
                status=ContainerStatus.parse(state.get("Status", "")),
                exit_code=state.get("ExitCode"),
                labels=_parse_labels((data.get("Config") or {}).get("Labels") or {}),
            )
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            raise EngineError("inspect", f"unparseable output: {e}", handle)

    def _json_lines(self, operation: str, args: list[str]) -> list[dict]:
        out = self._run(operation, [*args, "--format", "{{json .}}"]) or ""
        rows = []
        for line in out.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Ignoring unparseable {operation} line: {line[:120]}")
        return rows

    def list_containers(self, labels: Optional[dict[str, str]] = None) -> list[ContainerInfo]:
        rows = self._json_lines("ps", ["ps", "-a", "--no-trunc", *_label_filters(labels)])
        return [
            ContainerInfo(
                id=row.get("ID", ""),
                name=str(row.get("Names", "")).split(",")[0],
                status=ContainerStatus.parse(row.get("State", "")),
                labels=_parse_labels(row.get("Labels")),
            )
            for row in rows
        ]

    def create_network(self, name: str, labels: Optional[dict[str, str]] = None) -> None:
        if self._run("network inspect", ["network", "inspect", name], target=name, missing_ok=True) is not None:
            return
        self._run("network create", ["network", "create", "--driver", "bridge", *_label_args(labels), name], target=name)

    def remove_network(self, name: str) -> None:
        self._run("network rm", ["network", "rm", name], target=name, missing_ok=True)

    def list_networks(self, labels: Optional[dict[str, str]] = None) -> list[ResourceInfo]:
        rows = self._json_lines("network ls", ["network", "ls", *_label_filters(labels)])
        return [ResourceInfo(name=row.get("Name", ""), labels=_parse_labels(row.get("Labels"))) for row in rows]

    def create_volume(self, name: str, labels: Optional[dict[str, str]] = None) -> None:
        self._run("volume create", ["volume", "create", *_label_args(labels), name], target=name)

    def remove_volume(self, name: str) -> None:
        self._run("volume rm", ["volume", "rm", "-f", name], target=name, missing_ok=True)

    def list_volumes(self, labels: Optional[dict[str, str]] = None) -> list[ResourceInfo]:
        rows = self._json_lines("volume ls", ["volume", "ls", *_label_filters(labels)])
        return [ResourceInfo(name=row.get("Name", ""), labels=_parse_labels(row.get("Labels"))) for row in rows]
