"""Config compiler: WorkspaceSpec -> cached image and launch definitions.

Supports:
- Validation (env keys, mount targets, package references, service graph)
- Canonical content hashing
- Deterministic Dockerfile + compose rendering
- Append-only artifact cache with first-writer-wins inserts
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from threading import Lock
from typing import Optional

import yaml

from .errors import InvalidSpec
from .workspace import MAIN_SERVICE, NetworkMode, WorkspaceSpec

logger = logging.getLogger("robium.compiler")

# Bump when the rendered output format changes so old cache entries stop matching.
RENDERER_VERSION = 1
IMAGE_REPOSITORY = "robium/workspace"
APT_PREFIX = "apt:"

_APT_NAME = re.compile(r"^[a-z0-9][a-z0-9.+-]+$")

DEFAULT_CATALOG: dict[str, tuple[str, ...]] = {
    "ros-base": ("ros-humble-ros-base",),
    "rviz2": ("ros-humble-rviz2",),
    "nav2": ("ros-humble-navigation2", "ros-humble-nav2-bringup"),
    "slam-toolbox": ("ros-humble-slam-toolbox",),
    "gazebo": ("ros-humble-gazebo-ros-pkgs",),
    "moveit": ("ros-humble-moveit",),
    "ros2-control": ("ros-humble-ros2-control", "ros-humble-ros2-controllers"),
    "robot-localization": ("ros-humble-robot-localization",),
    "teleop": ("ros-humble-teleop-twist-keyboard", "ros-humble-teleop-twist-joy"),
    "turtlebot3": ("ros-humble-turtlebot3", "ros-humble-turtlebot3-simulations"),
    "realsense": ("ros-humble-realsense2-camera",),
    "rosbridge": ("ros-humble-rosbridge-suite",),
}


class PackageCatalog:
    """Maps component names to the system packages that provide them.

    Names are matched case-insensitively with ``_`` and ``-`` treated alike.
    ``apt:<name>`` references bypass the catalog.
    """

    def __init__(self, entries: Optional[dict[str, tuple[str, ...]]] = None):
        source = DEFAULT_CATALOG if entries is None else entries
        self._entries = {self._key(k): tuple(v) for k, v in source.items()}

    @staticmethod
    def _key(name: str) -> str:
        return name.strip().lower().replace("_", "-")

    @classmethod
    def from_yaml(cls, path: Path, include_defaults: bool = True) -> "PackageCatalog":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        entries = dict(DEFAULT_CATALOG) if include_defaults else {}
        for name, pkgs in (data.get("packages") or {}).items():
            if isinstance(pkgs, str):
                pkgs = [pkgs]
            entries[name] = tuple(str(p).strip() for p in pkgs)
        return cls(entries)

    def names(self) -> list[str]:
        return sorted(self._entries)

    def resolve(self, ref: str) -> Optional[tuple[str, ...]]:
        if ref.startswith(APT_PREFIX):
            name = ref[len(APT_PREFIX):].strip()
            return (name,) if _APT_NAME.match(name) else None
        return self._entries.get(self._key(ref))


@dataclass(frozen=True)
class LaunchService:
    """One container of a launch plan, in startup order."""
    name: str
    image: str
    command: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    depends_on: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "image": self.image,
            "command": list(self.command),
            "env": [[k, v] for k, v in self.env],
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LaunchService":
        return cls(
            name=data["name"],
            image=data["image"],
            command=tuple(data.get("command", [])),
            env=tuple((k, v) for k, v in data.get("env", [])),
            depends_on=tuple(data.get("depends_on", [])),
        )


@dataclass(frozen=True)
class CompiledArtifact:
    """Rendered definitions plus the hash of the inputs that produced them."""
    content_hash: str
    image_tag: str
    dockerfile: str
    compose: str
    launch: tuple[LaunchService, ...]
    packages: tuple[str, ...] = ()
    network_mode: NetworkMode = NetworkMode.PROJECT

    @property
    def main(self) -> LaunchService:
        return self.launch[-1]

    @property
    def auxiliary(self) -> tuple[LaunchService, ...]:
        return self.launch[:-1]

    def to_dict(self) -> dict:
        return {
            "content_hash": self.content_hash,
            "image_tag": self.image_tag,
            "launch": [s.to_dict() for s in self.launch],
            "packages": list(self.packages),
            "network_mode": self.network_mode.value,
        }


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    discarded: int = 0


class ArtifactCache:
    """Append-only map ``content hash -> CompiledArtifact``.

    Reads take no lock. Inserts are compare-and-swap on the hash: the first
    writer wins and later writers get the stored entry back. With ``root``
    set, entries are mirrored to ``<root>/<hash>/`` and reloaded at start-up.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root else None
        self._entries: dict[str, CompiledArtifact] = {}
        self._lock = Lock()
        self.stats = CacheStats()
        if self.root:
            self.root.mkdir(parents=True, exist_ok=True)
            self._load_existing()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._entries

    def get(self, content_hash: str) -> Optional[CompiledArtifact]:
        return self._entries.get(content_hash)

    def put_if_absent(self, artifact: CompiledArtifact) -> CompiledArtifact:
        with self._lock:
            existing = self._entries.get(artifact.content_hash)
            if existing is not None:
                self.stats.discarded += 1
                return existing
            self._entries[artifact.content_hash] = artifact
        if self.root:
            self._write(artifact)
        return artifact

    def _write(self, artifact: CompiledArtifact) -> None:
        target = self.root / artifact.content_hash
        if target.exists():
            return
        tmp = Path(tempfile.mkdtemp(prefix=".tmp-", dir=self.root))
        (tmp / "Dockerfile").write_text(artifact.dockerfile)
        (tmp / "compose.yaml").write_text(artifact.compose)
        (tmp / "artifact.json").write_text(json.dumps(artifact.to_dict(), indent=2, sort_keys=True))
        try:
            os.rename(tmp, target)
        except OSError:
            # Another process won the race for this hash.
            for child in tmp.iterdir():
                child.unlink()
            tmp.rmdir()

    def _load_existing(self) -> None:
        for entry in sorted(self.root.iterdir()):
            meta = entry / "artifact.json"
            if entry.name.startswith(".") or not meta.exists():
                continue
            try:
                data = json.loads(meta.read_text())
                artifact = CompiledArtifact(
                    content_hash=data["content_hash"],
                    image_tag=data["image_tag"],
                    dockerfile=(entry / "Dockerfile").read_text(),
                    compose=(entry / "compose.yaml").read_text(),
                    launch=tuple(LaunchService.from_dict(s) for s in data["launch"]),
                    packages=tuple(data.get("packages", [])),
                    network_mode=NetworkMode(data.get("network_mode", "project")),
                )
            except (OSError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable cache entry {entry}: {e}")
                continue
            if artifact.content_hash == entry.name:
                self._entries[artifact.content_hash] = artifact


def canonical_json(data: dict) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


class ConfigCompiler:
    """Validates workspace specs and renders them into cached artifacts."""

    def __init__(
        self,
        catalog: Optional[PackageCatalog] = None,
        cache: Optional[ArtifactCache] = None,
    ):
        self.catalog = catalog or PackageCatalog()
        self.cache = cache if cache is not None else ArtifactCache()

    def validate(self, spec: WorkspaceSpec) -> tuple[str, ...]:
        """Check the spec and return the resolved system packages."""
        seen: set[str] = set()
        for name, _ in spec.env:
            if name in seen:
                raise InvalidSpec(f"duplicate environment variable {name!r}", "env")
            seen.add(name)

        targets = [PurePosixPath(os.path.normpath(m.target)) for m in spec.mounts]
        for i, a in enumerate(targets):
            for b in targets[i + 1:]:
                if a == b or a in b.parents or b in a.parents:
                    raise InvalidSpec(f"mount targets overlap: {a} and {b}", "mounts")

        resolved: list[str] = []
        for ref in spec.packages:
            pkgs = self.catalog.resolve(ref)
            if not pkgs:
                raise InvalidSpec(f"unresolvable package reference {ref!r}", "packages")
            for p in pkgs:
                if p not in resolved:
                    resolved.append(p)

        for svc in spec.services:
            seen_env: set[str] = set()
            for name, _ in svc.env:
                if name in seen_env:
                    raise InvalidSpec(f"duplicate environment variable {name!r}", f"services.{svc.name}.env")
                seen_env.add(name)
        self._startup_order(spec)
        return tuple(resolved)

    def content_hash(self, spec: WorkspaceSpec, resolved: tuple[str, ...]) -> str:
        payload = {
            "renderer": RENDERER_VERSION,
            "spec": spec.to_dict(),
            "resolved": list(resolved),
        }
        return hashlib.sha256(canonical_json(payload).encode()).hexdigest()

    def compile(self, spec: WorkspaceSpec) -> CompiledArtifact:
        resolved = self.validate(spec)
        content_hash = self.content_hash(spec, resolved)

        cached = self.cache.get(content_hash)
        if cached is not None:
            self.cache.stats.hits += 1
            logger.debug(f"Cache hit for {content_hash[:12]}")
            return cached

        self.cache.stats.misses += 1
        artifact = self._render(spec, resolved, content_hash)
        stored = self.cache.put_if_absent(artifact)
        if stored is artifact:
            logger.info(f"Compiled artifact {content_hash[:12]} ({stored.image_tag})")
        return stored

    def _startup_order(self, spec: WorkspaceSpec) -> list[str]:
        graph = {s.name: list(s.depends_on) for s in spec.services}
        for name, deps in graph.items():
            for dep in deps:
                if dep not in graph:
                    raise InvalidSpec(f"service {name!r} depends on unknown service {dep!r}", "services")

        in_degree = {name: len(set(deps)) for name, deps in graph.items()}
        queue = deque(sorted(name for name, degree in in_degree.items() if degree == 0))
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for name in sorted(graph):
                if current in graph[name]:
                    in_degree[name] -= 1
                    if in_degree[name] == 0:
                        queue.append(name)

        if len(order) != len(graph):
            missing = sorted(set(graph) - set(order))
            raise InvalidSpec(f"circular service dependency involving {missing}", "services")
        return order

    def _render(self, spec: WorkspaceSpec, resolved: tuple[str, ...], content_hash: str) -> CompiledArtifact:
        image_tag = f"{IMAGE_REPOSITORY}:{content_hash[:16]}"
        by_name = {s.name: s for s in spec.services}
        launch = [
            LaunchService(
                name=s.name,
                image=s.image,
                command=s.command,
                env=tuple(sorted(s.env)),
                depends_on=tuple(sorted(set(s.depends_on))),
            )
            for s in (by_name[n] for n in self._startup_order(spec))
        ]
        launch.append(
            LaunchService(
                name=MAIN_SERVICE,
                image=image_tag,
                command=spec.command,
                env=tuple(sorted(spec.env)),
                depends_on=tuple(sorted(by_name)),
            )
        )
        return CompiledArtifact(
            content_hash=content_hash,
            image_tag=image_tag,
            dockerfile=render_dockerfile(spec, resolved, content_hash),
            compose=render_compose(launch, spec.network_mode, content_hash),
            launch=tuple(launch),
            packages=resolved,
            network_mode=spec.network_mode,
        )


def render_dockerfile(spec: WorkspaceSpec, resolved: tuple[str, ...], content_hash: str) -> str:
    lines = [
        f"FROM {spec.base_image}",
        "",
        f"LABEL robium.artifact={content_hash}",
        "",
        "ENV DEBIAN_FRONTEND=noninteractive",
        "",
    ]

    if resolved:
        lines.append("# Workspace components")
        lines.append("RUN apt-get update \\")
        lines.append("    && apt-get install -y --no-install-recommends \\")
        for pkg in resolved:
            lines.append(f"        {pkg} \\")
        lines.append("    && rm -rf /var/lib/apt/lists/*")
        lines.append("")

    env = sorted(spec.env)
    if env:
        lines.append("# Workspace environment")
        for name, value in env:
            lines.append(f"ENV {name}={json.dumps(value)}")
        lines.append("")

    lines.extend([
        "# Security: run as non-root user",
        "RUN id -u robium >/dev/null 2>&1 || useradd -m -u 1000 robium",
        "",
        "WORKDIR /workspace",
        "USER robium",
    ])

    if spec.command:
        lines.extend(["", f"CMD {json.dumps(list(spec.command))}"])

    return "\n".join(lines) + "\n"


def render_compose(launch: list[LaunchService], network_mode: NetworkMode, content_hash: str) -> str:
    """Render the launch plan as a compose file.

    Run-specific values (network, mounts, limits) are supplied by the
    lifecycle controller, so the network is external and named by variable.
    """
    services = {}
    for svc in launch:
        entry: dict = {"image": svc.image}
        if svc.name == MAIN_SERVICE:
            entry["build"] = {"context": ".", "dockerfile": "Dockerfile"}
        if svc.command:
            entry["command"] = list(svc.command)
        if svc.env:
            entry["environment"] = dict(svc.env)
        if svc.depends_on:
            entry["depends_on"] = list(svc.depends_on)
        if network_mode == NetworkMode.NONE:
            entry["network_mode"] = "none"
        else:
            entry["networks"] = ["workspace"]
        entry["labels"] = {"robium.artifact": content_hash, "robium.service": svc.name}
        services[svc.name] = entry

    compose: dict = {"name": f"robium-{content_hash[:12]}", "services": services}
    if network_mode != NetworkMode.NONE:
        compose["networks"] = {"workspace": {"external": True, "name": "${ROBIUM_NETWORK}"}}

    return yaml.safe_dump(compose, default_flow_style=False, sort_keys=True)
