"""Typed workspace specification.

Raw payloads (YAML files, API bodies) are converted here, once, into frozen
dataclasses. Structural problems (wrong types, bad sizes, unknown modes) raise
:class:`InvalidSpec` immediately; semantic checks that need the package
catalog live in the compiler.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Optional, Union

import yaml

from .errors import InvalidSpec

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SERVICE_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")
_MEMORY = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)(?:i?b)?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}

MAIN_SERVICE = "workspace"


class NetworkMode(str, Enum):
    """How a run is attached to the network."""
    PROJECT = "project"   # per-project bridge network
    NONE = "none"         # no network at all
    HOST = "host"         # host networking (always refused by policy)


def parse_memory(value: Any) -> int:
    """Parse ``536870912``, ``"512m"``, ``"2GiB"`` into bytes."""
    if isinstance(value, bool):
        raise InvalidSpec(f"invalid memory value {value!r}", "limits.memory")
    if isinstance(value, int):
        if value <= 0:
            raise InvalidSpec("must be positive", "limits.memory")
        return value
    m = _MEMORY.match(str(value))
    if not m:
        raise InvalidSpec(f"invalid memory value {value!r}", "limits.memory")
    size = int(float(m.group(1)) * _UNITS[m.group(2).lower()])
    if size <= 0:
        raise InvalidSpec("must be positive", "limits.memory")
    return size


def _positive_int(value: Any, where: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidSpec(f"expected integer, got {value!r}", where)
    try:
        v = int(value)
    except (TypeError, ValueError):
        raise InvalidSpec(f"expected integer, got {value!r}", where)
    if v <= 0:
        raise InvalidSpec("must be positive", where)
    return v


def _clean(value: Any, where: str) -> str:
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise InvalidSpec(f"expected string, got {type(value).__name__}", where)
    return str(value).strip()


def _command(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    if isinstance(value, (list, tuple)):
        return tuple(_clean(v, where) for v in value)
    raise InvalidSpec("expected string or list", where)


def _env_pairs(value: Any, where: str) -> tuple[tuple[str, str], ...]:
    """Accept a mapping, ``["K=V"]`` or ``[{"name": K, "value": V}]``.

    Order and duplicates are preserved here so the compiler can reject them.
    """
    if value is None:
        return ()
    pairs: list[tuple[str, str]] = []
    if isinstance(value, dict):
        items = list(value.items())
    elif isinstance(value, (list, tuple)):
        items = []
        for entry in value:
            if isinstance(entry, str):
                if "=" not in entry:
                    raise InvalidSpec(f"expected NAME=value, got {entry!r}", where)
                k, v = entry.split("=", 1)
                items.append((k, v))
            elif isinstance(entry, dict) and "name" in entry:
                items.append((entry["name"], entry.get("value", "")))
            else:
                raise InvalidSpec(f"invalid env entry {entry!r}", where)
    else:
        raise InvalidSpec("expected mapping or list", where)

    for k, v in items:
        name = _clean(k, where)
        if not _ENV_NAME.match(name):
            raise InvalidSpec(f"invalid variable name {name!r}", where)
        pairs.append((name, "" if v is None else _clean(v, f"{where}.{name}")))
    return tuple(pairs)


@dataclass(frozen=True)
class ResourceLimits:
    """Requested caps. ``None`` means "whatever the global ceiling allows"."""
    cpu_shares: Optional[int] = None
    memory_bytes: Optional[int] = None
    pids: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ResourceLimits":
        data = data or {}
        if not isinstance(data, dict):
            raise InvalidSpec("expected mapping", "limits")
        memory = data.get("memory", data.get("memory_bytes"))
        return cls(
            cpu_shares=_positive_int(data.get("cpu_shares"), "limits.cpu_shares"),
            memory_bytes=parse_memory(memory) if memory is not None else None,
            pids=_positive_int(data.get("pids", data.get("max_processes")), "limits.pids"),
        )

    def to_dict(self) -> dict:
        return {
            "cpu_shares": self.cpu_shares,
            "memory_bytes": self.memory_bytes,
            "pids": self.pids,
        }


@dataclass(frozen=True)
class MountRequest:
    """Host path (relative to the workspace root) mapped into the container."""
    source: str
    target: str
    read_only: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "MountRequest":
        if isinstance(data, str):
            # "src:dst[:ro]"
            parts = data.split(":")
            if len(parts) not in (2, 3) or (len(parts) == 3 and parts[2] not in ("ro", "rw")):
                raise InvalidSpec(f"invalid mount {data!r}", "mounts")
            data = {
                "source": parts[0],
                "target": parts[1],
                "read_only": len(parts) == 3 and parts[2] == "ro",
            }
        if not isinstance(data, dict):
            raise InvalidSpec(f"invalid mount {data!r}", "mounts")
        target = _clean(data.get("target", ""), "mounts.target")
        if not target.startswith("/"):
            raise InvalidSpec(f"container path must be absolute: {target!r}", "mounts.target")
        return cls(
            source=_clean(data.get("source", ""), "mounts.source"),
            target=target,
            read_only=bool(data.get("read_only", False)),
        )

    def to_dict(self) -> dict:
        return {"source": self.source, "target": self.target, "read_only": self.read_only}


@dataclass(frozen=True)
class ServiceSpec:
    """Auxiliary service launched next to the workspace container."""
    name: str
    image: str
    command: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    depends_on: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "ServiceSpec":
        name = _clean(name, "services")
        if not _SERVICE_NAME.match(name) or name == MAIN_SERVICE:
            raise InvalidSpec(f"invalid service name {name!r}", "services")
        if not isinstance(data, dict):
            raise InvalidSpec("expected mapping", f"services.{name}")
        image = _clean(data.get("image", ""), f"services.{name}.image")
        if not image:
            raise InvalidSpec("image is required", f"services.{name}.image")
        deps = data.get("depends_on") or []
        if not isinstance(deps, (list, tuple)):
            raise InvalidSpec("expected list", f"services.{name}.depends_on")
        return cls(
            name=name,
            image=image,
            command=_command(data.get("command"), f"services.{name}.command"),
            env=_env_pairs(data.get("env"), f"services.{name}.env"),
            depends_on=tuple(_clean(d, f"services.{name}.depends_on") for d in deps),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "image": self.image,
            "command": list(self.command),
            "env": dict(sorted(self.env)),
            "depends_on": sorted(self.depends_on),
        }


@dataclass(frozen=True)
class SingleContainer:
    """Run target: the workspace container alone."""
    kind: ClassVar[str] = "single"


@dataclass(frozen=True)
class ComposedServices:
    """Run target: the workspace container plus auxiliary services."""
    services: tuple[ServiceSpec, ...] = ()
    kind: ClassVar[str] = "composed"


RunTarget = Union[SingleContainer, ComposedServices]


@dataclass(frozen=True)
class WorkspaceSpec:
    """Declarative description of one robotics runtime environment."""
    base_image: str
    packages: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    mounts: tuple[MountRequest, ...] = ()
    network_mode: NetworkMode = NetworkMode.PROJECT
    command: tuple[str, ...] = ()
    target: RunTarget = field(default_factory=SingleContainer)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkspaceSpec":
        if not isinstance(data, dict):
            raise InvalidSpec("workspace spec must be a mapping")

        base_image = _clean(data.get("base_image", ""), "base_image")
        if not base_image:
            raise InvalidSpec("base_image is required", "base_image")

        packages = data.get("packages") or []
        if not isinstance(packages, (list, tuple)):
            raise InvalidSpec("expected list", "packages")

        mounts = data.get("mounts") or []
        if not isinstance(mounts, (list, tuple)):
            raise InvalidSpec("expected list", "mounts")

        try:
            network_mode = NetworkMode(str(data.get("network_mode", "project")).strip().lower())
        except ValueError:
            raise InvalidSpec(f"unknown network mode {data.get('network_mode')!r}", "network_mode")

        services = data.get("services") or {}
        if not isinstance(services, dict):
            raise InvalidSpec("expected mapping", "services")
        target: RunTarget
        if services:
            target = ComposedServices(
                services=tuple(ServiceSpec.from_dict(n, s) for n, s in services.items())
            )
        else:
            target = SingleContainer()

        return cls(
            base_image=base_image,
            packages=tuple(_clean(p, "packages") for p in packages if _clean(p, "packages")),
            env=_env_pairs(data.get("env"), "env"),
            limits=ResourceLimits.from_dict(data.get("limits")),
            mounts=tuple(MountRequest.from_dict(m) for m in mounts),
            network_mode=network_mode,
            command=_command(data.get("command"), "command"),
            target=target,
        )

    @property
    def env_dict(self) -> dict[str, str]:
        return dict(self.env)

    @property
    def services(self) -> tuple[ServiceSpec, ...]:
        if isinstance(self.target, ComposedServices):
            return self.target.services
        return ()

    def to_dict(self) -> dict:
        """Canonical form. Order-insensitive collections are sorted."""
        return {
            "base_image": self.base_image,
            "packages": list(self.packages),
            "env": [[k, v] for k, v in sorted(self.env)],
            "limits": self.limits.to_dict(),
            "mounts": [m.to_dict() for m in sorted(self.mounts, key=lambda m: (m.target, m.source))],
            "network_mode": self.network_mode.value,
            "command": list(self.command),
            "target": {
                "kind": self.target.kind,
                "services": [s.to_dict() for s in sorted(self.services, key=lambda s: s.name)],
            },
        }


def load_workspace(path: str | Path) -> WorkspaceSpec:
    """Load a workspace spec from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workspace spec not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return WorkspaceSpec.from_dict(data)
