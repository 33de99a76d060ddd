"""Isolation policy: resolves the concrete boundaries applied to one run."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .errors import InvalidIdentifier, IsolationViolation
from .identity import ContainerIdentity
from .workspace import NetworkMode, WorkspaceSpec

logger = logging.getLogger("robium.policy")

SCRATCH_PATH = "/scratch"


@dataclass(frozen=True)
class PolicyCeiling:
    """Host-wide limits. A spec may ask for less, never for more."""
    max_cpu_shares: int = 1024
    max_memory_bytes: int = 2 * 1024 ** 3
    max_pids: int = 512
    read_only_rootfs: bool = False
    no_new_privileges: bool = True
    drop_capabilities: tuple[str, ...] = ("ALL",)


@dataclass(frozen=True)
class MountBinding:
    host_path: str
    container_path: str
    read_only: bool = False

    def to_dict(self) -> dict:
        return {
            "host_path": self.host_path,
            "container_path": self.container_path,
            "read_only": self.read_only,
        }


@dataclass(frozen=True)
class VolumeBinding:
    """Engine-managed named volume owned by exactly one run."""
    name: str
    container_path: str

    def to_dict(self) -> dict:
        return {"name": self.name, "container_path": self.container_path}


@dataclass(frozen=True)
class IsolationConstraints:
    network: Optional[str]
    mounts: tuple[MountBinding, ...] = ()
    volumes: tuple[VolumeBinding, ...] = ()
    cpu_shares: int = 1024
    memory_bytes: int = 2 * 1024 ** 3
    pids: int = 512
    read_only_rootfs: bool = False
    no_new_privileges: bool = True
    drop_capabilities: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def writable_paths(self) -> list[str]:
        return [m.host_path for m in self.mounts if not m.read_only]

    @property
    def resource_names(self) -> set[str]:
        """Engine networks and volumes the run needs."""
        names = {v.name for v in self.volumes}
        if self.network:
            names.add(self.network)
        return names

    def to_dict(self) -> dict:
        return {
            "network": self.network,
            "mounts": [m.to_dict() for m in self.mounts],
            "volumes": [v.to_dict() for v in self.volumes],
            "cpu_shares": self.cpu_shares,
            "memory_bytes": self.memory_bytes,
            "pids": self.pids,
            "read_only_rootfs": self.read_only_rootfs,
            "no_new_privileges": self.no_new_privileges,
            "drop_capabilities": list(self.drop_capabilities),
        }


def paths_overlap(a: str, b: str) -> bool:
    pa, pb = Path(a), Path(b)
    return pa == pb or pa in pb.parents or pb in pa.parents


def _cap(requested: Optional[int], ceiling: int) -> int:
    if requested is None:
        return ceiling
    return min(requested, ceiling)


class IsolationPolicy:
    """Turns a workspace spec into run-specific, non-overlapping constraints.

    - network: one per project, never shared across projects
    - mounts: rewritten under ``<workspace_root>/<workspace_id>/``
    - caps: ``min(requested, ceiling)``
    """

    def __init__(self, workspace_root: Path, ceiling: Optional[PolicyCeiling] = None):
        self.workspace_root = Path(workspace_root)
        self.ceiling = ceiling or PolicyCeiling()

    def mount_root(self, workspace_id: str) -> Path:
        """Directory the workspace owns on the host, named by its plain id."""
        if workspace_id in (".", "..") or any(ch in workspace_id for ch in ("/", "\\", "\0")):
            raise InvalidIdentifier("workspace_id", workspace_id, "must be a single path segment")
        return (self.workspace_root / workspace_id).resolve()

    def _rewrite(self, root: Path, source: str) -> Path:
        if os.path.isabs(source):
            raise IsolationViolation(f"absolute host path {source!r} is not permitted")
        normalized = os.path.normpath(source or ".")
        if normalized == ".." or normalized.startswith("../"):
            raise IsolationViolation(f"host path {source!r} escapes the workspace root")
        host = (root / normalized).resolve()
        if host != root and root not in host.parents:
            raise IsolationViolation(f"host path {source!r} escapes the workspace root")
        return host

    def resolve(
        self,
        spec: WorkspaceSpec,
        ident: ContainerIdentity,
        active: Iterable[tuple[ContainerIdentity, IsolationConstraints]] = (),
    ) -> IsolationConstraints:
        if spec.network_mode == NetworkMode.HOST:
            raise IsolationViolation("host networking is not permitted")
        network = ident.network_name if spec.network_mode == NetworkMode.PROJECT else None

        root = self.mount_root(ident.workspace_id)
        mounts = tuple(
            MountBinding(
                host_path=str(self._rewrite(root, m.source)),
                container_path=m.target,
                read_only=m.read_only,
            )
            for m in sorted(spec.mounts, key=lambda m: m.target)
        )

        c = self.ceiling
        constraints = IsolationConstraints(
            network=network,
            mounts=mounts,
            volumes=(VolumeBinding(name=ident.volume_name, container_path=SCRATCH_PATH),),
            cpu_shares=_cap(spec.limits.cpu_shares, c.max_cpu_shares),
            memory_bytes=_cap(spec.limits.memory_bytes, c.max_memory_bytes),
            pids=_cap(spec.limits.pids, c.max_pids),
            read_only_rootfs=c.read_only_rootfs,
            no_new_privileges=c.no_new_privileges,
            drop_capabilities=c.drop_capabilities,
            labels=ident.labels(),
        )
        if spec.limits.memory_bytes and constraints.memory_bytes < spec.limits.memory_bytes:
            logger.info(
                f"{ident.name}: memory capped at {constraints.memory_bytes} "
                f"(requested {spec.limits.memory_bytes})"
            )

        self.check_conflicts(ident, constraints, active)
        return constraints

    def check_conflicts(
        self,
        ident: ContainerIdentity,
        constraints: IsolationConstraints,
        active: Iterable[tuple[ContainerIdentity, IsolationConstraints]],
    ) -> None:
        for other_ident, other in active:
            if other_ident == ident:
                continue
            if (
                constraints.network
                and other.network == constraints.network
                and other_ident.project_id != ident.project_id
            ):
                raise IsolationViolation(
                    f"network {constraints.network} belongs to another project",
                    other_ident.name,
                )
            for mine in constraints.mounts:
                for theirs in other.mounts:
                    if mine.read_only and theirs.read_only:
                        continue
                    if paths_overlap(mine.host_path, theirs.host_path):
                        raise IsolationViolation(
                            f"writable mount {mine.host_path} overlaps an active run",
                            other_ident.name,
                        )
            shared = {v.name for v in constraints.volumes} & {v.name for v in other.volumes}
            if shared:
                raise IsolationViolation(f"volume {sorted(shared)[0]} already in use", other_ident.name)
