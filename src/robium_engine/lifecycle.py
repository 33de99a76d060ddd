"""Lifecycle controller: drives runs through their state machine.

    created -> starting -> running -> stopping -> stopped -> destroyed
       |          |           |           |                      ^
       +----------+-----------+-----------+---> failed ----------+

All operations on one identity are serialized by a per-identity mutex;
different identities proceed in parallel. Engine calls are the only blocking
points and each one runs with a deadline.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Condition, Lock
from typing import Any, Callable, Hashable, Iterable, Iterator, Optional, TypeVar

from .compiler import CompiledArtifact, ConfigCompiler, LaunchService
from .config import EngineSettings
from .engine.base import ContainerSpec, DeadlineExecutor, RuntimeEngine
from .errors import EngineError, EngineUnavailable, InvalidTransition
from .events import EventBus
from .identity import (
    LABEL_MANAGED,
    LABEL_NAME,
    LABEL_PROJECT,
    ContainerIdentity,
    identity,
)
from .policy import IsolationConstraints, IsolationPolicy
from .registry import ContainerRecord, LifecycleState, Registry
from .workspace import WorkspaceSpec

logger = logging.getLogger("robium.lifecycle")

T = TypeVar("T")
S = LifecycleState

LABEL_SERVICE = "robium.service"


@dataclass(frozen=True)
class RunRequest:
    """Run workspace ``workspace_id`` of ``project_id`` as run ``run_id``."""
    project_id: str
    workspace_id: str
    run_id: str
    spec: WorkspaceSpec

    @classmethod
    def from_dict(cls, data: dict) -> "RunRequest":
        return cls(
            project_id=str(data.get("project_id", "")),
            workspace_id=str(data.get("workspace_id", "")),
            run_id=str(data.get("run_id", "")),
            spec=WorkspaceSpec.from_dict(data.get("spec") or {}),
        )


class KeyedLock:
    """One mutex per key, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._entries: dict[Hashable, list] = {}  # key -> [lock, users]
        self._guard = Lock()

    def acquire(self, key: Hashable, blocking: bool = True, timeout: float = -1) -> bool:
        with self._guard:
            entry = self._entries.setdefault(key, [Lock(), 0])
            entry[1] += 1
        ok = entry[0].acquire(blocking, timeout) if blocking else entry[0].acquire(False)
        if not ok:
            self._drop(key)
        return ok

    def release(self, key: Hashable) -> None:
        with self._guard:
            entry = self._entries[key]
        entry[0].release()
        self._drop(key)

    def _drop(self, key: Hashable) -> None:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._entries[key]

    @contextmanager
    def locked(self, key: Hashable) -> Iterator[None]:
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def is_locked(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return bool(entry and entry[0].locked())


def aux_container_name(ident: ContainerIdentity, service: str) -> str:
    return f"{ident.name}.{service}"


class LifecycleController:
    """Single writer of the registry's lifecycle fields."""

    def __init__(
        self,
        engine: RuntimeEngine,
        compiler: ConfigCompiler,
        policy: IsolationPolicy,
        registry: Optional[Registry] = None,
        events: Optional[EventBus] = None,
        settings: Optional[EngineSettings] = None,
        executor: Optional[DeadlineExecutor] = None,
    ):
        self.engine = engine
        self.compiler = compiler
        self.policy = policy
        self.registry = registry or Registry()
        self.events = events or EventBus()
        self.settings = settings or EngineSettings()
        self.executor = executor or DeadlineExecutor(default_timeout=self.settings.call_timeout_s)
        self.locks = KeyedLock()
        # Guards "check isolation + insert record" and the choice of shared
        # resources to remove. Never held across an engine call.
        self.admission = Condition()
        # Networks and volumes whose removal is in flight.
        self.removing: set[str] = set()

    @classmethod
    def from_settings(cls, settings: EngineSettings, engine: RuntimeEngine) -> "LifecycleController":
        from .compiler import ArtifactCache, PackageCatalog

        catalog = PackageCatalog.from_yaml(settings.catalog_path) if settings.catalog_path else PackageCatalog()
        compiler = ConfigCompiler(catalog=catalog, cache=ArtifactCache(settings.cache_dir))
        policy = IsolationPolicy(settings.workspace_root, settings.ceiling())
        return cls(engine=engine, compiler=compiler, policy=policy, settings=settings)

    # ── engine calls ─────────────────────────────────────────

    def call_engine(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        target: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: int = 1,
        **kwargs: Any,
    ) -> T:
        """Run one engine call with a deadline, retrying transient failures."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.executor.call(operation, fn, *args, timeout=timeout, target=target, **kwargs)
            except EngineUnavailable as e:
                if attempt > retries:
                    raise
                logger.warning(f"Engine {operation} for {target} failed ({e}), retrying")

    # ── events ───────────────────────────────────────────────

    def _emit(self, ident: ContainerIdentity, old: Optional[S], new: S, error: Optional[str] = None) -> None:
        old_value = old.value if old else None
        if error:
            logger.warning(f"{ident.name}: {old_value} -> {new.value} ({error})")
        else:
            logger.info(f"{ident.name}: {old_value} -> {new.value}")
        self.events.publish(ident, old_value, new.value, error)

    def _transition(
        self,
        ident: ContainerIdentity,
        new: S,
        *,
        handle: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ContainerRecord:
        old, record = self.registry.transition(ident, new, handle=handle, error=error)
        self._emit(ident, old, new, error)
        return record

    def _fail(self, ident: ContainerIdentity, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        try:
            self._transition(ident, S.FAILED, error=message)
        except InvalidTransition:
            logger.error(f"{ident.name}: could not record failure: {message}")

    # ── operations ───────────────────────────────────────────

    def start(self, request: RunRequest) -> ContainerIdentity:
        """Start a run. Idempotent for runs that are already starting/running."""
        ident = identity(request.project_id, request.workspace_id, request.run_id)

        with self.locks.locked(ident):
            existing = self.registry.get(ident)
            if existing is not None:
                if existing.state in (S.STARTING, S.RUNNING):
                    logger.debug(f"{ident.name}: already {existing.state.value}")
                    return ident
                raise InvalidTransition(ident.name, existing.state.value, "start")

            artifact = self.compiler.compile(request.spec)

            with self.admission:
                while True:
                    constraints = self.policy.resolve(request.spec, ident, self.registry.active_constraints())
                    busy = constraints.resource_names & self.removing
                    if not busy:
                        break
                    logger.debug(f"{ident.name}: waiting for removal of {sorted(busy)}")
                    self.admission.wait()
                self.registry.insert(
                    ContainerRecord(
                        identity=ident,
                        state=S.CREATED,
                        constraints=constraints,
                        artifact_hash=artifact.content_hash,
                    )
                )
            self._emit(ident, None, S.CREATED)

            try:
                aux_handles, handle = self._provision(ident, artifact, constraints)
            except Exception as e:
                self._fail(ident, e)
                raise

            self._transition(ident, S.STARTING, handle=handle)
            try:
                for aux in aux_handles:
                    self.call_engine("start", self.engine.start_container, aux, target=aux)
                self.call_engine("start", self.engine.start_container, handle, target=ident.name)
            except Exception as e:
                self._fail(ident, e)
                raise

            self._transition(ident, S.RUNNING)
            self.registry.touch(ident)
            return ident

    def _provision(
        self,
        ident: ContainerIdentity,
        artifact: CompiledArtifact,
        constraints: IsolationConstraints,
    ) -> tuple[list[str], str]:
        """Image, network, volumes and containers. Returns (aux handles, main handle)."""
        self.call_engine(
            "build",
            self.engine.ensure_image,
            artifact.image_tag,
            artifact.dockerfile,
            {"robium.artifact": artifact.content_hash},
            target=artifact.image_tag,
            timeout=self.settings.build_timeout_s,
        )
        if constraints.network:
            self.call_engine(
                "network create",
                self.engine.create_network,
                constraints.network,
                {LABEL_MANAGED: "1", LABEL_PROJECT: ident.project_id},
                target=constraints.network,
            )
        for volume in constraints.volumes:
            self.call_engine(
                "volume create",
                self.engine.create_volume,
                volume.name,
                ident.labels(),
                target=volume.name,
            )

        aux_handles = []
        for svc in artifact.auxiliary:
            spec = self._container_spec(ident, svc, constraints, main=False)
            aux_handles.append(self.call_engine("create", self.engine.create_container, spec, target=spec.name))

        spec = self._container_spec(ident, artifact.main, constraints, main=True)
        handle = self.call_engine("create", self.engine.create_container, spec, target=spec.name)
        return aux_handles, handle

    def _container_spec(
        self,
        ident: ContainerIdentity,
        svc: LaunchService,
        constraints: IsolationConstraints,
        main: bool,
    ) -> ContainerSpec:
        labels = dict(ident.labels())
        labels[LABEL_SERVICE] = svc.name
        env = dict(svc.env)
        env.update({
            "ROBIUM_PROJECT_ID": ident.project_id,
            "ROBIUM_WORKSPACE_ID": ident.workspace_id,
            "ROBIUM_RUN_ID": ident.run_id,
        })
        return ContainerSpec(
            name=ident.name if main else aux_container_name(ident, svc.name),
            image=svc.image,
            command=list(svc.command),
            env=env,
            labels=labels,
            network=constraints.network,
            network_aliases=[svc.name],
            # Bind mounts and the scratch volume belong to the workspace container only.
            mounts=list(constraints.mounts) if main else [],
            volumes=list(constraints.volumes) if main else [],
            cpu_shares=constraints.cpu_shares,
            memory_bytes=constraints.memory_bytes,
            pids=constraints.pids,
            read_only_rootfs=constraints.read_only_rootfs,
            no_new_privileges=constraints.no_new_privileges,
            drop_capabilities=list(constraints.drop_capabilities),
        )

    def stop(self, ident: ContainerIdentity) -> ContainerRecord:
        """Graceful stop; forced termination once the grace period is exceeded."""
        with self.locks.locked(ident):
            record = self.registry.require(ident)
            if record.state == S.RUNNING:
                record = self._transition(ident, S.STOPPING)
            elif record.state != S.STOPPING:
                raise InvalidTransition(ident.name, record.state.value, "stop")

            try:
                self._terminate(record.handle, ident.name)
                for name in self._aux_names(ident):
                    self._terminate(name, name)
            except Exception as e:
                self._fail(ident, e)
                raise
            return self._transition(ident, S.STOPPED)

    def _terminate(self, handle: str, label: str) -> None:
        grace = self.settings.grace_period_s
        try:
            self.executor.call(
                "stop",
                self.engine.stop_container,
                handle,
                grace,
                timeout=grace + self.settings.call_timeout_s,
                target=label,
            )
            return
        except EngineError as e:
            logger.warning(f"{label}: graceful stop did not finish ({e}), forcing termination")
        self.call_engine("kill", self.engine.kill_container, handle, target=label)

    def _aux_names(self, ident: ContainerIdentity) -> list[str]:
        record = self.registry.get(ident)
        artifact = self.compiler.cache.get(record.artifact_hash) if record and record.artifact_hash else None
        if artifact is None:
            return []
        return [aux_container_name(ident, svc.name) for svc in reversed(artifact.auxiliary)]

    def destroy(self, ident: ContainerIdentity) -> None:
        """Remove engine resources of a stopped or failed run and prune it."""
        with self.locks.locked(ident):
            record = self.registry.require(ident)
            if record.state not in (S.STOPPED, S.FAILED):
                raise InvalidTransition(ident.name, record.state.value, "destroy")

            owned = self.call_engine(
                "ps", self.engine.list_containers, {LABEL_NAME: ident.name}, target=ident.name
            )
            names = {ident.name, *self._aux_names(ident), *(c.name for c in owned if c.name)}
            for name in sorted(names):
                self.call_engine("rm", self.engine.remove_container, name, True, target=name)

            with self.admission:
                networks, volumes = self.registry.references(exclude=ident)
                network = record.constraints.network
                doomed = []
                if network and network not in networks:
                    doomed.append(("network", network))
                doomed.extend(("volume", v.name) for v in record.constraints.volumes if v.name not in volumes)
                doomed = self.reserve_removal(doomed)

            try:
                for kind, name in doomed:
                    remove = self.engine.remove_network if kind == "network" else self.engine.remove_volume
                    self.call_engine(f"{kind} rm", remove, name, target=name)
            finally:
                self.release_removal(name for _, name in doomed)

            self._transition(ident, S.DESTROYED)
            self.registry.remove(ident)

    def reserve_removal(self, candidates: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
        """Claim shared resources for removal. Caller holds ``admission``.

        Names another caller is already removing are left out.
        """
        claimed = [(kind, name) for kind, name in candidates if name not in self.removing]
        self.removing.update(name for _, name in claimed)
        return claimed

    def release_removal(self, names: Iterable[str]) -> None:
        with self.admission:
            self.removing.difference_update(names)
            self.admission.notify_all()

    def status(self, ident: ContainerIdentity) -> ContainerRecord:
        """Snapshot of the record. Never touches the engine."""
        return self.registry.require(ident)

    def list_records(self, states: Optional[list[S]] = None) -> list[ContainerRecord]:
        return self.registry.list(states)

    def touch(self, ident: ContainerIdentity) -> None:
        """Record an activity signal; postpones idle reclamation."""
        self.registry.touch(ident)

    def mark_failed(self, ident: ContainerIdentity, reason: str) -> bool:
        """Move a drifted run to failed without waiting on a busy identity."""
        if not self.locks.acquire(ident, blocking=False):
            return False
        try:
            record = self.registry.get(ident)
            if record is None or record.state not in (S.STARTING, S.RUNNING):
                return False
            self._transition(ident, S.FAILED, error=reason)
            return True
        finally:
            self.locks.release(ident)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)

