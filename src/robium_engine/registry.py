"""Registry: identity -> current lifecycle record.

The only shared mutable state of the engine. Records are mutated by the
lifecycle controller (state, handle, timestamps) and by the supervisor
(health and failure counters); everyone else gets copies.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from threading import RLock
from typing import Iterable, Optional

from .errors import InvalidTransition, NotFound
from .identity import ContainerIdentity
from .policy import IsolationConstraints


class LifecycleState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    DESTROYED = "destroyed"


S = LifecycleState

TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    S.CREATED: frozenset({S.STARTING, S.FAILED}),
    S.STARTING: frozenset({S.RUNNING, S.FAILED}),
    S.RUNNING: frozenset({S.STOPPING, S.FAILED}),
    S.STOPPING: frozenset({S.STOPPED, S.FAILED}),
    S.STOPPED: frozenset({S.DESTROYED}),
    S.FAILED: frozenset({S.DESTROYED}),
    S.DESTROYED: frozenset(),
}

# States in which a record carries an engine handle.
HANDLE_STATES = frozenset({S.STARTING, S.RUNNING, S.STOPPING})
# States that hold isolation resources.
ACTIVE_STATES = frozenset({S.CREATED, S.STARTING, S.RUNNING, S.STOPPING})


@dataclass
class ContainerRecord:
    identity: ContainerIdentity
    state: LifecycleState
    constraints: IsolationConstraints
    handle: Optional[str] = None
    artifact_hash: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    last_health_check: Optional[float] = None
    failure_count: int = 0
    last_error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def to_dict(self) -> dict:
        return {
            "identity": self.identity.to_dict(),
            "state": self.state.value,
            "handle": self.handle,
            "artifact_hash": self.artifact_hash,
            "constraints": self.constraints.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_activity": self.last_activity,
            "last_health_check": self.last_health_check,
            "failure_count": self.failure_count,
            "last_error": self.last_error,
        }


class Registry:
    """Thread-safe arena of records keyed by identity."""

    def __init__(self):
        self._records: dict[ContainerIdentity, ContainerRecord] = {}
        self._lock = RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, ident: ContainerIdentity) -> bool:
        with self._lock:
            return ident in self._records

    # ── reads ────────────────────────────────────────────────

    def get(self, ident: ContainerIdentity) -> Optional[ContainerRecord]:
        with self._lock:
            record = self._records.get(ident)
            return replace(record) if record else None

    def require(self, ident: ContainerIdentity) -> ContainerRecord:
        record = self.get(ident)
        if record is None:
            raise NotFound(ident.name)
        return record

    def list(self, states: Optional[Iterable[LifecycleState]] = None) -> list[ContainerRecord]:
        wanted = set(states) if states is not None else None
        with self._lock:
            return [
                replace(r)
                for r in sorted(self._records.values(), key=lambda r: r.created_at)
                if wanted is None or r.state in wanted
            ]

    def active_constraints(self) -> list[tuple[ContainerIdentity, IsolationConstraints]]:
        with self._lock:
            return [(r.identity, r.constraints) for r in self._records.values() if r.is_active]

    def container_names(self) -> set[str]:
        with self._lock:
            return {ident.name for ident in self._records}

    def network_names(self) -> set[str]:
        with self._lock:
            return {r.constraints.network for r in self._records.values() if r.constraints.network}

    def volume_names(self) -> set[str]:
        with self._lock:
            return {v.name for r in self._records.values() for v in r.constraints.volumes}

    def references(self, exclude: ContainerIdentity) -> tuple[set[str], set[str]]:
        """Networks and volumes referenced by records other than ``exclude``."""
        with self._lock:
            others = [r for i, r in self._records.items() if i != exclude]
            networks = {r.constraints.network for r in others if r.constraints.network}
            volumes = {v.name for r in others for v in r.constraints.volumes}
            return networks, volumes

    # ── lifecycle controller mutations ───────────────────────

    def insert(self, record: ContainerRecord) -> ContainerRecord:
        with self._lock:
            if record.identity in self._records:
                raise InvalidTransition(
                    record.identity.name, self._records[record.identity].state.value, "create"
                )
            self._records[record.identity] = record
            return replace(record)

    def transition(
        self,
        ident: ContainerIdentity,
        new_state: LifecycleState,
        *,
        handle: Optional[str] = None,
        error: Optional[str] = None,
    ) -> tuple[LifecycleState, ContainerRecord]:
        """Move a record to ``new_state``; returns (old state, snapshot).

        Enforces the transition table and clears the handle when leaving the
        handle-carrying states.
        """
        with self._lock:
            record = self._records.get(ident)
            if record is None:
                raise NotFound(ident.name)
            old = record.state
            if new_state not in TRANSITIONS[old]:
                raise InvalidTransition(ident.name, old.value, f"move to {new_state.value}")
            if new_state in HANDLE_STATES:
                record.handle = handle or record.handle
                if not record.handle:
                    raise ValueError(f"{ident.name}: state {new_state.value} requires an engine handle")
            else:
                record.handle = None
            record.state = new_state
            record.updated_at = time.time()
            if error is not None:
                record.last_error = error
            return old, replace(record)

    def touch(self, ident: ContainerIdentity, when: Optional[float] = None) -> None:
        with self._lock:
            record = self._records.get(ident)
            if record is None:
                raise NotFound(ident.name)
            record.last_activity = when if when is not None else time.time()

    def remove(self, ident: ContainerIdentity) -> Optional[ContainerRecord]:
        with self._lock:
            record = self._records.pop(ident, None)
            if record is not None and record.state != S.DESTROYED:
                self._records[ident] = record
                raise InvalidTransition(ident.name, record.state.value, "prune")
            return record

    # ── supervisor mutations ─────────────────────────────────

    def record_health(self, ident: ContainerIdentity, ok: bool, when: Optional[float] = None) -> None:
        with self._lock:
            record = self._records.get(ident)
            if record is None:
                return
            record.last_health_check = when if when is not None else time.time()
            record.failure_count = 0 if ok else record.failure_count + 1
