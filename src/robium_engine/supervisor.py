"""
Background supervisor.

Periodically reconciles the registry with what the engine reports:
- runs whose container died are moved to failed
- runs idle beyond the timeout are stopped and destroyed
- managed containers, networks and volumes without a record are removed

The supervisor never holds an identity's lock while waiting on anything;
a busy identity is skipped until the next sweep.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, UTC
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional

from .config import EngineSettings
from .errors import EngineCoreError, InvalidTransition, NotFound
from .identity import LABEL_MANAGED, LABEL_NAME
from .lifecycle import LifecycleController
from .registry import LifecycleState

logger = logging.getLogger("robium.supervisor")
alert_logger = logging.getLogger("robium.alerts")

S = LifecycleState
MANAGED = {LABEL_MANAGED: "1"}


@dataclass
class Alert:
    """Something an operator has to look at."""
    kind: str
    target: str
    details: str
    attempts: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "target": self.target,
            "details": self.details,
            "attempts": self.attempts,
        }

    def to_log_line(self) -> str:
        return f"[{self.kind}] {self.target}: {self.details} (after {self.attempts} attempts)"


class AlertSink:
    """Keeps the most recent alerts and forwards them to the log."""

    def __init__(self, max_alerts: int = 1000, on_alert: Optional[Callable[[Alert], None]] = None):
        self.on_alert = on_alert
        self._alerts: deque[Alert] = deque(maxlen=max_alerts)
        self._lock = Lock()

    def raise_alert(self, kind: str, target: str, details: str, attempts: int = 0) -> Alert:
        alert = Alert(kind=kind, target=target, details=details, attempts=attempts)
        with self._lock:
            self._alerts.append(alert)
        alert_logger.error(alert.to_log_line())

        if self.on_alert:
            try:
                self.on_alert(alert)
            except Exception as e:
                alert_logger.error(f"Alert callback failed: {e}")
        return alert

    def alerts(self, kind: Optional[str] = None) -> List[Alert]:
        with self._lock:
            items = list(self._alerts)
        if kind:
            items = [a for a in items if a.kind == kind]
        return items


@dataclass
class _RetryState:
    attempts: int = 0
    next_attempt: float = 0.0
    last_error: str = ""


class RetryTracker:
    """Exponential backoff per key: base, 2*base, 4*base ... capped at ``maximum``."""

    def __init__(
        self,
        base: float = 1.0,
        maximum: float = 60.0,
        ceiling: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.base = base
        self.maximum = maximum
        self.ceiling = ceiling
        self.clock = clock
        self._state: dict[str, _RetryState] = {}

    def due(self, key: str) -> bool:
        state = self._state.get(key)
        return state is None or self.clock() >= state.next_attempt

    def attempts(self, key: str) -> int:
        state = self._state.get(key)
        return state.attempts if state else 0

    def delay(self, attempts: int) -> float:
        return min(self.maximum, self.base * (2 ** max(attempts - 1, 0)))

    def failed(self, key: str, error: str) -> int:
        state = self._state.setdefault(key, _RetryState())
        state.attempts += 1
        state.last_error = error
        state.next_attempt = self.clock() + self.delay(state.attempts)
        return state.attempts

    def succeeded(self, key: str) -> None:
        self._state.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._state)

    def prune(self, keep: set[str]) -> None:
        """Forget keys whose target no longer shows up."""
        for key in [k for k in self._state if k not in keep]:
            del self._state[key]


@dataclass
class SweepReport:
    failed: List[str] = field(default_factory=list)
    reaped: List[str] = field(default_factory=list)
    orphans: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failed": list(self.failed),
            "reaped": list(self.reaped),
            "orphans": list(self.orphans),
            "skipped": list(self.skipped),
            "errors": list(self.errors),
        }


class Supervisor:
    """Health checks, idle reclamation and orphan collection."""

    def __init__(
        self,
        controller: LifecycleController,
        settings: Optional[EngineSettings] = None,
        alerts: Optional[AlertSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.controller = controller
        self.settings = settings or controller.settings
        self.alerts = alerts or AlertSink()
        self.clock = clock
        self.retries = RetryTracker(
            base=self.settings.retry_base_s,
            maximum=self.settings.retry_max_s,
            ceiling=self.settings.retry_ceiling,
            clock=clock,
        )
        self.last_report: Optional[SweepReport] = None
        self._stop = Event()
        self._sweep_lock = Lock()
        self._seen: set[str] = set()
        self._thread: Optional[Thread] = None

    @property
    def engine(self):
        return self.controller.engine

    @property
    def registry(self):
        return self.controller.registry

    # ── retry bookkeeping ────────────────────────────────────

    def _attempt(self, key: str, report: SweepReport, fn: Callable[[], Any]) -> bool:
        """Run ``fn`` unless ``key`` is backing off. True on success."""
        self._seen.add(key)
        if not self.retries.due(key):
            report.skipped.append(key)
            return False
        try:
            fn()
        except (EngineCoreError, OSError) as e:
            attempts = self.retries.failed(key, str(e))
            report.errors.append(f"{key}: {e}")
            logger.warning(f"{key} failed (attempt {attempts}): {e}")
            if attempts == self.retries.ceiling:
                kind = key.split(":", 1)[0]
                self.alerts.raise_alert(kind, key.split(":", 1)[-1], str(e), attempts)
            return False
        self.retries.succeeded(key)
        return True

    # ── passes ───────────────────────────────────────────────

    def run_once(self) -> SweepReport:
        """One full sweep. Concurrent callers run one after another."""
        with self._sweep_lock:
            report = SweepReport()
            self._seen = set()
            self.check_health(report)
            self.reap_idle(report)
            self.collect_orphans(report)
            self.retries.prune(self._seen)
            self.last_report = report
        if report.failed or report.reaped or report.orphans:
            logger.info(
                f"Sweep: {len(report.failed)} failed, {len(report.reaped)} reaped, "
                f"{len(report.orphans)} orphans removed"
            )
        return report

    def check_health(self, report: SweepReport) -> None:
        """Move running records whose container is gone or dead to failed."""
        for record in self.registry.list([S.RUNNING]):
            ident = record.identity
            key = f"health:{ident.name}"
            self._seen.add(key)
            if self.controller.locks.is_locked(ident):
                report.skipped.append(key)
                continue
            if not self.retries.due(key):
                report.skipped.append(key)
                continue
            try:
                info = self.controller.call_engine(
                    "inspect", self.engine.inspect_container, record.handle, target=ident.name, retries=0
                )
            except EngineCoreError as e:
                attempts = self.retries.failed(key, str(e))
                report.errors.append(f"{key}: {e}")
                logger.warning(f"Health check for {ident.name} failed: {e}")
                if attempts == self.retries.ceiling:
                    self.alerts.raise_alert("health", ident.name, str(e), attempts)
                continue
            self.retries.succeeded(key)

            now = self.clock()
            if info is not None and info.status.is_alive:
                self.registry.record_health(ident, True, now)
                continue

            self.registry.record_health(ident, False, now)
            if info is None:
                reason = "container disappeared from the engine"
            else:
                reason = f"container {info.status.value} (exit code {info.exit_code})"
            if self.controller.mark_failed(ident, reason):
                report.failed.append(ident.name)

    def reap_idle(self, report: SweepReport) -> None:
        """Stop and destroy runs without activity for ``idle_timeout_s``."""
        timeout = self.settings.idle_timeout_s
        if timeout <= 0:
            return
        now = self.clock()
        for record in self.registry.list([S.RUNNING, S.STOPPED, S.FAILED]):
            ident = record.identity
            last_seen = max(record.last_activity, record.updated_at)
            if now - last_seen < timeout:
                continue
            if self.controller.locks.is_locked(ident):
                self._seen.add(f"reap:{ident.name}")
                report.skipped.append(f"reap:{ident.name}")
                continue

            def reclaim(ident=ident, state=record.state):
                try:
                    if state == S.RUNNING:
                        self.controller.stop(ident)
                    self.controller.destroy(ident)
                except NotFound:
                    return
                except InvalidTransition as e:
                    # Someone else moved the record meanwhile; next sweep decides again.
                    logger.debug(f"Skipping reclamation of {ident.name}: {e}")
                    return

            if self._attempt(f"reap:{ident.name}", report, reclaim):
                if ident not in self.registry:
                    logger.info(f"Reclaimed idle run {ident.name}")
                    report.reaped.append(ident.name)

    def collect_orphans(self, report: SweepReport) -> None:
        """Remove managed engine resources that no record accounts for."""
        try:
            containers = self.controller.call_engine(
                "ps", self.engine.list_containers, MANAGED, retries=0
            )
            networks = self.controller.call_engine(
                "network ls", self.engine.list_networks, MANAGED, retries=0
            )
            volumes = self.controller.call_engine(
                "volume ls", self.engine.list_volumes, MANAGED, retries=0
            )
        except EngineCoreError as e:
            report.errors.append(f"orphans: {e}")
            logger.warning(f"Orphan scan failed: {e}")
            # Nothing was listed, so pending orphan backoffs stay as they are.
            self._seen.update(k for k in self.retries.keys() if k.startswith("orphan:"))
            return

        # Engine listing first, registry second: a record always exists
        # before its resources are created.
        known = self.registry.container_names()
        for container in containers:
            owner = container.labels.get(LABEL_NAME) or container.name
            if owner in known:
                continue
            target = container.name or container.id
            if self._attempt(
                f"orphan:{target}",
                report,
                lambda c=container: self.controller.call_engine(
                    "rm", self.engine.remove_container, c.id or c.name, True, target=c.name, retries=0
                ),
            ):
                logger.info(f"Removed orphan container {target}")
                report.orphans.append(target)

        # Shared resources are re-checked under the admission lock so that a
        # run being admitted cannot lose its network or volume.
        for kind, resources, remove in (
            ("network", networks, self.engine.remove_network),
            ("volume", volumes, self.engine.remove_volume),
        ):
            for resource in resources:
                def sweep(name=resource.name, kind=kind, remove=remove):
                    with self.controller.admission:
                        referenced = (
                            self.registry.network_names() if kind == "network" else self.registry.volume_names()
                        )
                        if name in referenced or not self.controller.reserve_removal([(kind, name)]):
                            return False
                    try:
                        self.controller.call_engine(f"{kind} rm", remove, name, target=name, retries=0)
                    finally:
                        self.controller.release_removal([name])
                    return True

                removed: list[bool] = []
                if self._attempt(f"orphan:{resource.name}", report, lambda s=sweep: removed.append(s())):
                    if removed and removed[0]:
                        logger.info(f"Removed orphan {kind} {resource.name}")
                        report.orphans.append(resource.name)

    # ── background thread ────────────────────────────────────

    def _loop(self) -> None:
        interval = self.settings.supervisor_interval_s
        while not self._stop.wait(interval):
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Supervisor sweep failed: {e}")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="robium-supervisor", daemon=True)
        self._thread.start()
        logger.info(f"Supervisor started (interval {self.settings.supervisor_interval_s}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
