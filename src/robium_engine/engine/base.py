"""Runtime engine interface consumed by the lifecycle controller."""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from ..errors import EngineTimeout
from ..policy import MountBinding, VolumeBinding

T = TypeVar("T")


class ContainerStatus(str, Enum):
    """Container states as reported by the engine."""
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    DEAD = "dead"

    @classmethod
    def parse(cls, value: str) -> "ContainerStatus":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.DEAD

    @property
    def is_alive(self) -> bool:
        return self in (ContainerStatus.RUNNING, ContainerStatus.RESTARTING, ContainerStatus.PAUSED)


@dataclass
class ContainerSpec:
    """Everything the engine needs to create one container."""
    name: str
    image: str
    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    network: Optional[str] = None          # None -> no network
    network_aliases: list[str] = field(default_factory=list)
    mounts: list[MountBinding] = field(default_factory=list)
    volumes: list[VolumeBinding] = field(default_factory=list)
    cpu_shares: Optional[int] = None
    memory_bytes: Optional[int] = None
    pids: Optional[int] = None
    read_only_rootfs: bool = False
    no_new_privileges: bool = True
    drop_capabilities: list[str] = field(default_factory=list)


@dataclass
class ContainerInfo:
    id: str
    name: str
    status: ContainerStatus
    exit_code: Optional[int] = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ResourceInfo:
    """A network or volume known to the engine."""
    name: str
    labels: dict[str, str] = field(default_factory=dict)


class RuntimeEngine(ABC):
    """Create/start/stop/remove/inspect for containers, networks and volumes.

    Implementations raise :class:`EngineUnavailable` when the engine cannot be
    reached and :class:`EngineError` for structured failures. Removing
    something that does not exist is not an error.
    """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the engine is reachable."""

    @abstractmethod
    def ensure_image(self, tag: str, dockerfile: str, labels: Optional[dict[str, str]] = None) -> None:
        """Build ``tag`` from ``dockerfile`` unless it already exists."""

    @abstractmethod
    def create_container(self, spec: ContainerSpec) -> str:
        """Create a container and return its engine handle."""

    @abstractmethod
    def start_container(self, handle: str) -> None:
        pass

    @abstractmethod
    def stop_container(self, handle: str, timeout: float) -> None:
        """Graceful stop; the engine kills after ``timeout`` seconds."""

    @abstractmethod
    def kill_container(self, handle: str) -> None:
        pass

    @abstractmethod
    def remove_container(self, handle: str, force: bool = True) -> None:
        pass

    @abstractmethod
    def inspect_container(self, handle: str) -> Optional[ContainerInfo]:
        """Return container state, or None if the engine does not know it."""

    @abstractmethod
    def list_containers(self, labels: Optional[dict[str, str]] = None) -> list[ContainerInfo]:
        pass

    @abstractmethod
    def create_network(self, name: str, labels: Optional[dict[str, str]] = None) -> None:
        """Create a bridge network; existing networks are left alone."""

    @abstractmethod
    def remove_network(self, name: str) -> None:
        pass

    @abstractmethod
    def list_networks(self, labels: Optional[dict[str, str]] = None) -> list[ResourceInfo]:
        pass

    @abstractmethod
    def create_volume(self, name: str, labels: Optional[dict[str, str]] = None) -> None:
        pass

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        pass

    @abstractmethod
    def list_volumes(self, labels: Optional[dict[str, str]] = None) -> list[ResourceInfo]:
        pass


class DeadlineExecutor:
    """Runs blocking engine calls on worker threads with a hard deadline.

    A call that misses its deadline raises :class:`EngineTimeout`; the worker
    thread is abandoned, not interrupted.
    """

    def __init__(self, default_timeout: float = 30.0, max_workers: int = 16):
        self.default_timeout = default_timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="robium-engine")

    def call(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        timeout: Optional[float] = None,
        target: Optional[str] = None,
        **kwargs: Any,
    ) -> T:
        deadline = self.default_timeout if timeout is None else timeout
        future = self._pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=deadline)
        except FutureTimeout:
            future.cancel()
            raise EngineTimeout(operation, deadline, target)

    def shutdown(self, wait: bool = False) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=True)
