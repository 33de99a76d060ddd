"""Runtime engine backends for robium_engine."""

from .base import (
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    DeadlineExecutor,
    ResourceInfo,
    RuntimeEngine,
)
from .docker import DockerCliEngine

__all__ = [
    "ContainerInfo",
    "ContainerSpec",
    "ContainerStatus",
    "DeadlineExecutor",
    "DockerCliEngine",
    "ResourceInfo",
    "RuntimeEngine",
]
