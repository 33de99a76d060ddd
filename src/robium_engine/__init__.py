"""Robium – container lifecycle & isolation engine for robotics workspaces"""

__version__ = "0.1.0"

from .errors import (
    EngineCoreError,
    EngineError,
    EngineTimeout,
    EngineUnavailable,
    InvalidIdentifier,
    InvalidSpec,
    InvalidTransition,
    IsolationViolation,
    NotFound,
)
from .identity import ContainerIdentity, identity, network_name, parse_name
from .workspace import (
    ComposedServices,
    MountRequest,
    NetworkMode,
    ResourceLimits,
    ServiceSpec,
    SingleContainer,
    WorkspaceSpec,
    load_workspace,
)
from .compiler import ArtifactCache, CompiledArtifact, ConfigCompiler, PackageCatalog
from .policy import IsolationConstraints, IsolationPolicy, PolicyCeiling
from .registry import ContainerRecord, LifecycleState, Registry
from .events import EventBus, LifecycleEvent
from .config import EngineSettings, load_settings
from .lifecycle import LifecycleController, RunRequest
from .supervisor import AlertSink, Supervisor, SweepReport

__all__ = [
    "__version__",
    # Errors
    "EngineCoreError",
    "EngineError",
    "EngineTimeout",
    "EngineUnavailable",
    "InvalidIdentifier",
    "InvalidSpec",
    "InvalidTransition",
    "IsolationViolation",
    "NotFound",
    # Identity
    "ContainerIdentity",
    "identity",
    "network_name",
    "parse_name",
    # Workspace specs
    "ComposedServices",
    "MountRequest",
    "NetworkMode",
    "ResourceLimits",
    "ServiceSpec",
    "SingleContainer",
    "WorkspaceSpec",
    "load_workspace",
    # Compiler
    "ArtifactCache",
    "CompiledArtifact",
    "ConfigCompiler",
    "PackageCatalog",
    # Policy
    "IsolationConstraints",
    "IsolationPolicy",
    "PolicyCeiling",
    # Registry & lifecycle
    "ContainerRecord",
    "LifecycleState",
    "Registry",
    "EventBus",
    "LifecycleEvent",
    "LifecycleController",
    "RunRequest",
    # Supervisor
    "AlertSink",
    "Supervisor",
    "SweepReport",
    # Config
    "EngineSettings",
    "load_settings",
]
