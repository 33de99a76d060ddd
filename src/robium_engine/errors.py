"""Error taxonomy for the container lifecycle engine."""

from __future__ import annotations

from typing import Optional


class EngineCoreError(Exception):
    """Base class for every error raised by robium_engine."""


class InvalidSpec(EngineCoreError):
    """Workspace specification is malformed or contradictory."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class InvalidIdentifier(EngineCoreError):
    """A project/workspace/run id cannot be turned into an engine name."""

    def __init__(self, component: str, value: str, reason: str):
        self.component = component
        self.value = value
        self.reason = reason
        super().__init__(f"invalid {component} {value!r}: {reason}")


class IsolationViolation(EngineCoreError):
    """Resolving or applying constraints would breach isolation."""

    def __init__(self, reason: str, conflicting: Optional[str] = None):
        self.reason = reason
        self.conflicting = conflicting
        msg = reason if not conflicting else f"{reason} (conflicts with {conflicting})"
        super().__init__(msg)


class NotFound(EngineCoreError):
    """No registry record for the identity."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"no record for {name}")


class InvalidTransition(EngineCoreError):
    """Operation is not valid from the record's current state."""

    def __init__(self, name: str, state: str, operation: str):
        self.name = name
        self.state = state
        self.operation = operation
        super().__init__(f"cannot {operation} {name} from state {state}")


class EngineError(EngineCoreError):
    """Structured, non-transient failure reported by the runtime engine."""

    def __init__(self, operation: str, detail: str, target: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        self.target = target
        where = f" {target}" if target else ""
        super().__init__(f"engine {operation}{where} failed: {detail}")


class EngineUnavailable(EngineError):
    """Runtime engine is unreachable. Transient: eligible for retry."""


class EngineTimeout(EngineUnavailable):
    """Engine call exceeded its deadline."""

    def __init__(self, operation: str, timeout: float, target: Optional[str] = None):
        self.timeout = timeout
        super().__init__(operation, f"timed out after {timeout:.1f}s", target)
