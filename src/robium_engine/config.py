"""Engine configuration: defaults, YAML file, ROBIUM_* environment overrides."""

import os
import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import InvalidSpec
from .policy import PolicyCeiling
from .workspace import parse_memory

ENV_PREFIX = "ROBIUM_"


def _default_root(name: str) -> Path:
    return Path(tempfile.gettempdir()) / "robium" / name


@dataclass
class EngineSettings:
    """Tunables of the engine. Durations are in seconds."""

    # Filesystem
    workspace_root: Path = field(default_factory=lambda: _default_root("workspaces"))
    cache_dir: Optional[Path] = None
    catalog_path: Optional[Path] = None

    # Global resource ceiling
    max_cpu_shares: int = 1024
    max_memory_bytes: int = 2 * 1024 ** 3
    max_pids: int = 512
    read_only_rootfs: bool = False

    # Lifecycle
    grace_period_s: float = 10.0
    call_timeout_s: float = 30.0
    build_timeout_s: float = 900.0
    docker_binary: str = "docker"

    # Supervisor
    idle_timeout_s: float = 1800.0
    supervisor_interval_s: float = 15.0
    retry_base_s: float = 1.0
    retry_max_s: float = 60.0
    retry_ceiling: int = 5

    # HTTP control surface
    api_host: str = "127.0.0.1"
    api_port: int = 8870
    api_token: str = ""
    log_level: str = "INFO"

    def ceiling(self) -> PolicyCeiling:
        return PolicyCeiling(
            max_cpu_shares=self.max_cpu_shares,
            max_memory_bytes=self.max_memory_bytes,
            max_pids=self.max_pids,
            read_only_rootfs=self.read_only_rootfs,
        )

    @classmethod
    def from_dict(cls, data: dict, base: Optional["EngineSettings"] = None) -> "EngineSettings":
        base = base or cls()
        known = {f.name: f for f in fields(cls)}
        changes: dict[str, Any] = {}
        for key, raw in (data or {}).items():
            key = str(key).lower()
            if key not in known:
                raise ValueError(f"Unknown setting: {key}")
            changes[key] = _coerce(key, raw, getattr(base, key))
        return replace(base, **changes)

    @classmethod
    def from_yaml(cls, path: Path, base: Optional["EngineSettings"] = None) -> "EngineSettings":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data.get("engine", data), base=base)

    @classmethod
    def from_env(
        cls,
        env: Optional[dict[str, str]] = None,
        base: Optional["EngineSettings"] = None,
    ) -> "EngineSettings":
        src = env if env is not None else os.environ
        data = {}
        for f in fields(cls):
            value = src.get(ENV_PREFIX + f.name.upper())
            if value is not None and str(value).strip() != "":
                data[f.name] = value
        return cls.from_dict(data, base=base)


def _coerce(key: str, raw: Any, current: Any) -> Any:
    if key in ("workspace_root", "cache_dir", "catalog_path"):
        return Path(str(raw)).expanduser() if raw not in (None, "") else None
    if key == "max_memory_bytes":
        try:
            return parse_memory(raw)
        except InvalidSpec as e:
            raise ValueError(f"{key}: {e}")
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return str(raw)


def load_settings(path: Optional[str | Path] = None, env: Optional[dict[str, str]] = None) -> EngineSettings:
    """Defaults, then the YAML file (if any), then environment overrides."""
    settings = EngineSettings()
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        settings = EngineSettings.from_yaml(path, base=settings)
    return EngineSettings.from_env(env, base=settings)
