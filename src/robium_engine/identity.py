"""Deterministic naming for containers, networks and volumes.

Every run is keyed by ``(project_id, workspace_id, run_id)``. Each component is
encoded injectively into engine-legal characters:

- ``[a-z0-9]`` pass through unchanged
- any other character becomes ``_`` followed by the lowercase hex of each of
  its UTF-8 bytes (``"A"`` -> ``_41``, ``"-"`` -> ``_2d``)

Encoded components never contain ``-``, so joining them with ``-`` is
unambiguous and the canonical name can be parsed back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from .errors import InvalidIdentifier

NAME_PREFIX = "robium"
NETWORK_PREFIX = "robium-net"
SEPARATOR = "-"
# Keeps the canonical name within 105 characters and the scratch volume within 113.
MAX_COMPONENT_LENGTH = 32

LABEL_MANAGED = "robium.managed"
LABEL_PROJECT = "robium.project"
LABEL_WORKSPACE = "robium.workspace"
LABEL_RUN = "robium.run"
LABEL_NAME = "robium.name"

_PLAIN = re.compile(r"[a-z0-9]")
_ENCODED = re.compile(r"^(?:[a-z0-9]|_[0-9a-f]{2})+$")


def encode_component(value: str) -> str:
    out = []
    for ch in value:
        if _PLAIN.fullmatch(ch):
            out.append(ch)
        else:
            out.extend(f"_{b:02x}" for b in ch.encode("utf-8"))
    return "".join(out)


def decode_component(encoded: str) -> str:
    if not _ENCODED.match(encoded):
        raise ValueError(f"not an encoded component: {encoded!r}")
    buf = bytearray()
    i = 0
    while i < len(encoded):
        if encoded[i] == "_":
            buf.append(int(encoded[i + 1:i + 3], 16))
            i += 3
        else:
            buf.extend(encoded[i].encode("ascii"))
            i += 1
    return buf.decode("utf-8")


def _checked(component: str, value: str) -> str:
    if value is None or not str(value):
        raise InvalidIdentifier(component, "" if value is None else str(value), "must not be empty")
    encoded = encode_component(str(value))
    if len(encoded) > MAX_COMPONENT_LENGTH:
        raise InvalidIdentifier(
            component,
            str(value),
            f"encoded length {len(encoded)} exceeds {MAX_COMPONENT_LENGTH}",
        )
    return encoded


@dataclass(frozen=True)
class ContainerIdentity:
    """Primary key of a run. Build it with :func:`identity`, not directly."""
    project_id: str
    workspace_id: str
    run_id: str
    name: str = field(compare=False)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.project_id, self.workspace_id, self.run_id)

    @property
    def network_name(self) -> str:
        return network_name(self.project_id)

    @property
    def volume_name(self) -> str:
        return f"{self.name}{SEPARATOR}scratch"

    def labels(self) -> dict[str, str]:
        return {
            LABEL_MANAGED: "1",
            LABEL_PROJECT: self.project_id,
            LABEL_WORKSPACE: self.workspace_id,
            LABEL_RUN: self.run_id,
            LABEL_NAME: self.name,
        }

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "workspace_id": self.workspace_id,
            "run_id": self.run_id,
            "name": self.name,
        }

    def __str__(self) -> str:
        return self.name


def identity(project_id: str, workspace_id: str, run_id: str) -> ContainerIdentity:
    """Derive the identity of one run. Pure and deterministic."""
    p = _checked("project_id", project_id)
    w = _checked("workspace_id", workspace_id)
    r = _checked("run_id", run_id)
    name = SEPARATOR.join((NAME_PREFIX, p, w, r))
    return ContainerIdentity(
        project_id=str(project_id),
        workspace_id=str(workspace_id),
        run_id=str(run_id),
        name=name,
    )


def network_name(project_id: str) -> str:
    """Per-project network; shared by runs of one project only."""
    return f"{NETWORK_PREFIX}{SEPARATOR}{_checked('project_id', project_id)}"


def parse_name(name: str) -> Optional[ContainerIdentity]:
    """Inverse of :func:`identity` for canonical container names.

    Returns None for names this engine does not produce.
    """
    parts = (name or "").split(SEPARATOR)
    if len(parts) != 4 or parts[0] != NAME_PREFIX:
        return None
    try:
        p, w, r = (decode_component(x) for x in parts[1:])
    except ValueError:
        return None
    return identity(p, w, r)
