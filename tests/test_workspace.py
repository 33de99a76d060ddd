import pytest

from robium_engine.errors import InvalidSpec
from robium_engine.workspace import (
    ComposedServices,
    MountRequest,
    NetworkMode,
    SingleContainer,
    WorkspaceSpec,
    load_workspace,
    parse_memory,
)


def test_minimal_spec_defaults():
    spec = WorkspaceSpec.from_dict({"base_image": "ros:humble"})
    assert spec.network_mode == NetworkMode.PROJECT
    assert isinstance(spec.target, SingleContainer)
    assert spec.limits.memory_bytes is None
    assert spec.services == ()


def test_base_image_required():
    with pytest.raises(InvalidSpec) as exc:
        WorkspaceSpec.from_dict({"packages": ["nav2"]})
    assert exc.value.field == "base_image"


@pytest.mark.parametrize(
    "value,expected",
    [
        (1024, 1024),
        ("512m", 512 * 1024 ** 2),
        ("2GiB", 2 * 1024 ** 3),
        ("1.5g", int(1.5 * 1024 ** 3)),
        ("64k", 64 * 1024),
    ],
)
def test_parse_memory(value, expected):
    assert parse_memory(value) == expected


@pytest.mark.parametrize("value", ["lots", "-1m", 0, True])
def test_parse_memory_rejects_garbage(value):
    with pytest.raises(InvalidSpec):
        parse_memory(value)


def test_env_forms_are_equivalent():
    as_map = WorkspaceSpec.from_dict({"base_image": "x", "env": {"A": "1", "B": "2"}})
    as_list = WorkspaceSpec.from_dict({"base_image": "x", "env": ["B=2", "A=1"]})
    as_k8s = WorkspaceSpec.from_dict(
        {"base_image": "x", "env": [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}]}
    )
    assert as_map.to_dict() == as_list.to_dict() == as_k8s.to_dict()


def test_env_duplicates_are_kept_for_the_compiler():
    spec = WorkspaceSpec.from_dict({"base_image": "x", "env": ["A=1", "A=2"]})
    assert spec.env == (("A", "1"), ("A", "2"))


def test_invalid_env_name():
    with pytest.raises(InvalidSpec):
        WorkspaceSpec.from_dict({"base_image": "x", "env": {"1BAD": "v"}})


def test_mount_short_form():
    m = MountRequest.from_dict("data:/data:ro")
    assert m == MountRequest(source="data", target="/data", read_only=True)
    assert MountRequest.from_dict("src:/src").read_only is False


@pytest.mark.parametrize("raw", ["data:relative", {"source": "a", "target": "rel"}, "a:/b:xx", 42])
def test_mount_validation(raw):
    with pytest.raises(InvalidSpec):
        MountRequest.from_dict(raw)


def test_unknown_network_mode():
    with pytest.raises(InvalidSpec):
        WorkspaceSpec.from_dict({"base_image": "x", "network_mode": "bridge-ish"})


def test_services_make_a_composed_target():
    spec = WorkspaceSpec.from_dict(
        {
            "base_image": "ros:humble",
            "services": {
                "sim": {"image": "gazebo:11", "command": "gzserver --verbose"},
                "bridge": {"image": "rosbridge:1", "depends_on": ["sim"]},
            },
        }
    )
    assert isinstance(spec.target, ComposedServices)
    assert {s.name for s in spec.services} == {"sim", "bridge"}
    sim = next(s for s in spec.services if s.name == "sim")
    assert sim.command == ("gzserver", "--verbose")


def test_reserved_service_name():
    with pytest.raises(InvalidSpec):
        WorkspaceSpec.from_dict({"base_image": "x", "services": {"workspace": {"image": "y"}}})


def test_canonical_form_ignores_ordering():
    a = WorkspaceSpec.from_dict(
        {
            "base_image": "x",
            "env": {"A": "1", "B": "2"},
            "mounts": ["a:/a", "b:/b"],
        }
    )
    b = WorkspaceSpec.from_dict(
        {
            "base_image": "x",
            "env": {"B": "2", "A": "1"},
            "mounts": ["b:/b", "a:/a"],
        }
    )
    assert a.to_dict() == b.to_dict()


def test_load_workspace(tmp_path):
    path = tmp_path / "workspace.yaml"
    path.write_text(
        "base_image: ros:humble\n"
        "packages: [nav2, rviz2]\n"
        "limits:\n"
        "  memory: 1g\n"
        "  pids: 128\n"
    )
    spec = load_workspace(path)
    assert spec.packages == ("nav2", "rviz2")
    assert spec.limits.memory_bytes == 1024 ** 3
    assert spec.limits.pids == 128

    with pytest.raises(FileNotFoundError):
        load_workspace(tmp_path / "missing.yaml")
