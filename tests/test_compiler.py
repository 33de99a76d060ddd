import json
import threading

import pytest
import yaml

from robium_engine.compiler import (
    ArtifactCache,
    ConfigCompiler,
    PackageCatalog,
)
from robium_engine.errors import InvalidSpec
from robium_engine.workspace import WorkspaceSpec


def _spec(**overrides) -> WorkspaceSpec:
    data = {
        "base_image": "ros:humble-ros-base",
        "packages": ["nav2", "rviz2"],
        "env": {"ROS_DOMAIN_ID": "7", "RMW_IMPLEMENTATION": "rmw_cyclonedds_cpp"},
        "command": ["ros2", "launch", "bringup", "robot.launch.py"],
    }
    data.update(overrides)
    return WorkspaceSpec.from_dict(data)


def test_same_spec_same_hash_and_artifact():
    compiler = ConfigCompiler()
    a = compiler.compile(_spec())
    b = ConfigCompiler().compile(_spec())
    assert a.content_hash == b.content_hash
    assert a.dockerfile == b.dockerfile
    assert a.compose == b.compose


def test_hash_ignores_env_ordering():
    compiler = ConfigCompiler()
    a = compiler.compile(_spec(env={"A": "1", "B": "2"}))
    b = compiler.compile(_spec(env={"B": "2", "A": "1"}))
    assert a.content_hash == b.content_hash


def test_hash_changes_with_inputs():
    compiler = ConfigCompiler()
    base = compiler.compile(_spec()).content_hash
    assert compiler.compile(_spec(packages=["nav2"])).content_hash != base
    assert compiler.compile(_spec(base_image="ros:iron")).content_hash != base


def test_second_compile_is_a_cache_hit():
    compiler = ConfigCompiler()
    first = compiler.compile(_spec())
    second = compiler.compile(_spec())
    assert second is first
    assert compiler.cache.stats.hits == 1
    assert compiler.cache.stats.misses == 1
    assert len(compiler.cache) == 1


def test_dockerfile_contents():
    artifact = ConfigCompiler().compile(_spec())
    df = artifact.dockerfile
    assert df.startswith("FROM ros:humble-ros-base\n")
    assert "ros-humble-navigation2" in df
    assert "ros-humble-rviz2" in df
    assert 'ENV ROS_DOMAIN_ID="7"' in df
    assert "USER robium" in df
    assert 'CMD ["ros2", "launch", "bringup", "robot.launch.py"]' in df
    assert artifact.image_tag == f"robium/workspace:{artifact.content_hash[:16]}"


def test_apt_prefix_bypasses_catalog():
    artifact = ConfigCompiler().compile(_spec(packages=["apt:htop"]))
    assert artifact.packages == ("htop",)


def test_custom_catalog(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(yaml.safe_dump({"packages": {"lidar": ["ros-humble-velodyne"]}}))
    catalog = PackageCatalog.from_yaml(path)
    assert catalog.resolve("lidar") == ("ros-humble-velodyne",)
    assert catalog.resolve("nav2") is not None
    assert PackageCatalog.from_yaml(path, include_defaults=False).resolve("nav2") is None


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"packages": ["no-such-thing"]}, "packages"),
        ({"env": ["A=1", "A=2"]}, "env"),
        ({"mounts": ["a:/data", "b:/data/sub"]}, "mounts"),
        ({"services": {"sim": {"image": "g", "depends_on": ["ghost"]}}}, "services"),
        (
            {
                "services": {
                    "a": {"image": "x", "depends_on": ["b"]},
                    "b": {"image": "y", "depends_on": ["a"]},
                }
            },
            "services",
        ),
    ],
)
def test_invalid_specs_produce_no_artifact(overrides, field):
    compiler = ConfigCompiler()
    with pytest.raises(InvalidSpec) as exc:
        compiler.compile(_spec(**overrides))
    assert exc.value.field == field
    assert len(compiler.cache) == 0


def test_launch_plan_follows_dependencies():
    spec = _spec(
        services={
            "bridge": {"image": "rosbridge:1", "depends_on": ["sim"]},
            "sim": {"image": "gazebo:11"},
            "db": {"image": "redis:7"},
        }
    )
    artifact = ConfigCompiler().compile(spec)
    order = [s.name for s in artifact.launch]
    assert order[-1] == "workspace"
    assert order.index("sim") < order.index("bridge")
    assert artifact.main.image == artifact.image_tag
    assert {s.name for s in artifact.auxiliary} == {"bridge", "sim", "db"}

    compose = yaml.safe_load(artifact.compose)
    assert set(compose["services"]) == {"bridge", "sim", "db", "workspace"}
    assert compose["services"]["bridge"]["depends_on"] == ["sim"]
    assert compose["networks"]["workspace"]["external"] is True


def test_network_none_compose():
    artifact = ConfigCompiler().compile(_spec(network_mode="none"))
    compose = yaml.safe_load(artifact.compose)
    assert compose["services"]["workspace"]["network_mode"] == "none"
    assert "networks" not in compose


def test_concurrent_compiles_share_one_entry():
    compiler = ConfigCompiler()
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(compiler.compile(_spec()))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(compiler.cache) == 1
    stored = compiler.cache.get(results[0].content_hash)
    assert all(r is stored for r in results)


def test_put_if_absent_keeps_first_writer():
    cache = ArtifactCache()
    first = ConfigCompiler(cache=ArtifactCache()).compile(_spec())
    second = ConfigCompiler(cache=ArtifactCache()).compile(_spec())
    assert first is not second

    assert cache.put_if_absent(first) is first
    assert cache.put_if_absent(second) is first
    assert cache.stats.discarded == 1


def test_disk_mirror_survives_restart(tmp_path):
    compiler = ConfigCompiler(cache=ArtifactCache(tmp_path))
    artifact = compiler.compile(_spec())

    entry = tmp_path / artifact.content_hash
    assert (entry / "Dockerfile").read_text() == artifact.dockerfile
    meta = json.loads((entry / "artifact.json").read_text())
    assert meta["content_hash"] == artifact.content_hash

    reloaded = ArtifactCache(tmp_path)
    assert artifact.content_hash in reloaded
    again = reloaded.get(artifact.content_hash)
    assert again.compose == artifact.compose
    assert [s.name for s in again.launch] == [s.name for s in artifact.launch]
