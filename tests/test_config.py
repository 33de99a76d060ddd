from pathlib import Path

import pytest
import yaml

from robium_engine.config import EngineSettings, load_settings


def test_defaults():
    settings = EngineSettings()
    assert settings.max_memory_bytes == 2 * 1024 ** 3
    assert settings.api_port == 8870
    assert settings.cache_dir is None
    ceiling = settings.ceiling()
    assert ceiling.max_pids == settings.max_pids


def test_from_dict_coerces_types():
    settings = EngineSettings.from_dict(
        {
            "max_memory_bytes": "1g",
            "max_pids": "128",
            "grace_period_s": "2.5",
            "read_only_rootfs": "yes",
            "workspace_root": "~/robium",
        }
    )
    assert settings.max_memory_bytes == 1024 ** 3
    assert settings.max_pids == 128
    assert settings.grace_period_s == 2.5
    assert settings.read_only_rootfs is True
    assert settings.workspace_root == Path("~/robium").expanduser()


def test_unknown_setting_rejected():
    with pytest.raises(ValueError):
        EngineSettings.from_dict({"max_cpus": 4})


def test_bad_memory_rejected():
    with pytest.raises(ValueError):
        EngineSettings.from_dict({"max_memory_bytes": "plenty"})


def test_env_overrides():
    env = {
        "ROBIUM_IDLE_TIMEOUT_S": "60",
        "ROBIUM_API_TOKEN": "secret",
        "ROBIUM_DOCKER_BINARY": "podman",
        "ROBIUM_MAX_PIDS": "",
        "UNRELATED": "x",
    }
    settings = EngineSettings.from_env(env)
    assert settings.idle_timeout_s == 60.0
    assert settings.api_token == "secret"
    assert settings.docker_binary == "podman"
    assert settings.max_pids == 512


def test_load_settings_layers_file_then_env(tmp_path):
    path = tmp_path / "engine.yaml"
    path.write_text(yaml.safe_dump({"engine": {"api_port": 9000, "max_pids": 256, "cache_dir": str(tmp_path / "c")}}))

    settings = load_settings(path, env={"ROBIUM_MAX_PIDS": "64"})

    assert settings.api_port == 9000
    assert settings.max_pids == 64
    assert settings.cache_dir == tmp_path / "c"


def test_load_settings_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "nope.yaml", env={})
