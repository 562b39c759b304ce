from pathlib import Path

import pytest
import yaml

from netlease.config.config import DEFAULT_CONFIG_PATH, Config
from netlease.libs.errors import ConfigError


@pytest.fixture
def real_config():
    try:
        config = Config(path=DEFAULT_CONFIG_PATH)
    except ConfigError as e:
        pytest.fail(f"Failed loading config {e}.")
    return config


@pytest.fixture
def raw_config() -> dict:
    with open(DEFAULT_CONFIG_PATH, mode="r", encoding="utf-8") as _file_handle:
        return yaml.safe_load(_file_handle)


def write_config(tmp_path: Path, data) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_config_path(real_config):
    # Negative
    assert real_config._path is not None, "config path None."
    assert isinstance(
        real_config._path, Path
    ), f"Invalid type: {type(real_config._path).__name__}."

    # Positive
    assert real_config._path.exists(), f"Path does not exist: {real_config._path}."
    assert real_config._path.is_file(), f"Not a filepath: {real_config._path}."


def test_config_sections(real_config):
    dhcp = real_config.get("dhcp")

    # Positive
    assert dhcp["mode"] in ("server", "relay")
    assert dhcp["server"]["lease_time_seconds"] == 30
    assert dhcp["server"]["renew_time_seconds"] == 15
    assert dhcp["server"]["rebind_time_seconds"] == 25
    assert dhcp["relay"]["interfaces"]
    assert real_config.get("logging")["version"] == 1


def test_config_get_returns_copy(real_config):
    dhcp = real_config.get("dhcp")
    dhcp["mode"] = "changed"

    # Negative
    assert real_config.get("dhcp")["mode"] != "changed"


def test_config_get_invalid_keys(real_config):
    # Negative
    with pytest.raises(ValueError):
        real_config.get("")
    with pytest.raises(ValueError):
        real_config.get(None)
    with pytest.raises(RuntimeError):
        real_config.get("no-such-section")


def test_config_missing_file(tmp_path):
    # Negative
    with pytest.raises(ConfigError):
        Config(path=tmp_path / "missing.yaml")


def test_config_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("dhcp: [unclosed", encoding="utf-8")

    # Negative
    with pytest.raises(ConfigError):
        Config(path=path)


def test_config_schema_violations(tmp_path, raw_config):
    raw_config["dhcp"]["mode"] = "proxy"

    # Negative
    with pytest.raises(ConfigError):
        Config(path=write_config(tmp_path, raw_config))

    raw_config["dhcp"]["mode"] = "server"
    raw_config["dhcp"]["server"]["pool_start"] = "10.0.0.300"
    with pytest.raises(ConfigError):
        Config(path=write_config(tmp_path, raw_config))


def test_config_reload(tmp_path, raw_config):
    path = write_config(tmp_path, raw_config)
    config = Config(path=path)
    assert config.get("dhcp")["mode"] == "server"

    raw_config["dhcp"]["mode"] = "relay"
    write_config(tmp_path, raw_config)
    config.reload()

    # Positive
    assert config.get("dhcp")["mode"] == "relay"


def test_config_errors_come_from_libs():
    import netlease.config.config as config_module

    # Positive
    assert ConfigError.__module__ == "netlease.libs.errors"

    # Negative
    assert not any(
        _name.startswith("netlease.services")
        for _name in (
            getattr(_value, "__module__", "") or ""
            for _value in vars(config_module).values()
        )
    )
