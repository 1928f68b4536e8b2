"""Tests for driver configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from nvdoctor import config as config_mod
from nvdoctor.config import ConfigError, DriverConfig, load_config, resolve_config_path


@pytest.fixture(autouse=True)
def _no_system_config(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("NVDOCTOR_CONFIG", raising=False)
    monkeypatch.setattr(
        config_mod,
        "SYSTEM_CONFIG_PATHS",
        (tmp_path / "etc/config.toml", tmp_path / "etc/config.yaml"),
    )


def test_defaults_without_config_file() -> None:
    config = load_config()

    assert config == DriverConfig()
    assert config.module_set == ("nvidia", "nvidia_modeset", "nvidia_drm")
    assert config.display_services == ("lightdm", "gdm3", "sddm")
    assert config.settle_seconds == 5.0
    assert config.boot_image_path("6.1.0-18-amd64") == Path("/boot/initrd.img-6.1.0-18-amd64")


def test_toml_overrides(tmp_path) -> None:
    path = tmp_path / "nvdoctor.toml"
    path.write_text(
        'competing_driver = "nouveau"\n'
        'display_services = ["gdm3"]\n'
        "settle_seconds = 10\n"
        'blacklist_path = "/tmp/blacklist.conf"\n',
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.display_services == ("gdm3",)
    assert config.settle_seconds == 10.0
    assert config.blacklist_path == Path("/tmp/blacklist.conf")


def test_yaml_from_env(monkeypatch, tmp_path) -> None:
    path = tmp_path / "nvdoctor.yaml"
    path.write_text("driver_package: nvidia-driver-535\ncommand_timeout: 120\n", encoding="utf-8")
    monkeypatch.setenv("NVDOCTOR_CONFIG", str(path))

    config = load_config()

    assert config.driver_package == "nvidia-driver-535"
    assert config.command_timeout == 120.0


def test_empty_yaml_keeps_defaults(tmp_path) -> None:
    path = tmp_path / "empty.yml"
    path.write_text("", encoding="utf-8")

    assert load_config(path) == DriverConfig()


def test_system_path_is_used(tmp_path) -> None:
    system = tmp_path / "etc/config.toml"
    system.parent.mkdir(parents=True)
    system.write_text('capability_command = "nvidia-smi"\n', encoding="utf-8")

    assert resolve_config_path() == system


def test_unknown_key_rejected(tmp_path) -> None:
    path = tmp_path / "bad.toml"
    path.write_text('gpu_vendor = "amd"\n', encoding="utf-8")

    with pytest.raises(ConfigError, match="unknown keys: gpu_vendor"):
        load_config(path)


@pytest.mark.parametrize(
    "body",
    [
        'settle_seconds = "five"\n',
        'module_set = "nvidia"\n',
        "blacklist_path = 3\n",
        "settle_seconds = -1\n",
        "vendor_id = 4318\n",
    ],
)
def test_bad_types_rejected(tmp_path, body) -> None:
    path = tmp_path / "bad.toml"
    path.write_text(body, encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid config structure"):
        load_config(path)


def test_malformed_toml(tmp_path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("settle_seconds = = 5\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Malformed TOML"):
        load_config(path)


def test_yaml_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- nvidia\n- nouveau\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="must be a mapping"):
        load_config(path)


def test_unsupported_suffix(tmp_path) -> None:
    path = tmp_path / "config.ini"
    path.write_text("[x]\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unsupported config format"):
        load_config(path)


def test_missing_explicit_path(tmp_path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.toml")


def test_missing_env_path(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("NVDOCTOR_CONFIG", str(tmp_path / "gone.yaml"))

    with pytest.raises(ConfigError, match="NVDOCTOR_CONFIG"):
        resolve_config_path()
