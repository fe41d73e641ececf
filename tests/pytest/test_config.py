# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

import os
import shutil
import subprocess
from pathlib import Path

import platformdirs
import pydantic
import pytest

from ecudiag.config import Config, get_config_dirs, load_config_file


@pytest.fixture(autouse=True)
def no_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ECUDIAG_CONFIG", raising=False)


def init_repository(path: Path) -> None:
    subprocess.run(["git", "init", path], check=True)


@pytest.mark.skipif(shutil.which("git") is None, reason="git binary is not available")
def test_config_discovery_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    testrepo = tmp_path.joinpath("testrepo")
    testrepo.mkdir()
    init_repository(testrepo)
    monkeypatch.chdir(testrepo)

    config_file = testrepo.joinpath("ecudiag.toml")
    config_file.touch()

    _, path = load_config_file()
    assert path is not None
    assert path.name == "ecudiag.toml"

    foodir = testrepo.joinpath("foo")
    foodir.mkdir()
    monkeypatch.chdir(foodir)

    _, path = load_config_file()
    assert path is not None
    assert config_file.resolve() == path.resolve()


def test_config_discovery_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path.joinpath("ecudiag.toml")
    config_file.touch()
    monkeypatch.chdir(tmp_path)

    _, path = load_config_file()
    assert path is not None
    assert config_file == path


def test_config_discovery_none(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        "ecudiag.config.get_config_dirs", lambda: [tmp_path]
    )

    config, path = load_config_file()
    assert path is None
    assert config == {}


def test_config_discovery_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path.joinpath("custom.toml")
    config_file.write_text('[ecudiag.connection]\nhost = "192.0.2.1"\n')
    monkeypatch.setenv("ECUDIAG_CONFIG", str(config_file))

    config, path = load_config_file()
    assert path == config_file
    assert config.get_value("ecudiag.connection.host") == "192.0.2.1"


def test_config_discovery_env_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ECUDIAG_CONFIG", os.fspath(tmp_path.joinpath("missing.toml")))

    with pytest.raises(FileNotFoundError):
        load_config_file()


def test_config_dirs_contain_user_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    dirs = get_config_dirs()
    assert dirs[0] == tmp_path
    assert platformdirs.user_config_path("ecudiag") in dirs


def test_config_extra_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    extra = tmp_path.joinpath("extra")
    extra.mkdir()
    config_file = extra.joinpath("ecudiag.toml")
    config_file.write_text("[ecudiag.security]\nconstant = \"e455\"\n")

    config, path = load_config_file(extra_paths=[extra])
    assert path == config_file
    assert config.get_value("ecudiag.security.constant") == "e455"


def test_config_invalid_toml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path.joinpath("ecudiag.toml")
    config_file.write_text("[ecudiag.connection\n")
    monkeypatch.setenv("ECUDIAG_CONFIG", str(config_file))

    with pytest.raises(ValueError):
        load_config_file()


def test_config_get_value() -> None:
    config = Config({"ecudiag": {"connection": {"port": 13401, "host": None}}})

    assert config.get_value("ecudiag.connection.port") == 13401
    assert config.get_value("ecudiag.connection.host", "localhost") == "localhost"
    assert config.get_value("ecudiag.connection.timeout", 30.0) == 30.0
    assert config.get_value("ecudiag.connection.port.foo", 1) == 1
    assert config.get_value("missing") is None


def test_config_settings() -> None:
    config = Config(
        {
            "ecudiag": {
                "connection": {"host": "192.0.2.1", "client_address": "0e80"},
                "security": {"constant": "0xe455"},
            }
        }
    )
    settings = config.settings()

    assert settings.connection.host == "192.0.2.1"
    assert settings.connection.client_address == 0x0E80
    assert settings.connection.server_address is None
    assert settings.connection.port == 13400
    assert settings.connection.timeout == 30.0
    assert settings.security.constant == 0xE455
    assert Config().settings().security.constant == 0x1234


@pytest.mark.parametrize(
    "section",
    [
        {"connection": {"port": 0}},
        {"connection": {"server_address": "10000"}},
        {"connection": {"hostname": "ecu"}},
        {"security": {"constant": "zz"}},
    ],
)
def test_config_settings_invalid(section: dict[str, dict[str, object]]) -> None:
    with pytest.raises(pydantic.ValidationError):
        Config({"ecudiag": section}).settings()
