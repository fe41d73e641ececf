# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

import os
import subprocess
import tomllib
from pathlib import Path
from typing import Any

from platformdirs import user_config_path
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ecudiag.manager import DEFAULT_SECURITY_CONSTANT
from ecudiag.types import DEFAULT_TIMEOUT, DOIP_PORT
from ecudiag.utils import hex_int

CONFIG_FILENAME = "ecudiag.toml"
CONFIG_ENV = "ECUDIAG_CONFIG"

TEMPLATE = """# [ecudiag.connection]
# host = <str>
# port = <int>
# client_address = <str, hex>
# server_address = <str, hex>
# timeout = <float, seconds>

# [ecudiag.security]
# constant = <str, hex>
"""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ConnectionSection(_Section):
    host: str | None = None
    port: int = Field(default=DOIP_PORT, ge=1, le=0xFFFF)
    client_address: int | None = Field(default=None, ge=0, le=0xFFFF)
    server_address: int | None = Field(default=None, ge=0, le=0xFFFF)
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)

    @field_validator("client_address", "server_address", mode="before")
    def hex_address(cls, v: Any) -> Any:
        return hex_int(v) if isinstance(v, str) else v


class SecuritySection(_Section):
    constant: int = Field(default=DEFAULT_SECURITY_CONSTANT, ge=0, le=0xFFFFFFFF)

    @field_validator("constant", mode="before")
    def hex_constant(cls, v: Any) -> Any:
        return hex_int(v) if isinstance(v, str) else v


class Settings(_Section):
    """The validated ``[ecudiag]`` table of the config file."""

    connection: ConnectionSection = ConnectionSection()
    security: SecuritySection = SecuritySection()


class Config(dict[str, Any]):
    def get_value(self, key: str, default: Any | None = None) -> Any | None:
        """Looks up a dotted key such as ``ecudiag.connection.host``."""
        node: Any = self
        for part in key.split("."):
            if not isinstance(node, dict):
                return default
            node = node.get(part)
        return node if node is not None else default

    def settings(self) -> Settings:
        """Raises ``pydantic.ValidationError`` for unknown keys or bad values."""
        return Settings.model_validate(self.get("ecudiag", {}))


def get_git_root() -> Path | None:
    try:
        out = subprocess.check_output(
            ["git", "rev-parse", "--show-toplevel"],
            stderr=subprocess.DEVNULL,
            text=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError):
        return None
    return Path(out.strip())


def get_config_dirs() -> list[Path]:
    """The working directory, the git root (if any) and the user config dir."""
    dirs = [Path.cwd()]
    if (git_root := get_git_root()) is not None:
        dirs.append(git_root)
    dirs.append(user_config_path("ecudiag"))
    return dirs


def search_config(
    filename: Path | None = None,
    extra_paths: list[Path] | None = None,
) -> Path | None:
    if (env := os.getenv(CONFIG_ENV)) is not None:
        path = Path(env)
        if not path.exists():
            raise FileNotFoundError(f"{CONFIG_ENV} points to a missing file: {env}")
        return path

    name = filename if filename is not None else Path(CONFIG_FILENAME)
    for directory in [*get_config_dirs(), *(extra_paths or [])]:
        if (path := directory.joinpath(name)).is_file():
            return path
    return None


def load_config_file(
    filename: Path | None = None,
    extra_paths: list[Path] | None = None,
) -> tuple[Config, Path | None]:
    """Raises ``ValueError`` (``tomllib.TOMLDecodeError``) for invalid files."""
    path = search_config(filename, extra_paths)
    if path is None:
        return Config(), None

    with path.open("rb") as f:
        return Config(tomllib.load(f)), path
