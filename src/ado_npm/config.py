"""Configuration files, well-known paths, and option precedence.

This module handles all persistent configuration for ado-npm:

* **User defaults** -- ``~/.ado-npm`` holds the default ``registry`` and
  ``tenant``. It is an INI file validated by :class:`ConfigData` and loaded
  through a :class:`~ado_npm.store.StoreRegistry` (:func:`get_config`).
* **Credentials** -- ``~/.npmrc`` is where ``npm`` looks for registry
  passwords; :func:`get_user_npmrc` returns its store.
* **Project files** -- :func:`find_up` locates the nearest ``.npmrc`` above
  the working directory for registry detection.
* **Precedence resolution** -- :func:`resolve_option` picks a value from
  the command line, then the environment, then the config file.
* **Data directory** -- XDG-aware location for crash logs
  (:func:`get_data_dir`).
"""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from ado_npm.exceptions import ConfigError
from ado_npm.store import IniStore, StoreRegistry

_APP_NAME = "ado-npm"
_CONFIG_FILENAME = ".ado-npm"
_NPMRC_FILENAME = ".npmrc"

ENV_PREFIX = "ADO_NPM_"

DEFAULT_TENANT = "common"
DEFAULT_LIFETIME_DAYS = 90


class ConfigData(BaseModel):
    """User defaults stored in ``~/.ado-npm``.

    Unknown keys are preserved so that a newer ado-npm writing extra
    settings does not lose them when an older one saves.
    """

    model_config = ConfigDict(extra="allow")

    registry: Optional[str] = None
    tenant: Optional[str] = None


def parse_config_data(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate a decoded ``~/.ado-npm`` document.

    Raises:
        ConfigError: If a known key has the wrong type (e.g. a section
            named ``[registry]``).
    """
    try:
        model = ConfigData.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file: {exc}") from exc
    return model.model_dump(exclude_none=True)


# --- Paths ---


def get_config_path() -> Path:
    """Path of the user defaults file (``~/.ado-npm``)."""
    return Path.home() / _CONFIG_FILENAME


def get_user_npmrc_path() -> Path:
    """Path of the user-level ``.npmrc`` that holds registry credentials."""
    return Path.home() / _NPMRC_FILENAME


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/ado-npm/`` (default
    ``~/.local/share/ado-npm/``). Elsewhere: ``~/.ado-npm-data/``.
    """
    system = platform.system()
    if system == "Linux" or system.endswith("BSD"):
        env_value = os.environ.get("XDG_DATA_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".local" / "share"
        path = base / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}-data"
    path.mkdir(parents=True, exist_ok=True)
    return path


def find_up(filename: str, start: Optional[Path] = None) -> Optional[Path]:
    """Return the nearest regular file named *filename* at or above *start*.

    Args:
        filename: File name to look for.
        start: Directory to start from. Defaults to the working directory.

    Returns:
        The path found, or ``None`` when the filesystem root is reached.
    """
    current = (start or Path.cwd()).absolute()
    for directory in (current, *current.parents):
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


# --- Stores ---


def get_config(stores: StoreRegistry) -> IniStore:
    """Return the loaded ``~/.ado-npm`` store."""
    return stores.get(get_config_path(), parse=parse_config_data)


def get_user_npmrc(stores: StoreRegistry) -> IniStore:
    """Return the loaded ``~/.npmrc`` store."""
    return stores.get(get_user_npmrc_path())


# --- Precedence resolution ---


def resolve_option(
    name: str,
    cli_value: Any,
    config: Optional[IniStore] = None,
    default: Any = None,
) -> Any:
    """Resolve one option value.

    Precedence (highest first):

    1. *cli_value*, when not ``None``.
    2. The ``ADO_NPM_<NAME>`` environment variable, when non-empty.
    3. The key *name* in the *config* store.
    4. *default*.
    """
    if cli_value is not None:
        return cli_value
    env_value = os.environ.get(f"{ENV_PREFIX}{name.upper()}", "")
    if env_value:
        return env_value
    if config is not None:
        value = config.data.get(name)
        if value not in (None, ""):
            return value
    return default
