"""Layered configuration.

Later layers win: packaged ``config/defaults.yaml``, then a user file (the
``--config`` option or ``$TEAMDECK_CONFIG``), then ``TEAMDECK__SECTION__KEY``
environment variables, then dotted CLI overrides. The merged mapping is
validated into :class:`AppConfig`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from .logging import get_logger
from .models import AppConfig

logger = get_logger(__name__)

CONFIG_FILE_ENV = "TEAMDECK_CONFIG"
# Double underscore keeps the session variables (TEAMDECK_TEAM_ID, ...) out of this layer.
OVERRIDE_ENV_PREFIX = "TEAMDECK__"


def _merge(base: dict[str, Any], layer: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in layer.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def _nest(flat: Mapping[str, Any], separator: str = ".") -> dict[str, Any]:
    """Turn ``{"hub.port": 1}`` into ``{"hub": {"port": 1}}``."""
    nested: dict[str, Any] = {}
    for dotted, value in flat.items():
        *sections, leaf = dotted.split(separator)
        cursor = nested
        for section in sections:
            child = cursor.get(section)
            if not isinstance(child, dict):
                child = cursor[section] = {}
            cursor = child
        cursor[leaf] = value
    return nested


def _read_mapping(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    parsed = yaml.safe_load(path.read_text())
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return parsed


def defaults_path() -> Path:
    # src/teamdeck/config.py -> project root
    packaged = Path(__file__).resolve().parents[2] / "config" / "defaults.yaml"
    if packaged.is_file():
        return packaged
    return Path("config/defaults.yaml")


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``TEAMDECK__HUB__PORT=9100`` style variables as dotted overrides.

    Values are read as YAML scalars so numbers and booleans keep their type.
    """
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(OVERRIDE_ENV_PREFIX):
            continue
        parts = [part.lower() for part in name[len(OVERRIDE_ENV_PREFIX) :].split("__") if part]
        if len(parts) < 2:
            logger.warning("Ignoring %s: expected %sSECTION__KEY", name, OVERRIDE_ENV_PREFIX)
            continue
        overrides[".".join(parts)] = yaml.safe_load(raw) if raw.strip() else raw
    return overrides


def load_config(
    config_path: Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    environ = os.environ if environ is None else environ
    if config_path is None and environ.get(CONFIG_FILE_ENV):
        config_path = Path(environ[CONFIG_FILE_ENV]).expanduser()

    layers: list[Mapping[str, Any]] = [_read_mapping(defaults_path())]
    if config_path is not None:
        logger.debug("Loading config file %s", config_path)
        layers.append(_read_mapping(config_path))
    layers.append(_nest(env_overrides(environ)))
    layers.append(_nest(cli_overrides or {}))

    merged: dict[str, Any] = {}
    for layer in layers:
        merged = _merge(merged, layer)
    return AppConfig.model_validate(merged)


def teams_dir(config: AppConfig) -> Path:
    return Path(config.teams.teams_dir).expanduser()


def scratch_dir(config: AppConfig) -> Path:
    return Path(config.teams.scratch_dir).expanduser()
