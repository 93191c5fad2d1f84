"""
Configuration loader — reads targets.yml into domain models.

It reads YAML, validates against the Pydantic schemas in
``src.core.models.config`` and returns a typed ``DeployConfig``.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from src.core.models.config import DeployConfig, TargetConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("targets.yml", "targets.yaml")


class ConfigError(Exception):
    """Raised when the targets configuration is invalid or missing."""


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for targets.yml starting from the given directory, walking up.

    Returns:
        Path to the config file, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        for name in CONFIG_FILENAMES:
            candidate = current / name
            if candidate.is_file():
                return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(path: Path | None = None) -> DeployConfig:
    """Load and validate the targets configuration.

    Args:
        path: Explicit path to targets.yml. If None, searches upward.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(
            f"No {CONFIG_FILENAMES[0]} found. Create one or specify --config."
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading targets config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        config = DeployConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid targets configuration: {e}") from e

    logger.info("Loaded %d target(s) from %s", len(config.targets), path)
    return config


def get_target_config(config: DeployConfig, name: str) -> TargetConfig:
    """Look up a target by name.

    Raises:
        ConfigError: If no target has that name.
    """
    target = config.get_target(name)
    if target is None:
        known = ", ".join(config.target_names) or "none"
        raise ConfigError(f"Unknown target '{name}' (configured: {known})")
    return target
