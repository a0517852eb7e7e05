"""Locating and reading the meterble YAML file."""

import os
from pathlib import Path
from typing import Union

import yaml

CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"


def default_config_path() -> Path:
    """Config file used when no path is given on the command line.

    METERBLE_CONFIG names the file directly. Otherwise METERBLE_ENV selects
    config/config-<env>.yaml at the repo root ("meterble" when unset).
    """
    explicit = os.getenv("METERBLE_CONFIG")
    if explicit:
        return Path(explicit)
    env = os.getenv("METERBLE_ENV", "meterble")
    return CONFIG_DIR / f"config-{env}.yaml"


def read_config_file(config_path: Union[str, Path]) -> dict:
    """Parse a YAML config file.

    An empty file gives an empty dict.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the top level is not a mapping.
        yaml.YAMLError: If the file is invalid YAML.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a mapping of sections")
    return data
