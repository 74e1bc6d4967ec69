"""Config loading: YAML file, optional local overlay, .env."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from loguru import logger


def _deep_update(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_update(result[key], value)
        else:
            result[key] = value
    return result


def _local_overlay_path(path: Path) -> Path:
    """config.yaml -> config.local.yaml"""
    return path.with_name(f"{path.stem}.local{path.suffix}")


def load_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML mapping with SafeLoader; {} when missing or not a mapping."""
    path = Path(path)
    if not path.exists():
        logger.warning("Config file not found: {}", path)
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        logger.error("Failed to parse config {}: {}", path, exc)
        raise
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file {} has invalid structure (expected mapping)", path)
        return {}
    return data


def load_config_with_env(path: str | Path) -> dict[str, Any]:
    """Load .env, then the config file with its ``*.local.yaml`` overlay merged on top."""
    from dotenv import load_dotenv

    load_dotenv()
    path = Path(path)
    data = load_config(path)
    overlay = _local_overlay_path(path)
    if overlay.exists():
        logger.debug("Merging local config overlay {}", overlay)
        data = _deep_update(data, load_config(overlay))
    return data
