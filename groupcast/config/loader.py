"""Configuration loading utilities."""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from groupcast.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".groupcast" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}. Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file (camelCase keys)."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


# legacy top-level key -> (section, key)
_LEGACY_KEYS: dict[str, tuple[str, str]] = {
    "maxSessions": ("sessions", "maxSessions"),
    "authDir": ("sessions", "authDir"),
    "qrRetries": ("connection", "challengeBudget"),
    "cacheSize": ("cache", "capacity"),
}


def _migrate_config(data: dict[str, Any]) -> dict[str, Any]:
    """Move legacy flat keys into their sections without overriding explicit values."""
    for legacy, (section, key) in _LEGACY_KEYS.items():
        if legacy not in data:
            continue
        value = data.pop(legacy)
        target = data.setdefault(section, {})
        if key not in target:
            target[key] = value
    return data
