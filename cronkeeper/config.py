from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from cronkeeper.errors import ConfigError

DEFAULT_CONFIG = "cronkeeper.yaml"
DEFAULT_STORE_PATH = "jobs.json"
DEFAULT_TICK_SECONDS = 1.0
KNOWN_KEYS = {"store_path", "tick_seconds", "log_file"}


@dataclass(frozen=True)
class Settings:
    store_path: Path
    tick_seconds: float
    log_file: Optional[Path]


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_number(value: Any, field_path: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    return float(value)


def _resolve_path(value: str, config_dir: Path) -> Path:
    raw = Path(value).expanduser()
    return raw if raw.is_absolute() else (config_dir / raw).resolve()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Error: Failed to read {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_settings(payload: Dict[str, Any], config_dir: Path) -> Settings:
    unknown = set(payload.keys()) - KNOWN_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")

    store_raw = payload.get("store_path", DEFAULT_STORE_PATH)
    store_path = _resolve_path(ensure_str(store_raw, "store_path"), config_dir)
    tick_seconds = ensure_number(payload.get("tick_seconds"), "tick_seconds", DEFAULT_TICK_SECONDS)

    log_file: Optional[Path] = None
    if payload.get("log_file") is not None:
        log_file = _resolve_path(ensure_str(payload["log_file"], "log_file"), config_dir)

    return Settings(store_path=store_path, tick_seconds=tick_seconds, log_file=log_file)


def load_settings(config_path: Path, required: bool = True) -> Settings:
    """Read settings from ``config_path``.

    When the file is missing and ``required`` is False, defaults relative to
    the config file's directory are returned instead of raising.
    """
    if not config_path.exists():
        if required:
            raise ConfigError(f"Error: Config file not found: {config_path}")
        return parse_settings({}, config_path.parent)
    return parse_settings(_load_config_payload(config_path), config_path.parent)
