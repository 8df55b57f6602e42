"""Runtime settings for the canvas, read from config/config.yaml.

Two views of the same settings are kept side by side: the raw mapping
from the YAML file, which get() walks by dot-path, and the AppConfig
model that config_schema builds from it. Anything the file leaves out
resolves to the schema default, so a partial file is enough.

Usage:
    from canvas_runtime.config import get, load_config

    load_config("config/config.yaml")      # once, at startup
    fee = get("escrow.fee_rate_bps")       # dot-path lookup
    cfg = get_validated_config()           # typed access
    cfg.services.latency_ticks
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config_schema import AppConfig, validate_config_dict

logger = logging.getLogger(__name__)

# Settings as loaded from YAML, and the validated model built from them
_raw: dict[str, Any] | None = None
_typed: AppConfig | None = None

DEFAULT_CONFIG_PATH: Path = Path(__file__).parent.parent / "config" / "config.yaml"


def _install(raw: dict[str, Any]) -> AppConfig:
    """Validate ``raw`` and make it the active config. Nothing changes on failure."""
    global _raw, _typed
    typed = validate_config_dict(raw)
    _raw, _typed = raw, typed
    return typed


def _ensure_loaded() -> tuple[dict[str, Any], AppConfig]:
    if _raw is None or _typed is None:
        load_config()
    if _raw is None or _typed is None:
        raise RuntimeError("Config failed to load. Call load_config() first.")
    return _raw, _typed


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Read a YAML config file, validate it, and make it active.

    With no ``config_path`` the repository's config/config.yaml is used;
    if that file is absent (an installed package, say) the schema
    defaults apply instead.

    Raises:
        FileNotFoundError: ``config_path`` was given and does not exist.
        pydantic.ValidationError: the file has unknown keys or bad values.
    """
    if config_path is None and not DEFAULT_CONFIG_PATH.exists():
        logger.debug("No config at %s, using schema defaults", DEFAULT_CONFIG_PATH)
        _install(AppConfig().model_dump())
        return _ensure_loaded()[0]

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        loaded: Any = yaml.safe_load(f)
    _install(loaded if isinstance(loaded, dict) else {})
    logger.debug("Loaded config from %s", path)
    return _ensure_loaded()[0]


def load_config_dict(config_dict: dict[str, Any]) -> AppConfig:
    """Install settings given as a mapping rather than a file."""
    return _install(dict(config_dict))


def reset_config() -> None:
    """Drop the active config; the next lookup loads the default file again."""
    global _raw, _typed
    _raw = None
    _typed = None


def get_config() -> dict[str, Any]:
    """The raw settings mapping, loading the default file on first use."""
    return _ensure_loaded()[0]


def get_validated_config() -> AppConfig:
    """The active settings as a typed AppConfig."""
    return _ensure_loaded()[1]


def _lookup(source: dict[str, Any], keys: list[str]) -> tuple[bool, Any]:
    node: Any = source
    for k in keys:
        if not isinstance(node, dict) or k not in node:
            return False, None
        node = node[k]
    return True, node


def get(key: str, default: Any = None) -> Any:
    """Look up a setting by dot-path, e.g. ``get("escrow.fee_floor_micro")``.

    The YAML value wins; otherwise the schema default; otherwise ``default``.
    """
    raw, typed = _ensure_loaded()
    keys = key.split(".")
    for source in (raw, typed.model_dump()):
        found, value = _lookup(source, keys)
        if found:
            return value
    return default


def set_config_value(key: str, value: Any) -> None:
    """Override one setting by dot-path, e.g. from a CLI flag.

    The result is validated as a whole, and the override is discarded if
    validation fails.

    Raises:
        pydantic.ValidationError: the override makes the config invalid.
    """
    raw, _ = _ensure_loaded()
    updated: dict[str, Any] = dict(raw)
    node = updated
    *parents, leaf = key.split(".")
    for k in parents:
        child = node.get(k)
        node[k] = dict(child) if isinstance(child, dict) else {}
        node = node[k]
    node[leaf] = value
    _install(updated)
