"""
Unified configuration loader for the consent engine.

Loads config.yaml and provides defaults for engine assembly.

Precedence (lowest to highest):
    1. Hardcoded Python fallbacks (always present)
    2. config.yaml sections (project-level settings)
    3. Environment variables CONSENT_ENGINE_* (container-level overrides)
    4. Explicit arguments passed to build_engine()
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml


# Search order for config file
def _config_search_paths() -> List[str]:
    return [
        os.environ.get("CONSENT_ENGINE_CONFIG", ""),
        "config/config.yaml",
        str(Path(__file__).parent / "config.yaml"),
    ]


_cached_config: Optional[Dict] = None


def _find_config_file() -> Optional[Path]:
    """Find config.yaml from search paths."""
    for path_str in _config_search_paths():
        if not path_str:
            continue
        p = Path(path_str)
        if p.is_file():
            return p
    return None


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and cache the full config.yaml.

    Args:
        config_path: Optional explicit path. If None, uses search order.

    Returns:
        Full parsed YAML dict. Returns empty dict if no config found.
    """
    global _cached_config

    if _cached_config is not None and config_path is None:
        return _cached_config

    if config_path:
        p = Path(config_path)
    else:
        p = _find_config_file()

    if p is None or not p.is_file():
        _cached_config = {}
        return _cached_config

    with open(p, "r", encoding="utf-8") as f:
        _cached_config = yaml.safe_load(f) or {}

    return _cached_config


def reload_config():
    """Force reload of config (clears cache)."""
    global _cached_config
    _cached_config = None


def get_full_config() -> Dict[str, Any]:
    """Return the complete parsed config.yaml as a nested dict."""
    return load_config()


def _as_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def _apply_env(
    defaults: Dict[str, Any], env_mapping: Dict[str, Tuple[str, Callable[[str], Any]]]
) -> Dict[str, Any]:
    for env_var, (key, converter) in env_mapping.items():
        val = os.environ.get(env_var)
        if val is not None:
            try:
                defaults[key] = converter(val)
            except (ValueError, TypeError):
                pass
    return defaults


def _overlay(defaults: Dict[str, Any], section: Dict[str, Any]) -> Dict[str, Any]:
    for key in defaults:
        if section.get(key) is not None:
            defaults[key] = section[key]
    return defaults


# =============================================================================
# Sections
# =============================================================================


def get_storage_config(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """SQLite location and lock timeout."""
    cfg = load_config() if cfg is None else cfg
    defaults = {"db_path": "data/consent.db", "busy_timeout": 5.0}
    _overlay(defaults, cfg.get("storage", {}) or {})
    return _apply_env(
        defaults,
        {
            "CONSENT_ENGINE_DB_PATH": ("db_path", str),
            "CONSENT_ENGINE_BUSY_TIMEOUT": ("busy_timeout", float),
        },
    )


def get_cache_config(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    cfg = load_config() if cfg is None else cfg
    defaults = {"ttl_seconds": 300, "max_size": 10000}
    _overlay(defaults, cfg.get("cache", {}) or {})
    return _apply_env(
        defaults,
        {
            "CONSENT_ENGINE_CACHE_TTL": ("ttl_seconds", float),
            "CONSENT_ENGINE_CACHE_SIZE": ("max_size", int),
        },
    )


def get_webhook_defaults(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Webhook delivery settings, including the default retry policy.

    Returns:
        Dict with timeout_seconds, max_workers, poll_interval and retry.
    """
    cfg = load_config() if cfg is None else cfg
    section = cfg.get("webhooks", {}) or {}
    defaults = {"timeout_seconds": 5.0, "max_workers": 8, "poll_interval": 1.0}
    _overlay(defaults, section)

    retry = {
        "strategy": "exponential",
        "max_attempts": 5,
        "initial_delay_seconds": 1.0,
        "multiplier": 2.0,
        "max_delay_seconds": 300.0,
    }
    _overlay(retry, section.get("retry", {}) or {})
    _apply_env(
        retry,
        {
            "CONSENT_ENGINE_WEBHOOK_MAX_ATTEMPTS": ("max_attempts", int),
            "CONSENT_ENGINE_WEBHOOK_INITIAL_DELAY": ("initial_delay_seconds", float),
        },
    )
    defaults["retry"] = retry
    return _apply_env(
        defaults,
        {
            "CONSENT_ENGINE_WEBHOOK_TIMEOUT": ("timeout_seconds", float),
            "CONSENT_ENGINE_WEBHOOK_WORKERS": ("max_workers", int),
        },
    )


def get_lifecycle_config(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    cfg = load_config() if cfg is None else cfg
    defaults = {"sweep_interval": 3600, "default_region": None}
    _overlay(defaults, cfg.get("lifecycle", {}) or {})
    return _apply_env(
        defaults,
        {
            "CONSENT_ENGINE_SWEEP_INTERVAL": ("sweep_interval", float),
            "CONSENT_ENGINE_DEFAULT_REGION": ("default_region", str),
        },
    )


def get_privacy_config(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Hash salt for identifiers and the optional Fernet key for exports."""
    cfg = load_config() if cfg is None else cfg
    defaults = {"hash_salt": "", "export_key": None, "encrypt_exports": False}
    _overlay(defaults, cfg.get("privacy", {}) or {})
    return _apply_env(
        defaults,
        {
            "CONSENT_ENGINE_HASH_SALT": ("hash_salt", str),
            "CONSENT_ENGINE_EXPORT_KEY": ("export_key", str),
            "CONSENT_ENGINE_ENCRYPT_EXPORTS": ("encrypt_exports", _as_bool),
        },
    )


def get_logging_config(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    cfg = load_config() if cfg is None else cfg
    defaults = {"level": "INFO", "format": "json", "file": None}
    _overlay(defaults, cfg.get("logging", {}) or {})
    return _apply_env(
        defaults,
        {
            "CONSENT_ENGINE_LOG_LEVEL": ("level", str),
            "CONSENT_ENGINE_LOG_FORMAT": ("format", str),
        },
    )


def get_category_definitions(cfg: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Category entries as dicts accepted by ConsentCategory."""
    cfg = load_config() if cfg is None else cfg
    return list(cfg.get("categories", []) or [])


def get_region_definitions(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Dict[str, Any]]:
    """Regional rulesets keyed by region code."""
    cfg = load_config() if cfg is None else cfg
    return dict(cfg.get("regions", {}) or {})


def get_subscription_definitions(cfg: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Webhook subscriptions; secrets may be given as ``secret_env`` names."""
    cfg = load_config() if cfg is None else cfg
    subscriptions = []
    for entry in cfg.get("subscriptions", []) or []:
        entry = dict(entry)
        secret_env = entry.pop("secret_env", None)
        if secret_env and not entry.get("secret"):
            entry["secret"] = os.environ.get(secret_env, "")
        subscriptions.append(entry)
    return subscriptions


def get_engine_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Every section with fallbacks and environment overrides applied.

    Args:
        config_path: Optional explicit YAML path.

    Returns:
        Dict keyed by section name.
    """
    cfg = load_config(config_path)
    return {
        "storage": get_storage_config(cfg),
        "cache": get_cache_config(cfg),
        "webhooks": get_webhook_defaults(cfg),
        "lifecycle": get_lifecycle_config(cfg),
        "privacy": get_privacy_config(cfg),
        "logging": get_logging_config(cfg),
        "categories": get_category_definitions(cfg),
        "regions": get_region_definitions(cfg),
        "subscriptions": get_subscription_definitions(cfg),
    }
