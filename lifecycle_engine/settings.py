"""
Settings loader for settings.yaml

Usage:
    from lifecycle_engine.settings import settings

    threshold = settings.context.low_balance_threshold
    window = settings.get_nested("fsm.time_window_minutes", 60)

The file named by $LIFECYCLE_SETTINGS replaces the bundled settings.yaml.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

SETTINGS_FILE = Path(__file__).parent / "settings.yaml"

# Used for every key the YAML file leaves out
DEFAULTS = {
    "logging": {
        "level": "INFO",
    },
    "context": {
        "low_balance_threshold": 20,
    },
    "fsm": {
        "time_window_minutes": 60,
        "timezone": "UTC",
        "max_immersion_depth": 50,
        "commit_lock_dir": None,
    },
    "dispatch": {
        "bulk_limit": 100,
        "batch_size": 50,
        "parallel": 1,
    },
    "simulator": {
        "max_context_bytes": 65536,
    },
    "feature_flags": {},
}

# (dotted key, check, message)
_RULES: List[Tuple[str, Callable[[Any], bool], str]] = [
    ("context.low_balance_threshold", lambda v: v >= 0, "must be >= 0"),
    ("fsm.time_window_minutes", lambda v: 0 < v <= 24 * 60, "must be between 1 and 1440"),
    ("fsm.max_immersion_depth", lambda v: v >= 1, "must be >= 1"),
    ("dispatch.bulk_limit", lambda v: v >= 1, "must be >= 1"),
    ("dispatch.batch_size", lambda v: v >= 1, "must be >= 1"),
    ("dispatch.parallel", lambda v: v >= 1, "must be >= 1"),
    ("simulator.max_context_bytes", lambda v: v >= 1, "must be >= 1"),
]


class DotDict(dict):
    """dict with attribute access; nested dicts come back wrapped too."""

    def __getattr__(self, key: str) -> Any:
        if key not in self:
            raise AttributeError(f"Setting '{key}' not found")
        value = self[key]
        return DotDict(value) if isinstance(value, dict) else value

    def __setattr__(self, key: str, value: Any) -> None:
        self[key] = value

    def get_nested(self, path: str, default: Any = None) -> Any:
        """Value at a dotted path such as 'fsm.time_window_minutes', or default."""
        node: Any = self
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node


def _merge(base: dict, override: Mapping[str, Any]) -> dict:
    """Recursive merge into a copy of base; override wins on conflicts."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, Mapping):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(filepath: Optional[Path] = None) -> DotDict:
    """
    Load settings: DEFAULTS overlaid with the YAML file.

    Args:
        filepath: Settings file (defaults to $LIFECYCLE_SETTINGS, then the
            bundled settings.yaml)

    Returns:
        DotDict with settings
    """
    if filepath is None:
        filepath = os.environ.get("LIFECYCLE_SETTINGS") or SETTINGS_FILE
    filepath = Path(filepath)

    overrides = {}
    if filepath.exists():
        with open(filepath, "r", encoding="utf-8") as f:
            overrides = yaml.safe_load(f) or {}
    else:
        logger.warning("Settings file not found: %s, using defaults", filepath)

    return DotDict(_merge(DEFAULTS, overrides))


def validate_settings(settings: DotDict) -> List[str]:
    """
    Validate settings.

    Returns:
        List of errors (empty if everything is OK)
    """
    errors = []
    for key, check, message in _RULES:
        value = settings.get_nested(key)
        if not isinstance(value, (int, float)) or not check(value):
            errors.append(f"{key} {message}")
    return errors


_settings: Optional[DotDict] = None


def get_settings() -> DotDict:
    """Global settings, loaded and validated on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
        for err in validate_settings(_settings):
            logger.error("Invalid setting: %s", err)
    return _settings


def reload_settings() -> DotDict:
    global _settings
    _settings = None
    return get_settings()


settings = get_settings()


if __name__ == "__main__":
    import json

    loaded = load_settings()
    problems = validate_settings(loaded)
    if problems:
        print("[!] ERRORS:")
        for problem in problems:
            print(f"  - {problem}")
    else:
        print("[+] All settings valid")
    print(json.dumps(loaded, indent=2, ensure_ascii=False))
