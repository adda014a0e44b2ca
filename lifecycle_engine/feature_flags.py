"""
Feature flags for the lifecycle automation engine.

Lets operators switch engine subsystems off without a deploy. The
``fsm_engine`` flag is the global retention toggle of the admin console.

Usage:
    from lifecycle_engine.feature_flags import flags

    if flags.fsm_engine:
        selector.tick_fsm(user_id)
"""

import os
from typing import Dict, List, Set

from lifecycle_engine.settings import settings

_TRUTHY = ("true", "1", "yes", "on")


def _flag(name: str, doc: str) -> property:
    return property(lambda self: self.is_enabled(name), doc=doc)


class FeatureFlags:
    """
    Feature flag store.

    Resolution order (last wins):
    - DEFAULTS
    - settings.yaml ``feature_flags`` section
    - environment variables ``FF_<NAME>``
    - runtime overrides (tests, admin toggles)
    """

    DEFAULTS: Dict[str, bool] = {
        "rules_engine": True,
        "fsm_engine": True,
        "evaluation_tracing": False,
        "bulk_precondition_check": True,
    }

    GROUPS: Dict[str, List[str]] = {
        "core": ["rules_engine", "fsm_engine"],
        "safety": ["bulk_precondition_check"],
    }

    rules_engine = _flag("rules_engine", "Rules fire on live triggers")
    fsm_engine = _flag("fsm_engine", "FSM ticks commit transitions")
    evaluation_tracing = _flag("evaluation_tracing", "Collect traces on live evaluations")
    bulk_precondition_check = _flag(
        "bulk_precondition_check", "Bulk dispatch skips users whose conditions no longer hold"
    )

    def __init__(self):
        self._base: Dict[str, bool] = {}
        self._overrides: Dict[str, bool] = {}
        self.reload()

    def reload(self) -> None:
        """Drop overrides and re-read settings and environment."""
        self._overrides.clear()
        base = dict(self.DEFAULTS)

        configured = settings.get_nested("feature_flags", {})
        if isinstance(configured, dict):
            base.update({k: v for k, v in configured.items() if isinstance(v, bool)})

        for name in base:
            raw = os.environ.get(f"FF_{name.upper()}")
            if raw is not None:
                base[name] = raw.strip().lower() in _TRUTHY
        self._base = base

    def is_enabled(self, flag: str) -> bool:
        """Effective value; unknown flags are off."""
        if flag in self._overrides:
            return self._overrides[flag]
        return self._base.get(flag, False)

    def set_override(self, flag: str, value: bool) -> None:
        self._overrides[flag] = bool(value)

    def clear_override(self, flag: str) -> None:
        self._overrides.pop(flag, None)

    def clear_all_overrides(self) -> None:
        self._overrides.clear()

    def get_all_flags(self) -> Dict[str, bool]:
        return {**self._base, **self._overrides}

    def get_enabled_flags(self) -> Set[str]:
        return {name for name, on in self.get_all_flags().items() if on}

    def is_group_enabled(self, group: str, require_all: bool = False) -> bool:
        """
        Check a flag group.

        Args:
            group: Group name
            require_all: True = every flag must be on, False = at least one
        """
        members = self.GROUPS.get(group, [])
        if not members:
            return False
        check = all if require_all else any
        return check(self.is_enabled(name) for name in members)

    def enable_group(self, group: str) -> None:
        for name in self.GROUPS.get(group, []):
            self.set_override(name, True)

    def disable_group(self, group: str) -> None:
        for name in self.GROUPS.get(group, []):
            self.set_override(name, False)

    def __repr__(self) -> str:
        return f"FeatureFlags(enabled={sorted(self.get_enabled_flags())})"


# Singleton
flags = FeatureFlags()
