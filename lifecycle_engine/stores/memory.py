"""
In-memory stores.

Used by tests, the simulator CLI and the default API container. Every
mutation happens under a ``threading.Lock``; ``UserFSMState`` records are
frozen and replaced whole, so readers never observe a half-applied commit.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from lifecycle_engine.conditions.context import UserContextSnapshot, build_context
from lifecycle_engine.fsm.models import FSMTransition, FSMVersion, UserFSMState
from lifecycle_engine.rules.models import Rule, RuleTrigger, parse_trigger
from lifecycle_engine.stores.errors import (
    StateCommitConflictError,
    UserNotFoundError,
    VersionNotFoundError,
)


class InMemoryContextProvider:
    """
    Context provider over raw user records.

    Records are converted with ``build_context`` at read time so elapsed
    fields are computed against the provider's clock. Snapshots can also be
    stored directly with ``set_context``.
    """

    def __init__(
        self,
        records: Optional[Iterable[Mapping[str, Any]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._lock = threading.Lock()
        self._records: Dict[str, Union[Mapping[str, Any], UserContextSnapshot]] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        for record in records or ():
            self.add_user(record)

    def add_user(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            self._records[str(record["id"])] = dict(record)

    def set_context(self, user_id: str, snapshot: UserContextSnapshot) -> None:
        with self._lock:
            self._records[str(user_id)] = snapshot

    def user_ids(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def get_context(self, user_id: str) -> UserContextSnapshot:
        with self._lock:
            record = self._records.get(str(user_id))
        if record is None:
            raise UserNotFoundError(str(user_id))
        if isinstance(record, UserContextSnapshot):
            return record
        return build_context(record, now=self._clock())


class InMemoryRuleStore:
    """Rules kept in creation order."""

    def __init__(self, rules: Optional[Iterable[Union[Rule, Mapping[str, Any]]]] = None):
        self._lock = threading.Lock()
        self._rules: List[Rule] = []
        for rule in rules or ():
            self.add(rule)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "InMemoryRuleStore":
        """
        Load rules from a YAML file.

        The file holds either a list of rules or a mapping with a ``rules`` key.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, Mapping):
            data = data.get("rules") or []
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a list of rules")
        return cls(data)

    def add(self, rule: Union[Rule, Mapping[str, Any]]) -> Rule:
        if not isinstance(rule, Rule):
            rule = Rule.from_dict(rule)
        with self._lock:
            self._rules.append(rule)
        return rule

    def all(self) -> List[Rule]:
        with self._lock:
            return list(self._rules)

    def list_active(self, trigger: Union[RuleTrigger, str]) -> List[Rule]:
        trigger = parse_trigger(trigger)
        with self._lock:
            return [r for r in self._rules if r.trigger is trigger and r.is_active]


class InMemoryVersionStore:
    """FSM versions; also serves transitions."""

    def __init__(self, versions: Optional[Iterable[Union[FSMVersion, Mapping[str, Any]]]] = None):
        self._lock = threading.Lock()
        self._versions: Dict[str, FSMVersion] = {}
        for version in versions or ():
            self.add_version(version)

    def add_version(self, version: Union[FSMVersion, Mapping[str, Any]]) -> FSMVersion:
        if not isinstance(version, FSMVersion):
            version = FSMVersion.from_dict(version)
        with self._lock:
            self._versions[version.id] = version
        return version

    def get_version(self, version_id: str) -> FSMVersion:
        with self._lock:
            version = self._versions.get(str(version_id))
        if version is None:
            raise VersionNotFoundError(str(version_id))
        return version

    def get_active_version(self) -> Optional[FSMVersion]:
        with self._lock:
            for version in self._versions.values():
                if version.is_active:
                    return version
        return None

    def list_versions(self) -> List[FSMVersion]:
        with self._lock:
            return list(self._versions.values())

    def activate(self, version_id: str) -> FSMVersion:
        version_id = str(version_id)
        with self._lock:
            if version_id not in self._versions:
                raise VersionNotFoundError(version_id)
            self._versions = {
                vid: replace(v, is_active=(vid == version_id))
                for vid, v in self._versions.items()
            }
            return self._versions[version_id]

    def list_transitions(
        self, version_id: str, from_state_id: Optional[str] = None
    ) -> List[FSMTransition]:
        version = self.get_version(version_id)
        if from_state_id is None:
            return list(version.transitions)
        return version.transitions_from(from_state_id)


class InMemoryStateStore:
    """UserFSMState rows keyed by (user, version)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: Dict[Tuple[str, str], UserFSMState] = {}

    def get_current_state(self, user_id: str, version_id: str) -> Optional[UserFSMState]:
        with self._lock:
            return self._states.get((str(user_id), str(version_id)))

    def commit_transition(
        self,
        user_id: str,
        version_id: str,
        new_state_id: str,
        now: datetime,
        expected_state_id: Optional[str] = None,
    ) -> UserFSMState:
        key = (str(user_id), str(version_id))
        record = UserFSMState(
            user_id=key[0],
            version_id=key[1],
            state_id=str(new_state_id),
            entered_at=now,
        )
        with self._lock:
            if expected_state_id is not None:
                current = self._states.get(key)
                actual = current.state_id if current else None
                if actual != expected_state_id:
                    raise StateCommitConflictError(key[0], key[1], expected_state_id, actual)
            self._states[key] = record
        return record

    def count_by_state(self, version_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for (_, vid), state in self._states.items():
                if vid == str(version_id):
                    counts[state.state_id] = counts.get(state.state_id, 0) + 1
        return counts

    def users_in_state(self, version_id: str, state_id: str) -> List[str]:
        with self._lock:
            return [
                uid for (uid, vid), state in self._states.items()
                if vid == str(version_id) and state.state_id == str(state_id)
            ]


__all__ = [
    "InMemoryContextProvider",
    "InMemoryRuleStore",
    "InMemoryVersionStore",
    "InMemoryStateStore",
]
