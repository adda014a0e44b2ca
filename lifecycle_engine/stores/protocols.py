"""
Collaborator interfaces consumed by the engine.

The engine only reads rules, versions and contexts; the single write it
performs is ``StateStore.commit_transition``, which must replace the user's
state id and entered-at timestamp in one atomic write.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from lifecycle_engine.conditions.context import UserContextSnapshot
    from lifecycle_engine.fsm.models import FSMTransition, FSMVersion, UserFSMState
    from lifecycle_engine.rules.models import Rule, RuleTrigger


@runtime_checkable
class ContextProvider(Protocol):
    def get_context(self, user_id: str) -> "UserContextSnapshot":
        """Point-in-time snapshot. Raises UserNotFoundError."""
        ...


@runtime_checkable
class RuleStore(Protocol):
    def list_active(self, trigger: "RuleTrigger") -> List["Rule"]:
        """Active rules for a trigger, in creation order."""
        ...


@runtime_checkable
class TransitionStore(Protocol):
    def list_transitions(
        self, version_id: str, from_state_id: Optional[str] = None
    ) -> List["FSMTransition"]:
        ...


@runtime_checkable
class StateStore(Protocol):
    def get_current_state(self, user_id: str, version_id: str) -> Optional["UserFSMState"]:
        ...

    def commit_transition(
        self,
        user_id: str,
        version_id: str,
        new_state_id: str,
        now: datetime,
        expected_state_id: Optional[str] = None,
    ) -> "UserFSMState":
        """
        Atomically set state id and entered-at.

        ``expected_state_id`` enables compare-and-set; a mismatch raises
        StateCommitConflictError. Pass None to create or overwrite.
        """
        ...

    def count_by_state(self, version_id: str) -> Dict[str, int]:
        ...

    def users_in_state(self, version_id: str, state_id: str) -> List[str]:
        ...


@runtime_checkable
class VersionStore(Protocol):
    def get_version(self, version_id: str) -> "FSMVersion":
        """Raises VersionNotFoundError."""
        ...

    def get_active_version(self) -> Optional["FSMVersion"]:
        ...

    def list_versions(self) -> List["FSMVersion"]:
        ...

    def activate(self, version_id: str) -> "FSMVersion":
        """Deactivate every other version and activate this one, atomically."""
        ...


__all__ = [
    "ContextProvider",
    "RuleStore",
    "TransitionStore",
    "StateStore",
    "VersionStore",
]
