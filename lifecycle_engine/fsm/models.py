"""
FSM data model: versions, states, transitions and the per-user state pointer.

Versions are immutable snapshots of a lifecycle graph as loaded from the
version store; ``FSMVersion.from_dict`` accepts the camelCase records the
admin layer stores (``fromStateId``, ``triggerType``, ``timeoutMinutes``...).
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from lifecycle_engine.conditions.base import ConditionSet
from lifecycle_engine.conditions.formula import parse_formula
from lifecycle_engine.rules.matcher import id_sort_key
from lifecycle_engine.rules.models import Action, ordered_actions


class TriggerType(str, Enum):
    """How a transition becomes eligible."""
    EVENT = "EVENT"
    TIME = "TIME"
    TIMEOUT = "TIMEOUT"


class UnknownTriggerTypeError(ValueError):
    """Raised when a transition declares an unknown trigger type."""

    def __init__(self, trigger_type: Any):
        self.trigger_type = trigger_type
        super().__init__(f"Unknown trigger type {trigger_type!r}")


def parse_trigger_type(value: Any) -> TriggerType:
    if isinstance(value, TriggerType):
        return value
    try:
        return TriggerType(str(value).strip().upper())
    except ValueError:
        raise UnknownTriggerTypeError(value) from None


def parse_time_of_day(value: Any) -> Optional[time]:
    """Parse ``HH:MM`` or ``HH:MM:SS``; None and empty text mean unset."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value).strip())


def _first(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class FSMState:
    id: str
    name: str
    is_initial: bool = False
    is_terminal: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FSMState":
        state_id = _first(data, "id", "name")
        return cls(
            id=str(state_id),
            name=str(_first(data, "name", default=state_id)),
            is_initial=bool(_first(data, "isInitial", "is_initial", default=False)),
            is_terminal=bool(_first(data, "isTerminal", "is_terminal", default=False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isInitial": self.is_initial,
            "isTerminal": self.is_terminal,
        }


@dataclass(frozen=True)
class FSMTransition:
    """
    Edge between two states.

    Attributes:
        trigger_event: Event name, EVENT transitions only
        time_from: Start of the daily window, TIME transitions only
        timeout_minutes: Minimum time in the source state, TIMEOUT transitions only
    """
    id: str
    from_state_id: str
    to_state_id: str
    trigger_type: TriggerType = TriggerType.EVENT
    trigger_event: Optional[str] = None
    time_from: Optional[time] = None
    timeout_minutes: Optional[int] = None
    priority: int = 0
    conditions: ConditionSet = field(default_factory=ConditionSet)
    actions: Tuple[Action, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "trigger_type", parse_trigger_type(self.trigger_type))
        object.__setattr__(self, "time_from", parse_time_of_day(self.time_from))
        conditions = self.conditions
        if isinstance(conditions, str):
            conditions = parse_formula(conditions)
        object.__setattr__(self, "conditions", ConditionSet.coerce(conditions))
        object.__setattr__(self, "actions", ordered_actions(self.actions))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FSMTransition":
        timeout = _first(data, "timeoutMinutes", "timeout_minutes")
        return cls(
            id=str(data.get("id")),
            from_state_id=str(_first(data, "fromStateId", "from_state_id", "fromState")),
            to_state_id=str(_first(data, "toStateId", "to_state_id", "toState")),
            trigger_type=_first(data, "triggerType", "trigger_type", default="EVENT"),
            trigger_event=_opt_str(_first(data, "triggerEvent", "trigger_event")),
            time_from=_first(data, "timeFrom", "time_from"),
            timeout_minutes=int(timeout) if timeout not in (None, "") else None,
            priority=int(_first(data, "priority", default=0)),
            conditions=data.get("conditions"),
            actions=data.get("actions"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fromStateId": self.from_state_id,
            "toStateId": self.to_state_id,
            "triggerType": self.trigger_type.value,
            "triggerEvent": self.trigger_event,
            "timeFrom": self.time_from.strftime("%H:%M") if self.time_from else None,
            "timeoutMinutes": self.timeout_minutes,
            "priority": self.priority,
            "conditions": self.conditions.to_list(),
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass(frozen=True)
class FSMVersion:
    """A versioned lifecycle graph."""
    id: str
    name: str = ""
    is_active: bool = False
    states: Tuple[FSMState, ...] = ()
    transitions: Tuple[FSMTransition, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FSMVersion":
        return cls(
            id=str(data.get("id")),
            name=str(data.get("name") or ""),
            is_active=bool(_first(data, "isActive", "is_active", default=False)),
            states=tuple(
                s if isinstance(s, FSMState) else FSMState.from_dict(s)
                for s in data.get("states") or ()
            ),
            transitions=tuple(
                t if isinstance(t, FSMTransition) else FSMTransition.from_dict(t)
                for t in data.get("transitions") or ()
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isActive": self.is_active,
            "states": [s.to_dict() for s in self.states],
            "transitions": [t.to_dict() for t in self.transitions],
        }

    def state(self, state_id: str) -> Optional[FSMState]:
        for s in self.states:
            if s.id == state_id:
                return s
        return None

    def state_by_name(self, name: str) -> Optional[FSMState]:
        for s in self.states:
            if s.name == name:
                return s
        return None

    def initial_states(self) -> List[FSMState]:
        return [s for s in self.states if s.is_initial]

    @property
    def initial_state(self) -> Optional[FSMState]:
        """The initial state; with several, the one with the smallest id."""
        initial = self.initial_states()
        if not initial:
            return None
        return min(initial, key=lambda s: id_sort_key(s.id))

    def transitions_from(self, state_id: str) -> List[FSMTransition]:
        return [t for t in self.transitions if t.from_state_id == state_id]


@dataclass(frozen=True)
class UserFSMState:
    """Current state of one user in one version. Replaced whole on commit."""
    user_id: str
    version_id: str
    state_id: str
    entered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "versionId": self.version_id,
            "stateId": self.state_id,
            "enteredAt": self.entered_at.isoformat(),
        }


@dataclass
class CommittedTransition:
    """Result of a tick that moved a user."""
    user_id: str
    version_id: str
    transition_id: str
    from_state_id: str
    to_state_id: str
    to_state_name: str
    entered_at: datetime
    trigger: Optional[str] = None
    dispatch: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "userId": self.user_id,
            "versionId": self.version_id,
            "transitionId": self.transition_id,
            "fromStateId": self.from_state_id,
            "toStateId": self.to_state_id,
            "toStateName": self.to_state_name,
            "enteredAt": self.entered_at.isoformat(),
            "trigger": self.trigger,
        }
        if self.dispatch is not None:
            result["dispatch"] = self.dispatch.to_dict()
        return result


__all__ = [
    "TriggerType",
    "UnknownTriggerTypeError",
    "parse_trigger_type",
    "parse_time_of_day",
    "FSMState",
    "FSMTransition",
    "FSMVersion",
    "UserFSMState",
    "CommittedTransition",
]
