"""
Rule and action models.

A rule reacts to one trigger, carries a ConditionSet and an ordered list of
actions. Rules are loaded from the rule store (or a YAML file for the
simulator CLI) through ``Rule.from_dict``.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from lifecycle_engine.conditions.base import ConditionSet
from lifecycle_engine.conditions.formula import parse_formula


class RuleTrigger(str, Enum):
    """Discrete events a rule can react to."""
    BOT_START = "BOT_START"
    GENERATION_REQUESTED = "GENERATION_REQUESTED"
    GENERATION_COMPLETED = "GENERATION_COMPLETED"
    CREDITS_CHANGED = "CREDITS_CHANGED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    TIME = "TIME"
    ADMIN_EVENT = "ADMIN_EVENT"
    OVERLAY_ACTIVATED = "OVERLAY_ACTIVATED"
    OVERLAY_EXPIRED = "OVERLAY_EXPIRED"
    STATE_CHANGED = "STATE_CHANGED"
    REFERRAL_INVITE = "REFERRAL_INVITE"
    REFERRAL_PAID = "REFERRAL_PAID"
    STREAK_REACHED = "STREAK_REACHED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    CHANNEL_SUBSCRIPTION = "CHANNEL_SUBSCRIPTION"
    LOW_BALANCE = "LOW_BALANCE"


class UnknownTriggerError(ValueError):
    """Raised when a trigger name is not a RuleTrigger."""

    def __init__(self, trigger: Any):
        self.trigger = trigger
        super().__init__(f"Unknown trigger {trigger!r}")


def parse_trigger(value: Any) -> RuleTrigger:
    """
    Parse a trigger name (case-insensitive).

    Raises:
        UnknownTriggerError: If the value is not a known trigger
    """
    if isinstance(value, RuleTrigger):
        return value
    if not isinstance(value, str):
        raise UnknownTriggerError(value)
    try:
        return RuleTrigger(value.strip().upper())
    except ValueError:
        raise UnknownTriggerError(value) from None


def _as_config(value: Any) -> Dict[str, Any]:
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, Mapping):
        raise ValueError(f"action config must be an object, got {type(value).__name__}")
    return dict(value)


@dataclass(frozen=True)
class Action:
    """
    One side-effecting step.

    Attributes:
        type: Handler key (e.g. SEND_MESSAGE, TAG_USER)
        config: Handler-specific settings
        order: Execution order, ascending
    """
    type: str
    config: Dict[str, Any] = field(default_factory=dict, hash=False)
    order: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Action":
        return cls(
            type=str(data.get("type", "")).strip().upper(),
            config=_as_config(data.get("config")),
            order=int(data.get("order") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "config": dict(self.config), "order": self.order}


def ordered_actions(actions: Any) -> Tuple[Action, ...]:
    """Actions sorted by ascending order; equal orders keep their input order."""
    parsed = [a if isinstance(a, Action) else Action.from_dict(a) for a in actions or ()]
    return tuple(sorted(parsed, key=lambda a: a.order))


def _as_conditions(value: Any) -> ConditionSet:
    if isinstance(value, str):
        return parse_formula(value)
    return ConditionSet.coerce(value)


@dataclass(frozen=True)
class Rule:
    """
    An automation rule.

    ``conditions`` accepts flat stored rows, a ConditionSet or a formula
    string when built through ``from_dict``.
    """
    code: str
    trigger: RuleTrigger
    priority: int = 0
    is_active: bool = True
    conditions: ConditionSet = field(default_factory=ConditionSet)
    actions: Tuple[Action, ...] = ()
    id: Optional[str] = None
    name: str = ""
    group: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "trigger", parse_trigger(self.trigger))
        object.__setattr__(self, "conditions", _as_conditions(self.conditions))
        object.__setattr__(self, "actions", ordered_actions(self.actions))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Rule":
        """
        Build a rule from a stored record.

        Raises:
            UnknownTriggerError: If the trigger is not known
            FormulaSyntaxError: If ``conditions`` is a malformed formula
        """
        is_active = data.get("isActive", data.get("is_active", True))
        rule_id = data.get("id")
        return cls(
            id=str(rule_id) if rule_id is not None else None,
            code=str(data.get("code") or rule_id or ""),
            name=str(data.get("name") or ""),
            trigger=data.get("trigger"),
            priority=int(data.get("priority") or 0),
            is_active=bool(is_active),
            conditions=data.get("conditions"),
            actions=data.get("actions"),
            group=data.get("group"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "trigger": self.trigger.value,
            "priority": self.priority,
            "isActive": self.is_active,
            "conditions": self.conditions.to_list(),
            "actions": [a.to_dict() for a in self.actions],
            "group": self.group,
        }


__all__ = [
    "RuleTrigger",
    "UnknownTriggerError",
    "parse_trigger",
    "Action",
    "ordered_actions",
    "Rule",
]
