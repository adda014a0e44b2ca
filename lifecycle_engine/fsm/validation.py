"""
FSM version validation.

Configuration problems are reported as warnings; the selector tolerates all
of them at runtime (a version without an initial state just never places
users, a TIMEOUT transition without a timeout is never eligible, ...).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from lifecycle_engine.conditions.fields import field_registry
from lifecycle_engine.fsm.models import FSMVersion, TriggerType
from lifecycle_engine.logger import logger as event_logger


@dataclass
class ValidationIssue:
    code: str
    message: str
    state_id: str = ""
    transition_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "stateId": self.state_id,
            "transitionId": self.transition_id,
        }


@dataclass
class ValidationResult:
    """
    Result of validate_version().

    Attributes:
        warnings: Configuration problems found
        checked_states: Number of states checked
        checked_transitions: Number of transitions checked
    """
    version_id: str
    warnings: List[ValidationIssue] = field(default_factory=list)
    checked_states: int = 0
    checked_transitions: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.warnings

    def add(self, code: str, message: str, state_id: str = "", transition_id: str = "") -> None:
        self.warnings.append(ValidationIssue(code, message, state_id, transition_id))

    def codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "versionId": self.version_id,
            "isClean": self.is_clean,
            "checkedStates": self.checked_states,
            "checkedTransitions": self.checked_transitions,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def validate_version(version: FSMVersion, log: bool = True) -> ValidationResult:
    """
    Check a version for configuration problems.

    Warning codes: ``no_initial_state``, ``multiple_initial_states``,
    ``duplicate_state_name``, ``terminal_has_transitions``,
    ``unknown_from_state``, ``unknown_to_state``, ``missing_timeout``,
    ``missing_time_from``, ``missing_trigger_event``, ``unknown_field``.
    """
    result = ValidationResult(
        version_id=version.id,
        checked_states=len(version.states),
        checked_transitions=len(version.transitions),
    )

    initial = version.initial_states()
    if not initial:
        result.add("no_initial_state", "Version has no initial state")
    elif len(initial) > 1:
        ids = ", ".join(s.id for s in initial)
        result.add(
            "multiple_initial_states",
            f"Version has {len(initial)} initial states ({ids}); "
            f"{version.initial_state.id} is used",
        )

    seen_names = set()
    for state in version.states:
        if state.name in seen_names:
            result.add("duplicate_state_name", f"State name '{state.name}' is used twice", state.id)
        seen_names.add(state.name)

    state_ids = {s.id for s in version.states}
    for t in version.transitions:
        source = version.state(t.from_state_id)
        if source is None:
            result.add("unknown_from_state", f"Transition leaves unknown state '{t.from_state_id}'",
                       transition_id=t.id)
        elif source.is_terminal:
            result.add("terminal_has_transitions",
                       f"Terminal state '{source.name}' has an outgoing transition",
                       state_id=source.id, transition_id=t.id)
        if t.to_state_id not in state_ids:
            result.add("unknown_to_state", f"Transition targets unknown state '{t.to_state_id}'",
                       transition_id=t.id)

        if t.trigger_type is TriggerType.TIMEOUT and t.timeout_minutes is None:
            result.add("missing_timeout", "TIMEOUT transition without timeoutMinutes", transition_id=t.id)
        elif t.trigger_type is TriggerType.TIME and t.time_from is None:
            result.add("missing_time_from", "TIME transition without timeFrom", transition_id=t.id)
        elif t.trigger_type is TriggerType.EVENT and not t.trigger_event:
            result.add("missing_trigger_event", "EVENT transition without triggerEvent", transition_id=t.id)

        for name in t.conditions.fields():
            if not field_registry.is_resolvable(name):
                result.add("unknown_field",
                           f"Condition field '{name}' is not a known field (extra lookup only)",
                           transition_id=t.id)

    if log:
        for warning in result.warnings:
            event_logger.event(
                "fsm_config_warning",
                version_id=version.id,
                code=warning.code,
                warning=warning.message,
            )
    return result


__all__ = [
    "ValidationIssue",
    "ValidationResult",
    "validate_version",
]
