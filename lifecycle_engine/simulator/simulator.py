"""
Rule simulator (dry run).

Runs the exact evaluation path the live engine uses and never dispatches
anything. The context can be synthetic (mapping or JSON text) or fetched
from the live context provider.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from lifecycle_engine.conditions.context import UserContextSnapshot
from lifecycle_engine.conditions.payload import (
    BOOLEAN_FIELDS,
    DATETIME_FIELDS,
    NUMERIC_FIELDS,
    TAG_FIELDS,
    ContextPayload,
    field_for_key,
)
from lifecycle_engine.conditions.trace import EvaluationTrace, TraceCollector
from lifecycle_engine.rules.engine import RuleMatch, RulesEngine
from lifecycle_engine.rules.models import RuleTrigger, parse_trigger
from lifecycle_engine.settings import settings

ContextInput = Union[UserContextSnapshot, Mapping[str, Any], str, bytes]


class InvalidContextError(ValueError):
    """Raised when the structured input given as a context is malformed."""

    def __init__(self, reason: str, payload: Any = None):
        self.reason = reason
        self.payload = payload
        super().__init__(f"Invalid context: {reason}")


def parse_context(context: Any, max_bytes: Optional[int] = None) -> UserContextSnapshot:
    """
    Turn simulator input into a snapshot.

    Accepts a snapshot, a mapping, or JSON text holding an object. Mappings
    and JSON are validated with ContextPayload.

    Raises:
        InvalidContextError: For anything else, oversized input, bad JSON,
            or values the snapshot cannot hold
    """
    if isinstance(context, UserContextSnapshot):
        return context

    if max_bytes is None:
        max_bytes = int(settings.get_nested("simulator.max_context_bytes", 65536))

    try:
        if isinstance(context, (str, bytes)):
            if len(context) > max_bytes:
                raise InvalidContextError(f"context exceeds {max_bytes} bytes")
            payload = ContextPayload.model_validate_json(context)
        else:
            if isinstance(context, Mapping):
                _check_size(context, max_bytes)
            payload = ContextPayload.model_validate(context)
    except ValidationError as e:
        raise InvalidContextError("; ".join(_reasons(e)), context) from e
    return UserContextSnapshot.from_payload(payload)


def _check_size(context: Mapping[str, Any], max_bytes: int) -> None:
    try:
        size = len(json.dumps(context, default=str))
    except (TypeError, ValueError) as e:
        raise InvalidContextError(f"context is not serialisable: {e}", context) from e
    if size > max_bytes:
        raise InvalidContextError(f"context exceeds {max_bytes} bytes")


_EXPECTED = {
    **{name: "a number" for name in NUMERIC_FIELDS},
    **{name: "a boolean" for name in BOOLEAN_FIELDS},
    **{name: "a list or a comma-separated string" for name in TAG_FIELDS},
    **{name: "an ISO timestamp" for name in DATETIME_FIELDS},
}


def _reasons(error: ValidationError) -> List[str]:
    """One readable line per offending field, in payload order."""
    reasons: List[str] = []
    for item in error.errors():
        loc = item.get("loc") or ()
        if item["type"] == "json_invalid":
            reason = f"malformed JSON: {item['msg']}"
        elif not loc:
            reason = f"expected a JSON object, got {type(item.get('input')).__name__}"
        else:
            name = field_for_key(str(loc[0])) or str(loc[0])
            expected = _EXPECTED.get(name)
            if expected is not None:
                reason = f"{name} must be {expected}, got {item.get('input')!r}"
            else:
                reason = f"{name}: {item['msg']}"
        if reason not in reasons:
            reasons.append(reason)
    return reasons


@dataclass
class SimulationResult:
    trigger: RuleTrigger
    total_candidates: int
    matched_rules: List[RuleMatch] = field(default_factory=list)
    traces: List[EvaluationTrace] = field(default_factory=list)

    @property
    def matched_codes(self) -> List[str]:
        return [m.rule.code for m in self.matched_rules]

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "trigger": self.trigger.value,
            "totalCandidates": self.total_candidates,
            "matchedRules": [
                {k: v for k, v in m.to_dict().items() if k != "trace"}
                for m in self.matched_rules
            ],
        }
        if self.traces:
            result["traces"] = [t.to_dict() for t in self.traces]
        return result


class Simulator:
    """
    Dry-run wrapper around a RulesEngine.

    Example:
        simulator = Simulator(engine)
        result = simulator.simulate("LOW_BALANCE", {"credits": 15})
        result.matched_codes  # ['low_balance_offer']
    """

    def __init__(self, engine: RulesEngine):
        self.engine = engine

    def simulate(
        self,
        trigger: Union[RuleTrigger, str],
        context: ContextInput,
        trace: bool = False,
    ) -> SimulationResult:
        """
        Which rules would fire for this context.

        Raises:
            UnknownTriggerError: Unknown trigger
            InvalidContextError: Malformed context
        """
        trigger = parse_trigger(trigger)
        ctx = parse_context(context)
        collector = TraceCollector() if trace else None
        candidates = self.engine.candidates(trigger)
        matches = self.engine.evaluate(trigger, ctx, collector, candidates=candidates)
        return SimulationResult(
            trigger=trigger,
            total_candidates=len(candidates),
            matched_rules=matches,
            traces=collector.get_traces() if collector is not None else [],
        )

    def simulate_for_user(
        self,
        trigger: Union[RuleTrigger, str],
        user_id: str,
        trace: bool = False,
    ) -> SimulationResult:
        """Simulate with the live context of an existing user."""
        trigger = parse_trigger(trigger)
        if self.engine.context_provider is None:
            raise RuntimeError("Simulator engine has no context provider")
        ctx = self.engine.context_provider.get_context(str(user_id))
        return self.simulate(trigger, ctx, trace=trace)


__all__ = [
    "InvalidContextError",
    "parse_context",
    "SimulationResult",
    "Simulator",
]
