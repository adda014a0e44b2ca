"""
Rule / transition matcher.

A candidate (rule or FSM transition) passes when any of its condition
groups passes, a group passing when all its conditions hold. Candidates
without conditions always pass.

- match_all: every passing candidate, highest priority first, ties in input order
- match_one: the single winner, ties broken by the smallest candidate id
"""

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging

from lifecycle_engine.conditions.base import ConditionLike, ConditionSet
from lifecycle_engine.conditions.context import UserContextSnapshot
from lifecycle_engine.conditions.evaluator import evaluate
from lifecycle_engine.conditions.fields import FieldRegistry
from lifecycle_engine.conditions.trace import EvaluationTrace, Resolution, TraceCollector

logger = logging.getLogger(__name__)

ContextFor = Callable[[Any, UserContextSnapshot], UserContextSnapshot]


@dataclass(frozen=True)
class Match:
    """A passing candidate with its (optional) evaluation trace."""
    candidate: Any
    trace: Optional[EvaluationTrace] = None

    @property
    def priority(self) -> int:
        return getattr(self.candidate, "priority", 0)


def id_sort_key(candidate_id: Any) -> Tuple[int, int, str]:
    """Numeric ids sort numerically and before text ids; missing ids sort last."""
    if candidate_id is None:
        return (2, 0, "")
    text = str(candidate_id)
    if text.lstrip("-").isdigit():
        return (0, int(text), text)
    return (1, 0, text)


def candidate_name(candidate: Any) -> str:
    for attr in ("code", "id", "name"):
        value = getattr(candidate, attr, None)
        if value not in (None, ""):
            return str(value)
    return repr(candidate)


def condition_set_passes(
    conditions: Union[ConditionSet, Iterable[ConditionLike], None],
    ctx: UserContextSnapshot,
    trace: Optional[EvaluationTrace] = None,
    registry: Optional[FieldRegistry] = None,
) -> bool:
    """
    OR over groups, AND within a group.

    Without a trace evaluation short-circuits; with a trace every condition
    is evaluated so the trace shows the full picture.
    """
    condition_set = ConditionSet.coerce(conditions)
    if condition_set.is_empty:
        if trace is not None:
            trace.set_result(Resolution.UNCONDITIONAL)
        return True

    passed = False
    for group in condition_set:
        if trace is None:
            if all(evaluate(c, ctx, None, registry) for c in group):
                return True
            continue
        results = [evaluate(c, ctx, trace, registry) for c in group]
        group_ok = all(results)
        trace.record_group(group.group_id, group_ok)
        passed = passed or group_ok

    if trace is not None:
        trace.set_result(Resolution.MATCHED if passed else Resolution.NO_MATCH)
    return passed


def _snapshot(ctx: Union[UserContextSnapshot, Mapping[str, Any]]) -> UserContextSnapshot:
    if isinstance(ctx, UserContextSnapshot):
        return ctx
    return UserContextSnapshot.from_mapping(ctx)


def _evaluate_all(
    candidates: Sequence[Any],
    ctx: UserContextSnapshot,
    collector: Optional[TraceCollector],
    trigger: str,
    domain: str,
    registry: Optional[FieldRegistry],
    context_for: Optional[ContextFor] = None,
) -> List[Match]:
    matches = []
    for candidate in candidates:
        trace = None
        if collector is not None:
            trace = collector.create_trace(candidate_name(candidate), trigger, domain)
        candidate_ctx = context_for(candidate, ctx) if context_for else ctx
        if condition_set_passes(candidate.conditions, candidate_ctx, trace, registry):
            matches.append(Match(candidate=candidate, trace=trace))
    return matches


def match_all(
    candidates: Iterable[Any],
    ctx: Union[UserContextSnapshot, Mapping[str, Any]],
    collector: Optional[TraceCollector] = None,
    trigger: str = "",
    domain: str = "rules",
    registry: Optional[FieldRegistry] = None,
) -> List[Match]:
    """
    Evaluate every candidate independently.

    Args:
        candidates: Objects with ``conditions`` and ``priority``
        ctx: Context snapshot (or a mapping converted once)
        collector: Receives one trace per candidate when given

    Returns:
        Passing candidates sorted by descending priority (stable)
    """
    ctx = _snapshot(ctx)
    matches = _evaluate_all(list(candidates), ctx, collector, trigger, domain, registry)
    return sorted(matches, key=lambda m: -m.priority)


def match_one(
    candidates: Iterable[Any],
    ctx: Union[UserContextSnapshot, Mapping[str, Any]],
    collector: Optional[TraceCollector] = None,
    trigger: str = "",
    domain: str = "fsm",
    registry: Optional[FieldRegistry] = None,
    context_for: Optional[ContextFor] = None,
) -> Optional[Match]:
    """
    Select the single highest-priority passing candidate.

    Equal priorities resolve to the smallest ``id`` (see id_sort_key), so the
    result never depends on the order the store returned candidates in.
    ``context_for(candidate, ctx)`` may derive a per-candidate snapshot.
    """
    ctx = _snapshot(ctx)
    matches = _evaluate_all(list(candidates), ctx, collector, trigger, domain, registry, context_for)
    if not matches:
        return None
    winner = min(
        matches,
        key=lambda m: (-m.priority, id_sort_key(getattr(m.candidate, "id", None))),
    )
    if len(matches) > 1:
        logger.debug(
            "Selected %s out of %d passing candidates",
            candidate_name(winner.candidate), len(matches),
        )
    return winner


__all__ = [
    "Match",
    "id_sort_key",
    "candidate_name",
    "condition_set_passes",
    "match_all",
    "match_one",
]
