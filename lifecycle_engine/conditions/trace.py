"""
Evaluation traces for the grouped-condition engine.

Answers "why did this rule (or transition) match or not" in simulations
and, when the ``evaluation_tracing`` flag is on, in live evaluations.
A trace records every condition checked, the verdict of each group and the
candidate's final resolution.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


class Resolution(str, Enum):
    UNCONDITIONAL = "unconditional"   # no conditions at all
    MATCHED = "matched"               # some group passed
    NO_MATCH = "no_match"             # every group failed
    PENDING = "pending"


def _jsonable(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return list(value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


@dataclass
class ConditionEntry:
    """One condition as it was evaluated: stored value vs. resolved attribute."""
    field: str
    operator: str
    expected: str
    actual: Any
    result: bool
    group_id: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "field": self.field,
            "operator": self.operator,
            "expected": self.expected,
            "actual": _jsonable(self.actual),
            "result": self.result,
        }

    def to_compact_string(self) -> str:
        verdict = "PASS" if self.result else "FAIL"
        return (
            f"  [g{self.group_id}] {self.field} {self.operator} {self.expected!r}: "
            f"{verdict} (actual={self.actual!r})"
        )


@dataclass
class EvaluationTrace:
    """
    Trace for one candidate (rule code or transition id).

    ``group_results`` maps group id to verdict; ``matched_group`` is the
    first group that passed.
    """
    candidate: str
    trigger: str = ""
    domain: str = ""
    entries: List[ConditionEntry] = field(default_factory=list)
    group_results: Dict[int, bool] = field(default_factory=dict)
    resolution: Resolution = Resolution.PENDING
    matched_group: Optional[int] = None

    def record(
        self,
        field_name: str,
        operator: str,
        expected: str,
        actual: Any,
        result: bool,
        group_id: int = 0,
    ) -> None:
        self.entries.append(ConditionEntry(field_name, operator, expected, actual, result, group_id))

    def record_group(self, group_id: int, result: bool) -> None:
        self.group_results[group_id] = result
        if result and self.matched_group is None:
            self.matched_group = group_id

    def set_result(self, resolution: Resolution) -> None:
        self.resolution = resolution

    @property
    def matched(self) -> bool:
        return self.resolution in (Resolution.MATCHED, Resolution.UNCONDITIONAL)

    @property
    def conditions_checked(self) -> int:
        return len(self.entries)

    @property
    def conditions_passed(self) -> int:
        return sum(e.result for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        # JSON object keys must be strings
        return {
            "candidate": self.candidate,
            "trigger": self.trigger,
            "domain": self.domain,
            "resolution": self.resolution.value,
            "matched": self.matched,
            "matched_group": self.matched_group,
            "group_results": {str(k): v for k, v in self.group_results.items()},
            "conditions_checked": self.conditions_checked,
            "conditions_passed": self.conditions_passed,
            "entries": [e.to_dict() for e in self.entries],
        }

    def to_compact_string(self) -> str:
        """
        Multi-line form used by simulation reports:

            [RULES] low_balance_offer (matched via group 0)
              [g0] credits_balance LT '20': PASS (actual=15)
        """
        via = f" via group {self.matched_group}" if self.matched_group is not None else ""
        header = f"[{(self.domain or 'rule').upper()}] {self.candidate} ({self.resolution.value}{via})"
        return "\n".join([header] + [e.to_compact_string() for e in self.entries])


@dataclass
class TraceSummary:
    total_traces: int = 0
    matched: int = 0
    by_resolution: Dict[str, int] = field(default_factory=dict)
    total_conditions_checked: int = 0
    # How often each field made a condition fail
    failing_fields: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_traces": self.total_traces,
            "matched": self.matched,
            "by_resolution": self.by_resolution,
            "total_conditions_checked": self.total_conditions_checked,
            "failing_fields": self.failing_fields,
        }


class TraceCollector:
    """
    Gathers one trace per evaluated candidate.

    Example:
        collector = TraceCollector()
        match_all(rules, ctx, collector=collector, trigger="LOW_BALANCE", domain="rules")
        collector.get_summary().failing_fields  # {'credits_balance': 1}
    """

    def __init__(self):
        self._traces: List[EvaluationTrace] = []

    def create_trace(self, candidate: str, trigger: str = "", domain: str = "") -> EvaluationTrace:
        trace = EvaluationTrace(candidate=candidate, trigger=trigger, domain=domain)
        self._traces.append(trace)
        return trace

    def add_trace(self, trace: EvaluationTrace) -> None:
        self._traces.append(trace)

    def get_traces(self) -> List[EvaluationTrace]:
        return list(self._traces)

    def get_traces_by_domain(self, domain: str) -> List[EvaluationTrace]:
        return [t for t in self._traces if t.domain == domain]

    def get_traces_by_resolution(self, resolution: Resolution) -> List[EvaluationTrace]:
        return [t for t in self._traces if t.resolution == resolution]

    def get_summary(self) -> TraceSummary:
        resolutions = Counter(t.resolution.value for t in self._traces)
        failing = Counter(e.field for t in self._traces for e in t.entries if not e.result)
        return TraceSummary(
            total_traces=len(self._traces),
            matched=sum(t.matched for t in self._traces),
            by_resolution=dict(resolutions),
            total_conditions_checked=sum(t.conditions_checked for t in self._traces),
            failing_fields=dict(failing),
        )

    def clear(self) -> None:
        self._traces.clear()

    def __len__(self) -> int:
        return len(self._traces)

    def __iter__(self) -> Iterator[EvaluationTrace]:
        return iter(self._traces)


__all__ = [
    "Resolution",
    "ConditionEntry",
    "EvaluationTrace",
    "TraceSummary",
    "TraceCollector",
]
