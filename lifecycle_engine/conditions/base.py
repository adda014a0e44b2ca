"""
Condition model for the grouped-condition engine.

A condition compares one symbolic user field with a stored text value.
Conditions are organised in two explicit levels:

- ConditionGroup: conditions AND-ed together
- ConditionSet: groups OR-ed together

Storage keeps conditions as flat rows tagged with a ``groupId``;
``ConditionSet.from_flat`` turns such rows into the two-level form once, so
evaluation never has to infer structure from a flat list.
"""

from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum


class Operator(str, Enum):
    """Comparison operators available to condition authors."""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GT = "GT"
    GTE = "GTE"
    LT = "LT"
    LTE = "LTE"
    IN = "IN"
    NOT_IN = "NOT_IN"
    EXISTS = "EXISTS"
    NOT_EXISTS = "NOT_EXISTS"

    @classmethod
    def parse(cls, value: Any) -> Optional["Operator"]:
        """Return the operator for ``value`` or None if it is not one."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


NUMERIC_OPERATORS = frozenset({Operator.GT, Operator.GTE, Operator.LT, Operator.LTE})


@dataclass(frozen=True)
class Condition:
    """
    A single stored condition.

    Attributes:
        field: Symbolic field name (resolved through the field registry)
        operator: Operator name; kept as text so an unknown operator
            evaluates to False instead of failing at load time
        value: Comparison value, always stored as text
        group_id: Group this condition belongs to (0 when absent)
    """
    field: str
    operator: str
    value: str = ""
    group_id: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Condition":
        """Build from a stored row; accepts ``groupId`` or ``group_id``."""
        group_id = data.get("groupId", data.get("group_id"))
        operator = data.get("operator", "")
        if isinstance(operator, Operator):
            operator = operator.value
        value = data.get("value")
        return cls(
            field=str(data.get("field", "")),
            operator=str(operator),
            value="" if value is None else str(value),
            group_id=int(group_id) if group_id not in (None, "") else 0,
        )

    @property
    def op(self) -> Optional[Operator]:
        return Operator.parse(self.operator)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
            "groupId": self.group_id,
        }


@dataclass(frozen=True)
class ConditionGroup:
    """Conditions that must all hold."""
    group_id: int
    conditions: Tuple[Condition, ...] = ()

    def __iter__(self) -> Iterator[Condition]:
        return iter(self.conditions)

    def __len__(self) -> int:
        return len(self.conditions)


ConditionLike = Union[Condition, Mapping[str, Any]]


@dataclass(frozen=True)
class ConditionSet:
    """
    OR of AND-groups.

    An empty set is a universal match.

    Example:
        cs = ConditionSet.from_flat([
            {"field": "credits_balance", "operator": "LT", "value": "20"},
            {"field": "user_tags", "operator": "IN", "value": "vip", "groupId": 1},
        ])
        len(cs.groups)  # 2
    """
    groups: Tuple[ConditionGroup, ...] = field(default_factory=tuple)

    @classmethod
    def from_flat(cls, rows: Optional[Iterable[ConditionLike]]) -> "ConditionSet":
        """
        Group flat condition rows by ``group_id``.

        Groups are ordered by ascending group id; conditions keep their
        stored order inside a group.
        """
        buckets: Dict[int, List[Condition]] = {}
        for row in rows or ():
            condition = row if isinstance(row, Condition) else Condition.from_dict(row)
            buckets.setdefault(condition.group_id, []).append(condition)
        return cls(groups=tuple(
            ConditionGroup(group_id=gid, conditions=tuple(buckets[gid]))
            for gid in sorted(buckets)
        ))

    @classmethod
    def of(cls, *groups: Sequence[Condition]) -> "ConditionSet":
        """Build from explicit groups, numbering them 0..n-1."""
        return cls(groups=tuple(
            ConditionGroup(
                group_id=index,
                conditions=tuple(
                    Condition(c.field, c.operator, c.value, index) for c in group
                ),
            )
            for index, group in enumerate(groups)
            if group
        ))

    @classmethod
    def coerce(cls, value: Union["ConditionSet", Iterable[ConditionLike], None]) -> "ConditionSet":
        """Accept a ConditionSet, flat rows, or None."""
        if isinstance(value, ConditionSet):
            return value
        return cls.from_flat(value)

    @property
    def is_empty(self) -> bool:
        return not any(len(group) for group in self.groups)

    def to_flat(self) -> List[Condition]:
        """Flatten back to rows, renumbering groups 0..n-1."""
        flat = []
        for index, group in enumerate(self.groups):
            for c in group:
                flat.append(Condition(c.field, c.operator, c.value, index))
        return flat

    def fields(self) -> List[str]:
        """Field names referenced, in order of first use."""
        seen: List[str] = []
        for group in self.groups:
            for c in group:
                if c.field not in seen:
                    seen.append(c.field)
        return seen

    def __iter__(self) -> Iterator[ConditionGroup]:
        return iter(self.groups)

    def __len__(self) -> int:
        """Total number of conditions."""
        return sum(len(group) for group in self.groups)

    def to_list(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.to_flat()]


__all__ = [
    "Operator",
    "NUMERIC_OPERATORS",
    "Condition",
    "ConditionGroup",
    "ConditionSet",
    "ConditionLike",
]
