"""
User context snapshot: the only input the condition evaluator sees.

The snapshot is frozen for the duration of an evaluation. It is built either
from a raw user record (``build_context``), from a validated ContextPayload
(``UserContextSnapshot.from_payload``) for simulations, or from a plain
mapping (``UserContextSnapshot.from_mapping``).
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic.alias_generators import to_camel, to_snake

from lifecycle_engine.conditions.payload import DATETIME_FIELDS, ContextPayload, field_for_key
from lifecycle_engine.settings import settings


def _as_tags(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(t.strip() for t in value.split(",") if t.strip())
    return tuple(str(t) for t in value)


def _as_datetime(value: Any) -> Optional[datetime]:
    """Parse a timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if not isinstance(value, datetime):
        raise ValueError(f"expected ISO timestamp, got {type(value).__name__}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _hours_between(start: Optional[datetime], end: datetime) -> Optional[float]:
    if start is None:
        return None
    return (end - start).total_seconds() / 3600.0


@dataclass(frozen=True)
class UserContextSnapshot:
    """
    Point-in-time, read-only view of a user's attributes.

    Every attribute except tags and extra defaults to None so that a field
    the caller did not supply is "missing" (EXISTS is False, numeric
    comparisons are False) rather than silently zero.

    Attributes:
        user_id: User identifier
        credits: Current credit balance
        user_tags: Free-form tags
        total_generations: Number of generations ever made
        total_payments: Number of completed purchases
        last_payment_failed: Latest purchase attempt failed after the last success
        preferred_model: Model of the latest generation
        is_paid_user: Has at least one completed payment
        is_low_balance: Balance below the configured threshold
        days_since_created: Account age in days
        hours_since_last_pay: Hours since the last completed payment
        hours_since_last_gen: Hours since the last generation
        hours_since_last_activity: Hours since the user was last active
        lifecycle: Name of the user's current FSM state
        to_state_name / from_state_id / trigger_event: Transition payload fields
        active_overlays: Overlay codes currently active or eligible
        extra: Any other attributes, looked up by the field fallback
    """
    user_id: Optional[str] = None
    credits: Any = None
    user_tags: Tuple[str, ...] = ()
    total_generations: Any = None
    total_payments: Any = None
    created_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    last_generation_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    last_payment_failed: Any = None
    preferred_model: Optional[str] = None
    is_paid_user: Any = None
    is_low_balance: Any = None
    days_since_created: Any = None
    hours_since_last_pay: Any = None
    hours_since_last_gen: Any = None
    hours_since_last_activity: Any = None
    lifecycle: Optional[str] = None
    to_state_name: Optional[str] = None
    from_state_id: Optional[str] = None
    trigger_event: Optional[str] = None
    active_overlays: Tuple[str, ...] = ()
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "user_tags", _as_tags(self.user_tags))
        object.__setattr__(self, "active_overlays", _as_tags(self.active_overlays))
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra or {})))

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return _FIELD_NAMES

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UserContextSnapshot":
        """
        Build a snapshot from a camelCase or snake_case mapping.

        Keys resolve through the ContextPayload aliases (``tags`` feeds
        ``user_tags``). Keys that are not snapshot attributes are kept in
        ``extra``. Values are taken as they are; use ``from_payload`` for
        input that has to be validated.

        Raises:
            TypeError: If data is not a mapping
            ValueError: If a timestamp field cannot be parsed
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"context must be a mapping, got {type(data).__name__}")

        known: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            key = str(key)
            if key == "extra" and isinstance(value, Mapping):
                extra.update(value)
                continue
            name = field_for_key(key)
            if name is not None:
                known[name] = value
            else:
                extra[key] = value

        for name in DATETIME_FIELDS:
            if name in known:
                known[name] = _as_datetime(known[name])

        return cls(extra=extra, **known)

    @classmethod
    def from_payload(cls, payload: ContextPayload) -> "UserContextSnapshot":
        """Snapshot of a validated ContextPayload."""
        return cls(extra=payload.extra_attributes(), **payload.attributes())

    def lookup_extra(self, name: str) -> Any:
        """Find ``name`` in extra by exact key, then camelCase/snake_case variant."""
        for key in (name, to_camel(name), to_snake(name)):
            if key in self.extra:
                return self.extra[key]
        return None

    def with_fsm(
        self,
        lifecycle: Optional[str] = None,
        from_state_id: Optional[str] = None,
        to_state_name: Optional[str] = None,
        trigger_event: Optional[str] = None,
    ) -> "UserContextSnapshot":
        """Copy with FSM payload fields set."""
        return replace(
            self,
            lifecycle=lifecycle if lifecycle is not None else self.lifecycle,
            from_state_id=from_state_id if from_state_id is not None else self.from_state_id,
            to_state_name=to_state_name if to_state_name is not None else self.to_state_name,
            trigger_event=trigger_event if trigger_event is not None else self.trigger_event,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly dictionary (camelCase keys, ISO timestamps)."""
        result: Dict[str, Any] = {}
        for name in _FIELD_NAMES:
            if name == "extra":
                continue
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, tuple):
                value = list(value)
            result[to_camel(name)] = value
        result.update(dict(self.extra))
        return result


_FIELD_NAMES: Tuple[str, ...] = tuple(f.name for f in fields(UserContextSnapshot))


def build_context(
    record: Mapping[str, Any],
    now: Optional[datetime] = None,
    low_balance_threshold: Optional[float] = None,
) -> UserContextSnapshot:
    """
    Derive a snapshot from a raw user record.

    Expected record keys (all optional except ``id``): ``credits``, ``tags``,
    ``created_at``, ``last_active_at``, ``total_generated``,
    ``total_payments``, ``last_payment_at``, ``last_failed_payment_at``,
    ``last_generation_at``, ``last_generation_model``, ``active_overlays``,
    ``lifecycle``. Timestamps may be datetimes or ISO strings.

    Args:
        record: Raw user data from the persistence layer
        now: Reference time for elapsed fields (defaults to utcnow)
        low_balance_threshold: Overrides ``context.low_balance_threshold``

    Returns:
        Frozen UserContextSnapshot
    """
    now = _as_datetime(now) or datetime.now(timezone.utc)
    if low_balance_threshold is None:
        low_balance_threshold = settings.get_nested("context.low_balance_threshold", 20)

    credits = record.get("credits")
    total_generations = record.get("total_generated", record.get("total_generations", 0)) or 0
    total_payments = record.get("total_payments", 0) or 0

    created_at = _as_datetime(record.get("created_at"))
    last_active_at = _as_datetime(record.get("last_active_at"))
    last_payment_at = _as_datetime(record.get("last_payment_at"))
    last_failed_at = _as_datetime(record.get("last_failed_payment_at"))
    last_generation_at = _as_datetime(record.get("last_generation_at"))

    last_payment_failed = last_failed_at is not None and (
        last_payment_at is None or last_failed_at > last_payment_at
    )

    days_since_created = None
    if created_at is not None:
        days_since_created = _hours_between(created_at, now) / 24.0

    return UserContextSnapshot(
        user_id=str(record.get("id")) if record.get("id") is not None else None,
        credits=credits,
        user_tags=record.get("tags") or (),
        total_generations=total_generations,
        total_payments=total_payments,
        created_at=created_at,
        last_active_at=last_active_at,
        last_generation_at=last_generation_at,
        last_payment_at=last_payment_at,
        last_payment_failed=last_payment_failed,
        preferred_model=record.get("last_generation_model"),
        is_paid_user=total_payments > 0,
        is_low_balance=credits is not None and credits < low_balance_threshold,
        days_since_created=days_since_created,
        hours_since_last_pay=_hours_between(last_payment_at, now),
        hours_since_last_gen=_hours_between(last_generation_at, now),
        hours_since_last_activity=_hours_between(last_active_at or created_at, now),
        lifecycle=record.get("lifecycle"),
        active_overlays=record.get("active_overlays") or (),
    )


__all__ = [
    "UserContextSnapshot",
    "build_context",
]
