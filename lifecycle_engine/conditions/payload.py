"""
Pydantic schema for user context supplied from outside (simulator input,
API payloads).

Keys may be camelCase or snake_case. Typed attributes are validated and
coerced; any other key is kept and ends up in the snapshot's ``extra``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Number = Union[int, float]
TagList = Union[str, List[str]]

NUMERIC_FIELDS = (
    "credits",
    "total_generations",
    "total_payments",
    "days_since_created",
    "hours_since_last_pay",
    "hours_since_last_gen",
    "hours_since_last_activity",
)
BOOLEAN_FIELDS = ("is_paid_user", "is_low_balance", "last_payment_failed")
TAG_FIELDS = ("user_tags", "active_overlays")
DATETIME_FIELDS = ("created_at", "last_active_at", "last_generation_at", "last_payment_at")


class ContextPayload(BaseModel):
    """User attributes as sent by the rule editor or an API client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    user_id: Optional[str] = None
    credits: Optional[Number] = Field(
        None, validation_alias=AliasChoices("credits", "creditsBalance", "credits_balance")
    )
    user_tags: Optional[TagList] = Field(
        None, validation_alias=AliasChoices("tags", "userTags", "user_tags")
    )
    total_generations: Optional[Number] = Field(
        None,
        validation_alias=AliasChoices(
            "totalGenerations", "total_generations", "totalGenerated", "total_generated"
        ),
    )
    total_payments: Optional[Number] = None
    created_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    last_generation_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    last_payment_failed: Optional[bool] = None
    preferred_model: Optional[str] = None
    is_paid_user: Optional[bool] = None
    is_low_balance: Optional[bool] = None
    days_since_created: Optional[Number] = None
    hours_since_last_pay: Optional[Number] = None
    hours_since_last_gen: Optional[Number] = None
    hours_since_last_activity: Optional[Number] = None
    lifecycle: Optional[str] = None
    to_state_name: Optional[str] = None
    from_state_id: Optional[str] = None
    trigger_event: Optional[str] = None
    active_overlays: Optional[TagList] = None
    # Explicit nested bag of extra attributes
    extras: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")

    @field_validator(*NUMERIC_FIELDS, mode="before")
    @classmethod
    def _not_a_boolean(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("booleans are not numbers")
        return value

    @field_validator(*BOOLEAN_FIELDS, mode="before")
    @classmethod
    def _fold_case(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(*DATETIME_FIELDS)
    @classmethod
    def _naive_is_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def attributes(self) -> Dict[str, Any]:
        """Typed attributes by snapshot name (unset ones are None)."""
        return {name: getattr(self, name) for name in type(self).model_fields if name != "extras"}

    def extra_attributes(self) -> Dict[str, Any]:
        """Nested ``extra`` bag merged with unknown top-level keys."""
        return {**self.extras, **(self.model_extra or {})}


def _key_table() -> Dict[str, str]:
    table: Dict[str, str] = {}
    for name, info in ContextPayload.model_fields.items():
        if name == "extras":
            continue
        keys = {name, to_camel(name)}
        if isinstance(info.validation_alias, AliasChoices):
            keys.update(k for k in info.validation_alias.choices if isinstance(k, str))
        for key in keys:
            table[key] = name
    return table


_KEYS = _key_table()


def field_for_key(key: str) -> Optional[str]:
    """Snapshot attribute a payload key feeds, or None for an extra key."""
    return _KEYS.get(key)


__all__ = [
    "NUMERIC_FIELDS",
    "BOOLEAN_FIELDS",
    "TAG_FIELDS",
    "DATETIME_FIELDS",
    "ContextPayload",
    "field_for_key",
]
