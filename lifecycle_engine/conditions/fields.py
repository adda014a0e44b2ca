"""
Field registry: symbolic condition field names -> context accessors.

Condition authors write symbolic names (``credits_balance``,
``hours_since_last_activity``) instead of storage columns, so the context
schema can change without rewriting stored conditions. Known names are
registered explicitly with the ``@user_field`` decorator; anything else falls
back to a snapshot attribute of the same name, then to the snapshot's
``extra`` mapping.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
import logging

from lifecycle_engine.conditions.context import UserContextSnapshot

logger = logging.getLogger(__name__)


FieldAccessor = Callable[[UserContextSnapshot], Any]


class FieldAlreadyRegisteredError(Exception):
    """Raised when a field name is registered twice."""

    def __init__(self, field_name: str, registry_name: str = ""):
        self.field_name = field_name
        self.registry_name = registry_name
        message = f"Field '{field_name}' already registered"
        if registry_name:
            message += f" in registry '{registry_name}'"
        super().__init__(message)


@dataclass
class FieldMetadata:
    """
    Metadata for a registered field.

    Attributes:
        name: Symbolic field name used in conditions
        description: Human-readable description
        accessor: Function reading the value from a snapshot
        category: Category for grouping related fields
        value_type: Informal type hint shown in documentation
    """
    name: str
    description: str
    accessor: FieldAccessor
    category: str = "general"
    value_type: str = "any"


class FieldRegistry:
    """
    Registry of known condition fields.

    Example:
        registry = FieldRegistry("user_context")

        @registry.field("credits_balance", category="balance", value_type="number")
        def credits_balance(ctx):
            return ctx.credits

        registry.resolve("credits_balance", ctx)
    """

    def __init__(self, name: str, allow_overwrite: bool = False):
        self.name = name
        self.allow_overwrite = allow_overwrite
        self._fields: Dict[str, FieldMetadata] = {}
        self._categories: Dict[str, List[str]] = {}

    def field(
        self,
        name: str,
        description: str = "",
        category: str = "general",
        value_type: str = "any"
    ) -> Callable[[FieldAccessor], FieldAccessor]:
        """
        Decorator registering an accessor.

        Raises:
            FieldAlreadyRegisteredError: If the name is taken
        """
        def decorator(func: FieldAccessor) -> FieldAccessor:
            if name in self._fields and not self.allow_overwrite:
                raise FieldAlreadyRegisteredError(name, self.name)

            self._fields[name] = FieldMetadata(
                name=name,
                description=description or (func.__doc__ or "").strip(),
                accessor=func,
                category=category,
                value_type=value_type,
            )
            names = self._categories.setdefault(category, [])
            if name not in names:
                names.append(name)
            return func

        return decorator

    def register(
        self,
        name: str,
        accessor: FieldAccessor,
        description: str = "",
        category: str = "general",
        value_type: str = "any"
    ) -> None:
        """Register an accessor programmatically (non-decorator style)."""
        self.field(name, description, category, value_type)(accessor)

    def unregister(self, name: str) -> bool:
        metadata = self._fields.pop(name, None)
        if metadata is None:
            return False
        names = self._categories.get(metadata.category, [])
        if name in names:
            names.remove(name)
            if not names:
                del self._categories[metadata.category]
        return True

    def resolve(self, name: str, ctx: UserContextSnapshot) -> Any:
        """
        Resolve a field value from a snapshot.

        Known fields use their accessor. Unknown names fall back to a
        snapshot attribute of the same name, then to ``ctx.extra``.
        Returns None when nothing is found.
        """
        metadata = self._fields.get(name)
        if metadata is not None:
            return metadata.accessor(ctx)

        if name in UserContextSnapshot.field_names() and name != "extra":
            return getattr(ctx, name)

        value = ctx.lookup_extra(name)
        if value is None:
            logger.debug("Field '%s' not found in context", name)
        return value

    def get(self, name: str) -> Optional[FieldMetadata]:
        return self._fields.get(name)

    def has(self, name: str) -> bool:
        return name in self._fields

    def is_resolvable(self, name: str) -> bool:
        """Known field or a direct snapshot attribute."""
        return self.has(name) or (
            name in UserContextSnapshot.field_names() and name != "extra"
        )

    def list_all(self) -> List[str]:
        return list(self._fields.keys())

    def list_by_category(self, category: str) -> List[str]:
        return list(self._categories.get(category, []))

    def get_categories(self) -> List[str]:
        return list(self._categories.keys())

    def get_documentation(self) -> str:
        """
        Generate Markdown documentation for all known fields.

        Returns:
            Markdown-formatted string
        """
        lines = [f"# {self.name.replace('_', ' ').title()} Fields\n"]
        lines.append(f"Total fields: {len(self._fields)}\n")

        for category in sorted(self._categories.keys()):
            lines.append(f"\n## {category.title()}\n")
            for name in sorted(self._categories[category]):
                meta = self._fields[name]
                lines.append(f"### `{name}` ({meta.value_type})")
                if meta.description:
                    lines.append(f"\n{meta.description}")
                lines.append("")

        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, name: str) -> bool:
        return name in self._fields

    def __repr__(self) -> str:
        return f"FieldRegistry(name={self.name!r}, fields={len(self._fields)})"


field_registry = FieldRegistry("user_context")


def user_field(
    name: str,
    description: str = "",
    category: str = "general",
    value_type: str = "any"
) -> Callable[[FieldAccessor], FieldAccessor]:
    """Register an accessor in the default registry."""
    return field_registry.field(name, description, category, value_type)


# =============================================================================
# BALANCE
# =============================================================================

@user_field("credits", "Current credit balance", category="balance", value_type="number")
def _credits(ctx: UserContextSnapshot) -> Any:
    return ctx.credits


@user_field("credits_balance", "Current credit balance", category="balance", value_type="number")
def _credits_balance(ctx: UserContextSnapshot) -> Any:
    return ctx.credits


@user_field("is_low_balance", "Balance below the low-balance threshold",
            category="balance", value_type="boolean")
def _is_low_balance(ctx: UserContextSnapshot) -> Any:
    return ctx.is_low_balance


# =============================================================================
# USAGE / PAYMENTS
# =============================================================================

@user_field("total_generations", "Generations made so far", category="usage", value_type="number")
def _total_generations(ctx: UserContextSnapshot) -> Any:
    return ctx.total_generations


@user_field("total_payments", "Completed purchases", category="payments", value_type="number")
def _total_payments(ctx: UserContextSnapshot) -> Any:
    return ctx.total_payments


@user_field("is_paid_user", "Has at least one completed purchase",
            category="payments", value_type="boolean")
def _is_paid_user(ctx: UserContextSnapshot) -> Any:
    return ctx.is_paid_user


@user_field("last_payment_failed", "Latest purchase attempt failed",
            category="payments", value_type="boolean")
def _last_payment_failed(ctx: UserContextSnapshot) -> Any:
    return ctx.last_payment_failed


@user_field("preferred_model", "Model used by the latest generation",
            category="usage", value_type="string")
def _preferred_model(ctx: UserContextSnapshot) -> Any:
    return ctx.preferred_model


@user_field("is_freeloader", "Generated, never paid, and low on balance",
            category="segments", value_type="boolean")
def _is_freeloader(ctx: UserContextSnapshot) -> Any:
    if ctx.total_generations is None or ctx.total_payments is None:
        return False
    return bool(
        ctx.total_generations > 0
        and ctx.total_payments == 0
        and ctx.is_low_balance
    )


@user_field("is_dead", "Never generated anything", category="segments", value_type="boolean")
def _is_dead(ctx: UserContextSnapshot) -> Any:
    return ctx.total_generations is not None and ctx.total_generations == 0


@user_field("user_tags", "Tags assigned to the user", category="profile", value_type="list")
def _user_tags(ctx: UserContextSnapshot) -> Any:
    return list(ctx.user_tags)


# =============================================================================
# TIME
# =============================================================================

@user_field("days_since_created", "Account age in days", category="time", value_type="number")
def _days_since_created(ctx: UserContextSnapshot) -> Any:
    return ctx.days_since_created


@user_field("hours_since_last_pay", "Hours since the last completed payment",
            category="time", value_type="number")
def _hours_since_last_pay(ctx: UserContextSnapshot) -> Any:
    return ctx.hours_since_last_pay


@user_field("hours_since_last_gen", "Hours since the last generation",
            category="time", value_type="number")
def _hours_since_last_gen(ctx: UserContextSnapshot) -> Any:
    return ctx.hours_since_last_gen


@user_field("hours_since_last_activity", "Hours since the user was last active",
            category="time", value_type="number")
def _hours_since_last_activity(ctx: UserContextSnapshot) -> Any:
    return ctx.hours_since_last_activity


# =============================================================================
# FSM PAYLOAD
# =============================================================================

@user_field("lifecycle", "Name of the current FSM state", category="fsm", value_type="string")
def _lifecycle(ctx: UserContextSnapshot) -> Any:
    return ctx.lifecycle


@user_field("to_state_name", "Target state of the transition being evaluated",
            category="fsm", value_type="string")
def _to_state_name(ctx: UserContextSnapshot) -> Any:
    return ctx.to_state_name


@user_field("from_state_id", "State the user is leaving", category="fsm", value_type="string")
def _from_state_id(ctx: UserContextSnapshot) -> Any:
    return ctx.from_state_id


@user_field("trigger_event", "Event that started the evaluation", category="fsm", value_type="string")
def _trigger_event(ctx: UserContextSnapshot) -> Any:
    return ctx.trigger_event


__all__ = [
    "FieldAccessor",
    "FieldAlreadyRegisteredError",
    "FieldMetadata",
    "FieldRegistry",
    "field_registry",
    "user_field",
]
