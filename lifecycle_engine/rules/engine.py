"""
RulesEngine - evaluates the active rules of a trigger for one user.

Evaluation and dispatch are separate steps: ``evaluate_trigger_for_user``
only returns matches (the simulator shares the same ``evaluate`` path),
``fire`` evaluates and then dispatches each match's actions.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union
import logging

from lifecycle_engine.conditions.context import UserContextSnapshot
from lifecycle_engine.conditions.fields import FieldRegistry
from lifecycle_engine.conditions.trace import EvaluationTrace, TraceCollector
from lifecycle_engine.feature_flags import flags
from lifecycle_engine.logger import logger as event_logger
from lifecycle_engine.rules.matcher import match_all
from lifecycle_engine.rules.models import Rule, RuleTrigger, parse_trigger
from lifecycle_engine.stores.protocols import ContextProvider, RuleStore

if TYPE_CHECKING:
    from lifecycle_engine.dispatch.dispatcher import ActionDispatcher, DispatchReport

logger = logging.getLogger(__name__)


@dataclass
class RuleMatch:
    rule: Rule
    trace: Optional[EvaluationTrace] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.rule.id,
            "code": self.rule.code,
            "name": self.rule.name,
            "priority": self.rule.priority,
            "actions": [a.to_dict() for a in self.rule.actions],
        }
        if self.trace is not None:
            result["trace"] = self.trace.to_dict()
        return result


@dataclass
class FiredRule:
    rule: Rule
    report: "DispatchReport"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.rule.code, "priority": self.rule.priority, "dispatch": self.report.to_dict()}


class RulesEngine:
    """
    Args:
        rule_store: Source of active rules per trigger
        context_provider: Source of user context snapshots
        registry: Field registry (defaults to the global one)
    """

    def __init__(
        self,
        rule_store: RuleStore,
        context_provider: Optional[ContextProvider] = None,
        registry: Optional[FieldRegistry] = None,
    ):
        self.rule_store = rule_store
        self.context_provider = context_provider
        self.registry = registry

    def candidates(self, trigger: Union[RuleTrigger, str]) -> List[Rule]:
        """Active rules for the trigger; inactive rules are dropped even if the store returns them."""
        trigger = parse_trigger(trigger)
        return [
            rule for rule in self.rule_store.list_active(trigger)
            if rule.is_active and rule.trigger is trigger
        ]

    def evaluate(
        self,
        trigger: Union[RuleTrigger, str],
        ctx: UserContextSnapshot,
        collector: Optional[TraceCollector] = None,
        candidates: Optional[List[Rule]] = None,
    ) -> List[RuleMatch]:
        """
        Match the trigger's rules against a snapshot.

        Args:
            candidates: Rules already fetched with ``candidates(trigger)``;
                fetched from the store when omitted

        Raises:
            UnknownTriggerError: If the trigger is not known
        """
        trigger = parse_trigger(trigger)
        if candidates is None:
            candidates = self.candidates(trigger)
        matches = match_all(
            candidates,
            ctx,
            collector=collector,
            trigger=trigger.value,
            domain="rules",
            registry=self.registry,
        )
        return [RuleMatch(rule=m.candidate, trace=m.trace) for m in matches]

    def evaluate_trigger_for_user(
        self,
        trigger: Union[RuleTrigger, str],
        user_id: str,
    ) -> List[RuleMatch]:
        """
        Matched rules for a user, highest priority first.

        Raises:
            UnknownTriggerError: If the trigger is not known
            UserNotFoundError: If the context provider has no such user
        """
        trigger = parse_trigger(trigger)
        if self.context_provider is None:
            raise RuntimeError("RulesEngine has no context provider")

        with event_logger.user_scope(str(user_id)):
            ctx = self.context_provider.get_context(str(user_id))
            collector = TraceCollector() if flags.evaluation_tracing else None
            matches = self.evaluate(trigger, ctx, collector)
            event_logger.event(
                "rules_matched",
                trigger=trigger.value,
                matched=[m.rule.code for m in matches],
            )
        return matches

    def fire(
        self,
        trigger: Union[RuleTrigger, str],
        user_id: str,
        dispatcher: "ActionDispatcher",
    ) -> List[FiredRule]:
        """
        Evaluate and dispatch: rules in priority order, actions by ``order``.

        Returns an empty list without evaluating when ``rules_engine`` is off.
        """
        if not flags.rules_engine:
            logger.debug("rules_engine flag is off, skipping %s for %s", trigger, user_id)
            return []

        fired = []
        for match in self.evaluate_trigger_for_user(trigger, user_id):
            report = dispatcher.dispatch(user_id, match.rule.actions)
            fired.append(FiredRule(rule=match.rule, report=report))
        return fired


__all__ = [
    "RuleMatch",
    "FiredRule",
    "RulesEngine",
]
