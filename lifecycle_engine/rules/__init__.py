"""
Rules: trigger-driven automation rules and the matcher shared with the FSM.
"""

from lifecycle_engine.rules.models import (
    RuleTrigger,
    UnknownTriggerError,
    parse_trigger,
    Action,
    ordered_actions,
    Rule,
)
from lifecycle_engine.rules.matcher import (
    Match,
    id_sort_key,
    condition_set_passes,
    match_all,
    match_one,
)
from lifecycle_engine.rules.engine import (
    RuleMatch,
    FiredRule,
    RulesEngine,
)

__all__ = [
    "RuleTrigger",
    "UnknownTriggerError",
    "parse_trigger",
    "Action",
    "ordered_actions",
    "Rule",
    "Match",
    "id_sort_key",
    "condition_set_passes",
    "match_all",
    "match_one",
    "RuleMatch",
    "FiredRule",
    "RulesEngine",
]
