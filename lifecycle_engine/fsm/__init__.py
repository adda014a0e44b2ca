"""
FSM lifecycle driver.

Main components:
- FSMVersion / FSMState / FSMTransition: the versioned graph
- TransitionSelector.tick_fsm(): one atomic step for one user
- validate_version(): configuration warnings
- Immerser / ImmersionJob: placement from history
- state_distribution(): users per state
"""

from lifecycle_engine.fsm.models import (
    TriggerType,
    UnknownTriggerTypeError,
    parse_trigger_type,
    FSMState,
    FSMTransition,
    FSMVersion,
    UserFSMState,
    CommittedTransition,
)
from lifecycle_engine.fsm.selector import (
    is_eligible,
    is_event_eligible,
    is_time_eligible,
    is_timeout_eligible,
    TransitionSelector,
)
from lifecycle_engine.fsm.validation import (
    ValidationIssue,
    ValidationResult,
    validate_version,
)
from lifecycle_engine.fsm.immersion import (
    ImmersionResult,
    Immerser,
    ImmersionJob,
)
from lifecycle_engine.fsm.stats import (
    StateCount,
    StateDistribution,
    state_distribution,
)

__all__ = [
    "TriggerType",
    "UnknownTriggerTypeError",
    "parse_trigger_type",
    "FSMState",
    "FSMTransition",
    "FSMVersion",
    "UserFSMState",
    "CommittedTransition",
    "is_eligible",
    "is_event_eligible",
    "is_time_eligible",
    "is_timeout_eligible",
    "TransitionSelector",
    "ValidationIssue",
    "ValidationResult",
    "validate_version",
    "ImmersionResult",
    "Immerser",
    "ImmersionJob",
    "StateCount",
    "StateDistribution",
    "state_distribution",
]
