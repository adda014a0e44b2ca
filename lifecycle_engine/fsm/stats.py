"""State distribution of users across a version's states."""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from lifecycle_engine.fsm.models import FSMVersion
from lifecycle_engine.stores.protocols import StateStore


@dataclass
class StateCount:
    state_id: str
    state_name: str
    count: int
    is_initial: bool = False
    is_terminal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stateId": self.state_id,
            "name": self.state_name,
            "count": self.count,
            "isInitial": self.is_initial,
            "isTerminal": self.is_terminal,
        }


@dataclass
class StateDistribution:
    version_id: str
    states: List[StateCount] = field(default_factory=list)
    total: int = 0
    # Users pointing at states the version no longer has
    orphaned: int = 0

    def count_for(self, state_id: str) -> int:
        for s in self.states:
            if s.state_id == state_id:
                return s.count
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "versionId": self.version_id,
            "total": self.total,
            "orphaned": self.orphaned,
            "states": [s.to_dict() for s in self.states],
        }


def state_distribution(version: FSMVersion, state_store: StateStore) -> StateDistribution:
    """Per-state user counts in version order; empty states report zero."""
    counts = state_store.count_by_state(version.id)
    result = StateDistribution(version_id=version.id)
    known = set()
    for state in version.states:
        known.add(state.id)
        result.states.append(StateCount(
            state_id=state.id,
            state_name=state.name,
            count=counts.get(state.id, 0),
            is_initial=state.is_initial,
            is_terminal=state.is_terminal,
        ))
    result.orphaned = sum(n for sid, n in counts.items() if sid not in known)
    result.total = sum(counts.values())
    return result


__all__ = [
    "StateCount",
    "StateDistribution",
    "state_distribution",
]
