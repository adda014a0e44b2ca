"""
Shared pytest fixtures for lifecycle engine tests.

Provides fixtures for:
- A controllable clock
- Feature flag overrides
- In-memory stores with sample users, rules and an FSM version
- A dispatcher wired to an ActionRecorder
"""

import pytest
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from lifecycle_engine.dispatch.batch import BatchRunner
from lifecycle_engine.dispatch.dispatcher import ActionDispatcher
from lifecycle_engine.dispatch.handlers import ActionRecorder, recording_registry
from lifecycle_engine.feature_flags import flags
from lifecycle_engine.fsm.selector import TransitionSelector
from lifecycle_engine.rules.engine import RulesEngine
from lifecycle_engine.stores.memory import (
    InMemoryContextProvider,
    InMemoryRuleStore,
    InMemoryStateStore,
    InMemoryVersionStore,
)
from lifecycle_engine.user_lock import UserLockManager


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# Feature Flags Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_feature_flags():
    """Every test starts and ends without flag overrides."""
    flags.clear_all_overrides()
    yield
    flags.clear_all_overrides()


@pytest.fixture
def feature_flags_override():
    """Context manager for temporary feature flag overrides."""

    @contextmanager
    def _override(**kwargs):
        for flag, value in kwargs.items():
            flags.set_override(flag, value)
        try:
            yield flags
        finally:
            for flag in kwargs:
                flags.clear_override(flag)

    return _override


# =============================================================================
# Sample data
# =============================================================================

def sample_users() -> List[Dict[str, Any]]:
    return [
        {
            "id": "u1",
            "credits": 15,
            "tags": ["vip"],
            "total_generated": 12,
            "total_payments": 1,
            "created_at": NOW - timedelta(days=30),
            "last_active_at": NOW - timedelta(hours=2),
            "last_payment_at": NOW - timedelta(days=3),
            "last_generation_at": NOW - timedelta(hours=5),
            "last_generation_model": "flux",
        },
        {
            "id": "u2",
            "credits": 50,
            "tags": ["beta"],
            "total_generated": 4,
            "total_payments": 0,
            "created_at": NOW - timedelta(days=2),
            "last_active_at": NOW - timedelta(hours=30),
        },
        {
            "id": "u3",
            "credits": 5,
            "tags": [],
            "total_generated": 0,
            "total_payments": 0,
            "created_at": NOW - timedelta(days=10),
        },
    ]


def sample_rules() -> List[Dict[str, Any]]:
    return [
        {
            "id": "1",
            "code": "low_balance_offer",
            "trigger": "LOW_BALANCE",
            "priority": 5,
            "conditions": [{"field": "credits_balance", "operator": "LT", "value": "20"}],
            "actions": [{"type": "SEND_SPECIAL_OFFER", "config": {"offer": "PACK_100"}}],
        },
        {
            "id": "2",
            "code": "vip_low_balance",
            "trigger": "LOW_BALANCE",
            "priority": 10,
            "conditions": [
                {"field": "credits_balance", "operator": "LT", "value": "20", "groupId": 0},
                {"field": "user_tags", "operator": "IN", "value": "vip,beta", "groupId": 0},
            ],
            "actions": [
                {"type": "TAG_USER", "config": {"tag": "vip_offer"}, "order": 1},
                {"type": "GRANT_BURNABLE_BONUS", "config": {"amount": 10}, "order": 0},
            ],
        },
        {
            "id": "3",
            "code": "disabled_rule",
            "trigger": "LOW_BALANCE",
            "priority": 100,
            "isActive": False,
        },
        {
            "id": "4",
            "code": "welcome",
            "trigger": "BOT_START",
            "priority": 0,
            "actions": [{"type": "SEND_MESSAGE", "config": {"text": "Welcome!"}}],
        },
    ]


def sample_version(version_id: str = "v1", is_active: bool = True) -> Dict[str, Any]:
    return {
        "id": version_id,
        "name": "Retention v1",
        "isActive": is_active,
        "states": [
            {"id": "s1", "name": "NEW", "isInitial": True},
            {"id": "s2", "name": "ACTIVE_FREE"},
            {"id": "s3", "name": "PAID_ACTIVE"},
            {"id": "s4", "name": "DORMANT"},
            {"id": "s5", "name": "CHURNED", "isTerminal": True},
        ],
        "transitions": [
            {
                "id": "10",
                "fromStateId": "s1",
                "toStateId": "s3",
                "triggerType": "EVENT",
                "triggerEvent": "PAYMENT_COMPLETED",
                "priority": 10,
                "conditions": [{"field": "is_paid_user", "operator": "EQUALS", "value": "true"}],
                "actions": [
                    {"type": "SEND_MESSAGE", "config": {"text": "Thanks!"}, "order": 1},
                    {"type": "TAG_USER", "config": {"tag": "payer"}, "order": 0},
                ],
            },
            {
                "id": "11",
                "fromStateId": "s1",
                "toStateId": "s2",
                "triggerType": "EVENT",
                "triggerEvent": "PAYMENT_COMPLETED",
                "priority": 5,
            },
            {
                "id": "12",
                "fromStateId": "s1",
                "toStateId": "s2",
                "triggerType": "EVENT",
                "triggerEvent": "FIRST_GENERATION",
                "priority": 0,
            },
            {
                "id": "13",
                "fromStateId": "s2",
                "toStateId": "s4",
                "triggerType": "TIMEOUT",
                "timeoutMinutes": 60,
                "priority": 0,
            },
            {
                "id": "14",
                "fromStateId": "s4",
                "toStateId": "s5",
                "triggerType": "TIMEOUT",
                "timeoutMinutes": 120,
            },
            {
                "id": "15",
                "fromStateId": "s3",
                "toStateId": "s4",
                "triggerType": "TIME",
                "timeFrom": "09:00",
                "conditions": [{"field": "hours_since_last_activity", "operator": "GT", "value": "72"}],
            },
        ],
    }


# =============================================================================
# Store / engine fixtures
# =============================================================================

@pytest.fixture
def context_provider(clock):
    return InMemoryContextProvider(sample_users(), clock=clock)


@pytest.fixture
def rule_store():
    return InMemoryRuleStore(sample_rules())


@pytest.fixture
def version_store():
    return InMemoryVersionStore([sample_version()])


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def recorder():
    return ActionRecorder()


@pytest.fixture
def dispatcher(recorder, context_provider):
    return ActionDispatcher(
        recording_registry(recorder),
        context_provider=context_provider,
        runner=BatchRunner(batch_size=2),
    )


@pytest.fixture
def rules_engine(rule_store, context_provider):
    return RulesEngine(rule_store, context_provider)


@pytest.fixture
def selector(version_store, state_store, context_provider, dispatcher, clock):
    return TransitionSelector(
        version_store,
        state_store,
        context_provider,
        dispatcher=dispatcher,
        lock_manager=UserLockManager(),
        clock=clock,
    )


@pytest.fixture
def make_version():
    """Factory for version payloads: make_version("v2", is_active=False)."""
    return sample_version


@pytest.fixture
def make_rules():
    return sample_rules


@pytest.fixture
def make_users():
    return sample_users
