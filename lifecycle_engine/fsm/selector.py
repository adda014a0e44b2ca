"""
TransitionSelector - moves one user through the active FSM version.

A tick:
1. Loads (or creates in the initial state) the user's UserFSMState
2. Keeps the outgoing transitions eligible for the trigger
   (EVENT: same event name, TIMEOUT: time in state, TIME: daily window)
3. Picks the single winner with the shared matcher
4. Commits state id + entered-at in one compare-and-set write
5. Dispatches the winner's actions after the commit

Steps 1-4 run under a per-(user, version) lock. A commit conflict propagates
as StateCommitConflictError; retrying is up to the caller.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Callable, List, Optional
from zoneinfo import ZoneInfo
import logging

from lifecycle_engine.conditions.context import UserContextSnapshot
from lifecycle_engine.conditions.fields import FieldRegistry
from lifecycle_engine.conditions.trace import TraceCollector
from lifecycle_engine.feature_flags import flags
from lifecycle_engine.fsm.models import (
    CommittedTransition,
    FSMState,
    FSMTransition,
    FSMVersion,
    TriggerType,
    UserFSMState,
)
from lifecycle_engine.logger import logger as event_logger
from lifecycle_engine.rules.matcher import match_one
from lifecycle_engine.settings import settings
from lifecycle_engine.stores.errors import VersionNotFoundError
from lifecycle_engine.stores.protocols import ContextProvider, StateStore, VersionStore
from lifecycle_engine.user_lock import UserLockManager

if TYPE_CHECKING:
    from lifecycle_engine.dispatch.dispatcher import ActionDispatcher

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def load_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


# =============================================================================
# ELIGIBILITY
# =============================================================================

def is_event_eligible(transition: FSMTransition, event: Optional[str]) -> bool:
    return (
        transition.trigger_type is TriggerType.EVENT
        and event is not None
        and transition.trigger_event is not None
        and transition.trigger_event.strip() == event.strip()
    )


def is_timeout_eligible(transition: FSMTransition, entered_at: datetime, now: datetime) -> bool:
    """Eligible once ``now - entered_at >= timeout_minutes``."""
    if transition.trigger_type is not TriggerType.TIMEOUT or transition.timeout_minutes is None:
        return False
    return _utc(now) - _utc(entered_at) >= timedelta(minutes=transition.timeout_minutes)


def is_time_eligible(
    transition: FSMTransition,
    now: datetime,
    tz: tzinfo = timezone.utc,
    window_minutes: int = 60,
) -> bool:
    """
    Eligible while the local time of day is in
    ``[time_from, time_from + window_minutes)``; the window may wrap past midnight.
    """
    if transition.trigger_type is not TriggerType.TIME or transition.time_from is None:
        return False
    local = _utc(now).astimezone(tz)
    minute_of_day = local.hour * 60 + local.minute + local.second / 60.0
    start = transition.time_from.hour * 60 + transition.time_from.minute
    return (minute_of_day - start) % MINUTES_PER_DAY < window_minutes


def is_eligible(
    transition: FSMTransition,
    event: Optional[str],
    entered_at: datetime,
    now: datetime,
    tz: tzinfo = timezone.utc,
    window_minutes: int = 60,
) -> bool:
    """
    Trigger eligibility. A sweep (``event is None``) only considers TIMEOUT
    and TIME transitions; an event tick considers matching EVENT transitions
    as well.
    """
    if transition.trigger_type is TriggerType.EVENT:
        return is_event_eligible(transition, event)
    if transition.trigger_type is TriggerType.TIMEOUT:
        return is_timeout_eligible(transition, entered_at, now)
    return is_time_eligible(transition, now, tz, window_minutes)


# =============================================================================
# SELECTOR
# =============================================================================

class TransitionSelector:
    """
    Args:
        version_store: Source of FSM versions (active version by default)
        state_store: Holds UserFSMState; the only thing the selector writes
        context_provider: Source of user context snapshots
        dispatcher: Runs the committed transition's actions (optional)
        lock_manager: Per-user locks (lock dir from ``fsm.commit_lock_dir``)
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        version_store: VersionStore,
        state_store: StateStore,
        context_provider: ContextProvider,
        dispatcher: Optional["ActionDispatcher"] = None,
        lock_manager: Optional[UserLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
        registry: Optional[FieldRegistry] = None,
    ):
        self.version_store = version_store
        self.state_store = state_store
        self.context_provider = context_provider
        self.dispatcher = dispatcher
        self.lock_manager = lock_manager or UserLockManager(
            settings.get_nested("fsm.commit_lock_dir")
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.registry = registry
        self.timezone = load_timezone(settings.get_nested("fsm.timezone", "UTC"))
        self.window_minutes = int(settings.get_nested("fsm.time_window_minutes", 60))

    def resolve_version(self, version_id: Optional[str] = None) -> FSMVersion:
        if version_id is not None:
            return self.version_store.get_version(version_id)
        version = self.version_store.get_active_version()
        if version is None:
            raise VersionNotFoundError(None)
        return version

    def eligible_transitions(
        self,
        version: FSMVersion,
        state: FSMState,
        event: Optional[str],
        entered_at: datetime,
        now: datetime,
    ) -> List[FSMTransition]:
        if state.is_terminal:
            return []
        return [
            t for t in version.transitions_from(state.id)
            if is_eligible(t, event, entered_at, now, self.timezone, self.window_minutes)
        ]

    def _ensure_state(self, user_id: str, version: FSMVersion, now: datetime) -> Optional[UserFSMState]:
        current = self.state_store.get_current_state(user_id, version.id)
        if current is not None:
            return current
        initial = version.initial_state
        if initial is None:
            event_logger.event(
                "fsm_config_warning",
                version_id=version.id,
                warning="version has no initial state",
            )
            return None
        logger.debug("Placing user %s in initial state %s", user_id, initial.id)
        return self.state_store.commit_transition(user_id, version.id, initial.id, now)

    def tick_fsm(
        self,
        user_id: str,
        version_id: Optional[str] = None,
        incoming_event: Optional[str] = None,
        collector: Optional[TraceCollector] = None,
    ) -> Optional[CommittedTransition]:
        """
        Evaluate one user and commit at most one transition.

        Args:
            user_id: User to evaluate
            version_id: Version to use (defaults to the active one)
            incoming_event: Event name, or None for a periodic sweep
            collector: Receives a trace per eligible transition

        Returns:
            The committed transition, or None for a no-op tick

        Raises:
            VersionNotFoundError: Unknown version / no active version
            UserNotFoundError: No context for the user
            StateCommitConflictError: State changed concurrently (retryable)
        """
        if not flags.fsm_engine:
            logger.debug("fsm_engine flag is off, tick for %s skipped", user_id)
            return None

        user_id = str(user_id)
        version = self.resolve_version(version_id)

        with event_logger.user_scope(user_id):
            with self.lock_manager.lock(user_id, version.id):
                committed = self._tick_locked(user_id, version, incoming_event, collector)

            if committed is not None and self.dispatcher is not None:
                transition = next(t for t in version.transitions if t.id == committed.transition_id)
                if transition.actions:
                    committed.dispatch = self.dispatcher.dispatch(user_id, transition.actions)

        return committed

    def _tick_locked(
        self,
        user_id: str,
        version: FSMVersion,
        event: Optional[str],
        collector: Optional[TraceCollector],
    ) -> Optional[CommittedTransition]:
        now = _utc(self.clock())
        # Unknown users raise here, before any state row is written
        snapshot = self.context_provider.get_context(user_id)
        current = self._ensure_state(user_id, version, now)
        if current is None:
            return None

        state = version.state(current.state_id)
        if state is None:
            event_logger.event(
                "fsm_config_warning",
                version_id=version.id,
                warning=f"user points at unknown state {current.state_id}",
            )
            return None

        candidates = self.eligible_transitions(version, state, event, current.entered_at, now)
        if not candidates:
            event_logger.event("fsm_tick_noop", state=state.name, trigger=event, reason="no eligible transition")
            return None

        ctx = snapshot.with_fsm(
            lifecycle=state.name,
            from_state_id=state.id,
            trigger_event=event,
        )

        def context_for(transition: FSMTransition, base: UserContextSnapshot) -> UserContextSnapshot:
            target = version.state(transition.to_state_id)
            return base.with_fsm(to_state_name=target.name if target else transition.to_state_id)

        winner = match_one(
            candidates,
            ctx,
            collector=collector,
            trigger=event or "SWEEP",
            domain="fsm",
            registry=self.registry,
            context_for=context_for,
        )
        if winner is None:
            event_logger.event("fsm_tick_noop", state=state.name, trigger=event, reason="no satisfied transition")
            return None

        transition: FSMTransition = winner.candidate
        committed_state = self.state_store.commit_transition(
            user_id,
            version.id,
            transition.to_state_id,
            now,
            expected_state_id=current.state_id,
        )
        target = version.state(transition.to_state_id)
        committed = CommittedTransition(
            user_id=user_id,
            version_id=version.id,
            transition_id=transition.id,
            from_state_id=state.id,
            to_state_id=committed_state.state_id,
            to_state_name=target.name if target else transition.to_state_id,
            entered_at=committed_state.entered_at,
            trigger=event,
        )
        event_logger.event(
            "fsm_transition_committed",
            version_id=version.id,
            transition_id=transition.id,
            from_state=state.name,
            to_state=committed.to_state_name,
            trigger=event or transition.trigger_type.value,
        )
        return committed


__all__ = [
    "load_timezone",
    "is_event_eligible",
    "is_timeout_eligible",
    "is_time_eligible",
    "is_eligible",
    "TransitionSelector",
]
