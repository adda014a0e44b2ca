"""
Immersion - place users into a version from their history.

Used when a new version is activated: instead of starting everybody in the
initial state, each user is walked from the initial state along the
transitions their history already implies. No actions are dispatched.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

from lifecycle_engine.conditions.context import UserContextSnapshot
from lifecycle_engine.dispatch.batch import BatchProgress, BatchRunner
from lifecycle_engine.fsm.models import FSMTransition, FSMVersion
from lifecycle_engine.logger import logger as event_logger
from lifecycle_engine.rules.matcher import match_one
from lifecycle_engine.settings import settings
from lifecycle_engine.stores.errors import VersionNotFoundError
from lifecycle_engine.stores.protocols import ContextProvider, StateStore, VersionStore
from lifecycle_engine.user_lock import UserLockManager

logger = logging.getLogger(__name__)


def _has_payments(ctx: UserContextSnapshot) -> bool:
    return (ctx.total_payments or 0) > 0


def _has_generations(ctx: UserContextSnapshot) -> bool:
    return (ctx.total_generations or 0) > 0


# Events whose occurrence can be read from history; any other trigger is implied
IMPLIED_BY_HISTORY: Dict[str, Callable[[UserContextSnapshot], bool]] = {
    "PAYMENT_COMPLETED": _has_payments,
    "PAYMENT_SUCCESS": _has_payments,
    "FIRST_GENERATION": _has_generations,
    "GENERATION": _has_generations,
}


def is_implied(transition: FSMTransition, ctx: UserContextSnapshot) -> bool:
    check = IMPLIED_BY_HISTORY.get((transition.trigger_event or "").strip().upper())
    return check(ctx) if check else True


@dataclass
class ImmersionResult:
    user_id: str
    state_id: Optional[str] = None
    state_name: Optional[str] = None
    hops: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.state_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "stateId": self.state_id,
            "stateName": self.state_name,
            "hops": self.hops,
            "error": self.error,
        }


class Immerser:
    """Walks one user through a version and commits the final state."""

    def __init__(
        self,
        version_store: VersionStore,
        state_store: StateStore,
        context_provider: ContextProvider,
        lock_manager: Optional[UserLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_depth: Optional[int] = None,
    ):
        self.version_store = version_store
        self.state_store = state_store
        self.context_provider = context_provider
        self.lock_manager = lock_manager or UserLockManager(settings.get_nested("fsm.commit_lock_dir"))
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_depth = int(max_depth or settings.get_nested("fsm.max_immersion_depth", 50))

    def walk(self, version: FSMVersion, ctx: UserContextSnapshot) -> ImmersionResult:
        """Compute the target state without committing."""
        result = ImmersionResult(user_id=ctx.user_id or "")
        state = version.initial_state
        if state is None:
            result.error = "version has no initial state"
            return result

        while result.hops < self.max_depth and not state.is_terminal:
            implied = [t for t in version.transitions_from(state.id) if is_implied(t, ctx)]
            winner = match_one(
                implied,
                ctx.with_fsm(lifecycle=state.name, from_state_id=state.id),
                domain="immersion",
                context_for=lambda t, base: base.with_fsm(
                    to_state_name=getattr(version.state(t.to_state_id), "name", t.to_state_id)
                ),
            )
            if winner is None:
                break
            target = version.state(winner.candidate.to_state_id)
            if target is None:
                logger.warning("Transition %s targets unknown state %s",
                               winner.candidate.id, winner.candidate.to_state_id)
                break
            state = target
            result.hops += 1

        result.state_id = state.id
        result.state_name = state.name
        return result

    def immerse_user(self, user_id: str, version_id: Optional[str] = None) -> ImmersionResult:
        """
        Place one user and commit the final state (entered-at = now).

        Raises:
            VersionNotFoundError / UserNotFoundError
        """
        version = (
            self.version_store.get_version(version_id)
            if version_id is not None
            else self.version_store.get_active_version()
        )
        if version is None:
            raise VersionNotFoundError(None)

        user_id = str(user_id)
        ctx = self.context_provider.get_context(user_id)
        result = self.walk(version, ctx)
        result.user_id = user_id
        if result.state_id is None:
            return result

        with self.lock_manager.lock(user_id, version.id):
            self.state_store.commit_transition(user_id, version.id, result.state_id, self.clock())
        logger.debug("Immersed %s into %s after %d hops", user_id, result.state_name, result.hops)
        return result


class ImmersionJob:
    """
    Immerses many users in bounded, cancellable, resumable batches.

    A failure for one user is recorded in its ImmersionResult and never
    stops the job.
    """

    def __init__(self, immerser: Immerser, runner: Optional[BatchRunner] = None):
        self.immerser = immerser
        self.runner = runner or BatchRunner()

    def cancel(self) -> None:
        self.runner.cancel()

    def _immerse_one(self, user_id: str, version_id: Optional[str]) -> ImmersionResult:
        try:
            return self.immerser.immerse_user(user_id, version_id)
        except Exception as e:
            logger.debug("Immersion failed for %s", user_id, exc_info=True)
            return ImmersionResult(user_id=str(user_id), error=f"{type(e).__name__}: {e}")

    def run(
        self,
        user_ids: Sequence[str],
        version_id: Optional[str] = None,
        offset: int = 0,
        max_batches: Optional[int] = None,
    ) -> BatchProgress:
        progress = self.runner.run(
            list(user_ids),
            lambda uid: self._immerse_one(uid, version_id),
            offset=offset,
            max_batches=max_batches,
        )
        if progress.cancelled:
            # A cancel stops the run in flight only
            self.runner.token.reset()
        results: List[ImmersionResult] = progress.results
        event_logger.event(
            "immersion_completed",
            version_id=version_id,
            processed=progress.processed,
            failed=sum(1 for r in results if not r.success),
            next_offset=progress.next_offset,
            cancelled=progress.cancelled,
        )
        return progress


__all__ = [
    "IMPLIED_BY_HISTORY",
    "is_implied",
    "ImmersionResult",
    "Immerser",
    "ImmersionJob",
]
