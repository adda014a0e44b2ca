"""
Action dispatcher.

Sequences actions and isolates failures: every action's outcome is recorded
independently and a failing action never stops the next one (or the next
user in a bulk run). Nothing is rolled back.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from lifecycle_engine.conditions.base import ConditionLike, ConditionSet
from lifecycle_engine.dispatch.batch import BatchRunner
from lifecycle_engine.dispatch.handlers import ActionResult, HandlerRegistry
from lifecycle_engine.feature_flags import flags
from lifecycle_engine.logger import logger as event_logger
from lifecycle_engine.rules.matcher import condition_set_passes
from lifecycle_engine.rules.models import Action, ordered_actions
from lifecycle_engine.settings import settings
from lifecycle_engine.stores.protocols import ContextProvider

logger = logging.getLogger(__name__)


class UnknownActionTypeError(ValueError):
    """Raised when a bulk request names an action type without a handler."""

    def __init__(self, action_type: Any):
        self.action_type = action_type
        super().__init__(f"Unknown action type {action_type!r}")


@dataclass
class ActionOutcome:
    action_type: str
    order: int
    success: bool
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": self.action_type, "order": self.order, "success": self.success}
        if self.error:
            result["error"] = self.error
        if self.data:
            result["data"] = self.data
        return result


@dataclass
class DispatchReport:
    """Outcomes of one user's action list, in execution order."""
    user_id: str
    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def fail_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def success(self) -> bool:
        return self.fail_count == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class BulkUserResult:
    user_id: str
    success: bool
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"userId": self.user_id, "success": self.success, "skipped": self.skipped}
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class BulkDispatchResult:
    """
    Summary of a manual bulk action. Always returned, even under partial failure.

    A cancelled or paused request stops between batches; ``next_offset``
    is where a follow-up request with the same user ids resumes.
    """
    success_count: int = 0
    fail_count: int = 0
    skipped_count: int = 0
    per_user_results: List[BulkUserResult] = field(default_factory=list)
    limit_reached: bool = False
    cancelled: bool = False
    next_offset: int = 0
    total: int = 0

    @property
    def processed(self) -> int:
        return len(self.per_user_results)

    @property
    def done(self) -> bool:
        return self.next_offset >= self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "skippedCount": self.skipped_count,
            "limitReached": self.limit_reached,
            "cancelled": self.cancelled,
            "nextOffset": self.next_offset,
            "done": self.done,
            "results": [r.to_dict() for r in self.per_user_results],
        }


def _as_result(value: Any) -> ActionResult:
    if isinstance(value, ActionResult):
        return value
    if value is None or value is True:
        return ActionResult.ok()
    if value is False:
        return ActionResult.failed("handler returned False")
    if isinstance(value, Mapping):
        return ActionResult(success=bool(value.get("success")), error=value.get("error"))
    return ActionResult.ok(result=value)


class ActionDispatcher:
    """
    Runs action lists through a HandlerRegistry.

    Args:
        registry: Handlers by action type
        context_provider: Needed for bulk precondition checks
        runner: Batch runner for bulk actions
        bulk_limit: Max users per bulk request (``dispatch.bulk_limit``)
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        context_provider: Optional[ContextProvider] = None,
        runner: Optional[BatchRunner] = None,
        bulk_limit: Optional[int] = None,
    ):
        self.registry = registry
        self.context_provider = context_provider
        self.runner = runner or BatchRunner()
        self.bulk_limit = int(bulk_limit or settings.get_nested("dispatch.bulk_limit", 100))

    def cancel_bulk(self) -> None:
        """Stop the running bulk action before its next batch."""
        self.runner.cancel()

    def execute_action(self, user_id: str, action: Action) -> ActionOutcome:
        """Run one action; any handler exception becomes a failed outcome."""
        handler = self.registry.get(action.type)
        if handler is None:
            outcome = ActionOutcome(action.type, action.order, False, f"No handler for action type {action.type!r}")
        else:
            try:
                result = _as_result(handler.execute(str(user_id), dict(action.config)))
                outcome = ActionOutcome(action.type, action.order, result.success, result.error, result.data)
            except Exception as e:
                logger.debug("Action %s failed for user %s", action.type, user_id, exc_info=True)
                outcome = ActionOutcome(action.type, action.order, False, f"{type(e).__name__}: {e}")

        if not outcome.success:
            event_logger.event(
                "action_failed",
                target_user=str(user_id),
                action_type=action.type,
                error=outcome.error,
            )
        return outcome

    def dispatch(
        self,
        user_id: str,
        actions: Iterable[Union[Action, Mapping[str, Any]]],
    ) -> DispatchReport:
        """Execute actions in ascending ``order``; failures never stop later actions."""
        report = DispatchReport(user_id=str(user_id))
        for action in ordered_actions(actions):
            report.outcomes.append(self.execute_action(user_id, action))
        return report

    def _bulk_one(
        self,
        user_id: str,
        action: Action,
        conditions: Optional[ConditionSet],
    ) -> BulkUserResult:
        if conditions is not None:
            if self.context_provider is None:
                return BulkUserResult(user_id, False, error="No context provider for precondition check")
            try:
                ctx = self.context_provider.get_context(user_id)
            except Exception as e:
                return BulkUserResult(user_id, False, error=f"Context unavailable: {e}")
            if not condition_set_passes(conditions, ctx):
                return BulkUserResult(user_id, False, skipped=True)

        outcome = self.execute_action(user_id, action)
        return BulkUserResult(user_id, outcome.success, error=outcome.error)

    def dispatch_bulk_action(
        self,
        user_ids: Sequence[Any],
        action_type: str,
        config: Optional[Mapping[str, Any]] = None,
        conditions: Union[ConditionSet, Iterable[ConditionLike], None] = None,
        offset: int = 0,
        max_batches: Optional[int] = None,
    ) -> BulkDispatchResult:
        """
        Apply one action to many users.

        Only the first ``bulk_limit`` ids are processed (``limit_reached``
        reports the truncation). With conditions given and the
        ``bulk_precondition_check`` flag on, users whose conditions no longer
        hold are skipped.

        Args:
            offset: Resume point into the (truncated) id list
            max_batches: Pause after this many batches

        Raises:
            UnknownActionTypeError: Before any user is touched
            ValueError: Negative offset
        """
        action_type = str(action_type or "").strip().upper()
        if not self.registry.has(action_type):
            raise UnknownActionTypeError(action_type)

        action = Action(type=action_type, config=dict(config or {}))
        condition_set = None
        if conditions is not None and flags.bulk_precondition_check:
            condition_set = ConditionSet.coerce(conditions)
            if condition_set.is_empty:
                condition_set = None

        ids = [str(uid) for uid in user_ids]
        selected = ids[:self.bulk_limit]
        progress = self.runner.run(
            selected,
            lambda uid: self._bulk_one(uid, action, condition_set),
            offset=offset,
            max_batches=max_batches,
        )
        if progress.cancelled:
            # A cancel stops the request in flight only
            self.runner.token.reset()

        result = BulkDispatchResult(
            per_user_results=list(progress.results),
            limit_reached=len(ids) > self.bulk_limit,
            cancelled=progress.cancelled,
            next_offset=progress.next_offset,
            total=progress.total,
        )
        for r in result.per_user_results:
            if r.success:
                result.success_count += 1
            elif r.skipped:
                result.skipped_count += 1
            else:
                result.fail_count += 1

        event_logger.event(
            "bulk_dispatch_completed",
            action_type=action_type,
            processed=result.processed,
            success=result.success_count,
            failed=result.fail_count,
            skipped=result.skipped_count,
            limit_reached=result.limit_reached,
            cancelled=result.cancelled,
            next_offset=result.next_offset,
        )
        return result


__all__ = [
    "UnknownActionTypeError",
    "ActionOutcome",
    "DispatchReport",
    "BulkUserResult",
    "BulkDispatchResult",
    "ActionDispatcher",
]
