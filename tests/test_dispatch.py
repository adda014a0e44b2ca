"""
Tests for action handlers, the dispatcher and bulk actions.

Bulk actions must isolate failures per user: one user's handler raising
never prevents the others from being processed.
"""

from unittest.mock import Mock

import pytest

from lifecycle_engine.dispatch import dispatcher as dispatcher_module
from lifecycle_engine.dispatch.batch import BatchRunner
from lifecycle_engine.dispatch.dispatcher import (
    ActionDispatcher,
    UnknownActionTypeError,
    _as_result,
)
from lifecycle_engine.dispatch.handlers import (
    ActionRecorder,
    ActionResult,
    HandlerRegistry,
    build_default_registry,
    recording_registry,
)
from lifecycle_engine.rules.models import Action


class FlakyTagStore(ActionRecorder):
    """Raises for selected users."""

    def __init__(self, failing):
        super().__init__()
        self.failing = set(failing)

    def add_tag(self, user_id, tag):
        if user_id in self.failing:
            raise ConnectionError(f"tag store down for {user_id}")
        super().add_tag(user_id, tag)


class TestHandlers:

    def test_tag_user(self, recorder):
        registry = recording_registry(recorder)
        result = registry.get("TAG_USER").execute("u1", {"tag": " vip "})
        assert result.success
        assert recorder.calls == [("tag", "u1", {"tag": "vip"})]

    def test_tag_user_requires_tag(self, recorder):
        result = recording_registry(recorder).get("TAG_USER").execute("u1", {})
        assert not result.success
        assert recorder.calls == []

    def test_send_message_requires_text(self, recorder):
        assert not recording_registry(recorder).get("SEND_MESSAGE").execute("u1", {}).success

    def test_special_offer(self, recorder):
        recording_registry(recorder).get("SEND_SPECIAL_OFFER").execute("u1", {"offer": "PACK_100"})
        assert recorder.calls[0][2] == {"text": "", "options": {"offer": "PACK_100", "kind": "special_offer"}}

    @pytest.mark.parametrize("config,ok", [
        ({"amount": 10}, True),
        ({"amount": "5", "hours": 48}, True),
        ({"amount": 0}, False),
        ({"amount": "lots"}, False),
        ({}, False),
    ])
    def test_burnable_bonus(self, recorder, config, ok):
        result = recording_registry(recorder).get("GRANT_BURNABLE_BONUS").execute("u1", config)
        assert result.success is ok

    def test_bonus_default_hours(self, recorder):
        recording_registry(recorder).get("GRANT_BURNABLE_BONUS").execute("u1", {"amount": 3})
        assert recorder.calls[0][2]["hours"] == 24.0

    def test_emit_event(self, recorder):
        registry = recording_registry(recorder)
        assert registry.get("EMIT_EVENT").execute("u1", {"event": "upsell", "payload": {"a": 1}}).success
        assert not registry.get("EMIT_EVENT").execute("u1", {}).success
        assert not registry.get("EMIT_EVENT").execute("u1", {"event": "x", "payload": [1]}).success

    def test_overlay_defaults_to_tripwire(self, recorder):
        registry = recording_registry(recorder)
        registry.get("ACTIVATE_OVERLAY").execute("u1", {"discount": 20})
        registry.get("DEACTIVATE_OVERLAY").execute("u1", {"type": "bonus"})
        assert recorder.calls == [
            ("overlay_on", "u1", {"overlay_type": "TRIPWIRE", "params": {"discount": 20}}),
            ("overlay_off", "u1", {"overlay_type": "BONUS"}),
        ]

    def test_default_registry_only_wires_given_collaborators(self):
        registry = build_default_registry()
        assert registry.types() == ["LOG_EVENT", "NO_ACTION", "NO_OP"]
        assert "TAG_USER" not in registry

    def test_registry_case_insensitive(self):
        registry = HandlerRegistry()
        registry.register("tag_user", object())
        assert registry.has("TAG_USER")
        assert len(registry) == 1


class TestResultCoercion:

    @pytest.mark.parametrize("value,success", [
        (None, True),
        (True, True),
        (False, False),
        ({"success": True}, True),
        ({"success": False, "error": "x"}, False),
        ("anything", True),
    ])
    def test_as_result(self, value, success):
        assert _as_result(value).success is success

    def test_passthrough(self):
        result = ActionResult.failed("nope")
        assert _as_result(result) is result


class TestDispatch:

    def test_order_and_isolation(self, recorder):
        registry = recording_registry(recorder)
        dispatcher = ActionDispatcher(registry)
        report = dispatcher.dispatch("u1", [
            Action("SEND_MESSAGE", {"text": "second"}, order=2),
            Action("TAG_USER", {}, order=1),
            Action("TAG_USER", {"tag": "first"}, order=0),
            Action("MISSING", {}, order=3),
        ])

        assert [o.action_type for o in report.outcomes] == ["TAG_USER", "TAG_USER", "SEND_MESSAGE", "MISSING"]
        assert [o.success for o in report.outcomes] == [True, False, True, False]
        assert report.success_count == 2
        assert report.fail_count == 2
        assert "No handler" in report.outcomes[3].error
        assert [c[0] for c in recorder.calls] == ["tag", "message"]

    def test_handler_exception_becomes_failure(self):
        registry = build_default_registry(tag_store=FlakyTagStore(["u1"]))
        report = ActionDispatcher(registry).dispatch("u1", [
            {"type": "TAG_USER", "config": {"tag": "x"}},
            {"type": "NO_OP"},
        ])
        assert report.outcomes[0].error == "ConnectionError: tag store down for u1"
        assert report.outcomes[1].success

    def test_custom_handler_receives_user_and_config(self):
        handler = Mock()
        handler.execute.return_value = ActionResult.ok()
        registry = HandlerRegistry()
        registry.register("award_badge", handler)

        report = ActionDispatcher(registry).dispatch("u1", [{"type": "AWARD_BADGE", "config": {"badge": "gold"}}])

        assert report.success
        handler.execute.assert_called_once_with("u1", {"badge": "gold"})

    def test_failure_event(self, monkeypatch):
        events = []
        monkeypatch.setattr(dispatcher_module.event_logger, "event",
                            lambda event_type, **kw: events.append((event_type, kw)))
        ActionDispatcher(HandlerRegistry()).dispatch("u9", [{"type": "TAG_USER"}])
        assert events[0][0] == "action_failed"
        assert events[0][1]["target_user"] == "u9"

    def test_report_to_dict(self, recorder):
        report = ActionDispatcher(recording_registry(recorder)).dispatch("u1", [{"type": "NO_OP"}])
        assert report.to_dict() == {
            "userId": "u1",
            "successCount": 1,
            "failCount": 0,
            "outcomes": [{"type": "NO_OP", "order": 0, "success": True}],
        }


class TestBulkAction:

    def test_partial_failure(self, context_provider):
        tags = FlakyTagStore(["B"])
        dispatcher = ActionDispatcher(
            build_default_registry(tag_store=tags),
            context_provider=context_provider,
            runner=BatchRunner(batch_size=2),
        )
        result = dispatcher.dispatch_bulk_action(["A", "B", "C"], "TAG_USER", {"tag": "promo"})

        assert result.success_count == 2
        assert result.fail_count == 1
        assert result.skipped_count == 0
        assert result.processed == 3
        assert [r.user_id for r in result.per_user_results] == ["A", "B", "C"]
        assert tags.calls == [("tag", "A", {"tag": "promo"}), ("tag", "C", {"tag": "promo"})]
        assert "tag store down" in result.per_user_results[1].error

    def test_unknown_action_type(self, dispatcher, recorder):
        with pytest.raises(UnknownActionTypeError):
            dispatcher.dispatch_bulk_action(["u1"], "LAUNCH_ROCKETS")
        assert recorder.calls == []

    def test_action_type_case_insensitive(self, dispatcher, recorder):
        result = dispatcher.dispatch_bulk_action(["u1"], "tag_user", {"tag": "x"})
        assert result.success_count == 1

    def test_bulk_limit(self, recorder, context_provider):
        dispatcher = ActionDispatcher(recording_registry(recorder), context_provider, bulk_limit=2)
        result = dispatcher.dispatch_bulk_action(["u1", "u2", "u3"], "NO_OP")
        assert result.limit_reached
        assert result.processed == 2

    def test_preconditions_skip(self, dispatcher, recorder):
        result = dispatcher.dispatch_bulk_action(
            ["u1", "u2", "u3"],
            "TAG_USER",
            {"tag": "low"},
            conditions=[{"field": "credits_balance", "operator": "LT", "value": "20"}],
        )
        assert result.success_count == 2
        assert result.skipped_count == 1
        assert result.per_user_results[1].skipped
        assert [c[1] for c in recorder.calls] == ["u1", "u3"]

    def test_preconditions_flag_off(self, dispatcher, feature_flags_override):
        with feature_flags_override(bulk_precondition_check=False):
            result = dispatcher.dispatch_bulk_action(
                ["u1", "u2"], "NO_OP",
                conditions=[{"field": "credits_balance", "operator": "LT", "value": "20"}],
            )
        assert result.success_count == 2

    def test_missing_user_context_fails(self, dispatcher):
        result = dispatcher.dispatch_bulk_action(
            ["ghost"], "NO_OP",
            conditions=[{"field": "credits", "operator": "EXISTS"}],
        )
        assert result.fail_count == 1
        assert "Context unavailable" in result.per_user_results[0].error

    def test_to_dict(self, dispatcher):
        data = dispatcher.dispatch_bulk_action(["u1"], "NO_OP").to_dict()
        assert data == {
            "processed": 1,
            "successCount": 1,
            "failCount": 0,
            "skippedCount": 0,
            "limitReached": False,
            "cancelled": False,
            "nextOffset": 1,
            "done": True,
            "results": [{"userId": "u1", "success": True, "skipped": False}],
        }


class CancellingTagStore(ActionRecorder):
    """Cancels the owning dispatcher's bulk run when tagging a given user."""

    def __init__(self, cancel_on):
        super().__init__()
        self.cancel_on = cancel_on
        self.dispatcher = None

    def add_tag(self, user_id, tag):
        super().add_tag(user_id, tag)
        if user_id == self.cancel_on:
            self.dispatcher.cancel_bulk()


class TestBulkCancellation:

    @pytest.fixture
    def tags(self):
        return CancellingTagStore(cancel_on="u2")

    @pytest.fixture
    def bulk_dispatcher(self, tags, context_provider):
        dispatcher = ActionDispatcher(
            build_default_registry(tag_store=tags),
            context_provider=context_provider,
            runner=BatchRunner(batch_size=2),
        )
        tags.dispatcher = dispatcher
        return dispatcher

    def test_cancel_stops_between_batches(self, bulk_dispatcher, tags):
        result = bulk_dispatcher.dispatch_bulk_action(["u1", "u2", "u3", "u4"], "TAG_USER", {"tag": "x"})

        assert result.cancelled
        assert result.processed == 2
        assert result.next_offset == 2
        assert not result.done
        assert [c[1] for c in tags.calls] == ["u1", "u2"]

    def test_resume_from_offset(self, bulk_dispatcher, tags):
        ids = ["u1", "u2", "u3", "u4"]
        first = bulk_dispatcher.dispatch_bulk_action(ids, "TAG_USER", {"tag": "x"})
        second = bulk_dispatcher.dispatch_bulk_action(ids, "TAG_USER", {"tag": "x"}, offset=first.next_offset)

        assert not second.cancelled
        assert second.done
        assert [r.user_id for r in second.per_user_results] == ["u3", "u4"]
        assert [c[1] for c in tags.calls] == ["u1", "u2", "u3", "u4"]

    def test_cancel_does_not_leak_into_next_request(self, dispatcher, recorder):
        dispatcher.cancel_bulk()
        cancelled = dispatcher.dispatch_bulk_action(["a", "b", "c"], "NO_OP")
        assert cancelled.cancelled
        assert cancelled.processed == 0
        assert cancelled.next_offset == 0

        result = dispatcher.dispatch_bulk_action(["x"], "NO_OP")
        assert not result.cancelled
        assert result.success_count == 1

    def test_pause_with_max_batches(self, dispatcher):
        ids = ["u1", "u2", "u3"]
        paused = dispatcher.dispatch_bulk_action(ids, "NO_OP", max_batches=1)
        assert not paused.cancelled
        assert paused.processed == 2
        assert paused.next_offset == 2

        rest = dispatcher.dispatch_bulk_action(ids, "NO_OP", offset=paused.next_offset)
        assert [r.user_id for r in rest.per_user_results] == ["u3"]
        assert rest.done

    def test_negative_offset(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.dispatch_bulk_action(["u1"], "NO_OP", offset=-1)
