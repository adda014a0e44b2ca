"""Tests for version validation and state distribution."""

from datetime import datetime, timezone

from lifecycle_engine.fsm import validation as validation_module
from lifecycle_engine.fsm.models import FSMVersion
from lifecycle_engine.fsm.stats import state_distribution
from lifecycle_engine.fsm.validation import validate_version


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def version(states, transitions=()):
    return FSMVersion.from_dict({"id": "v", "states": states, "transitions": list(transitions)})


class TestValidateVersion:

    def test_sample_is_clean(self, make_version):
        result = validate_version(FSMVersion.from_dict(make_version()), log=False)
        assert result.is_clean
        assert result.checked_states == 5
        assert result.checked_transitions == 6

    def test_no_initial_state(self):
        result = validate_version(version([{"id": "a"}]), log=False)
        assert result.codes() == ["no_initial_state"]

    def test_multiple_initial_states(self):
        result = validate_version(version([
            {"id": "b", "isInitial": True},
            {"id": "a", "isInitial": True},
        ]), log=False)
        assert result.codes() == ["multiple_initial_states"]
        assert "a is used" in result.warnings[0].message

    def test_duplicate_state_name(self):
        result = validate_version(version([
            {"id": "a", "name": "NEW", "isInitial": True},
            {"id": "b", "name": "NEW"},
        ]), log=False)
        assert result.codes() == ["duplicate_state_name"]
        assert result.warnings[0].state_id == "b"

    def test_transition_problems(self):
        result = validate_version(version(
            [{"id": "a", "isInitial": True}, {"id": "z", "isTerminal": True}],
            [
                {"id": "1", "fromStateId": "z", "toStateId": "a", "triggerEvent": "X"},
                {"id": "2", "fromStateId": "q", "toStateId": "a", "triggerEvent": "X"},
                {"id": "3", "fromStateId": "a", "toStateId": "q", "triggerEvent": "X"},
                {"id": "4", "fromStateId": "a", "toStateId": "z", "triggerType": "TIMEOUT"},
                {"id": "5", "fromStateId": "a", "toStateId": "z", "triggerType": "TIME"},
                {"id": "6", "fromStateId": "a", "toStateId": "z", "triggerType": "EVENT"},
            ],
        ), log=False)
        assert result.codes() == [
            "terminal_has_transitions",
            "unknown_from_state",
            "unknown_to_state",
            "missing_timeout",
            "missing_time_from",
            "missing_trigger_event",
        ]
        assert [w.transition_id for w in result.warnings] == ["1", "2", "3", "4", "5", "6"]

    def test_unknown_field(self):
        result = validate_version(version(
            [{"id": "a", "isInitial": True}, {"id": "b"}],
            [{"id": "1", "fromStateId": "a", "toStateId": "b", "triggerEvent": "X",
              "conditions": "mood == happy AND credits > 1"}],
        ), log=False)
        assert result.codes() == ["unknown_field"]
        assert "mood" in result.warnings[0].message

    def test_warnings_logged(self, monkeypatch):
        events = []
        monkeypatch.setattr(validation_module.event_logger, "event",
                            lambda event_type, **kw: events.append((event_type, kw)))
        validate_version(version([{"id": "a"}]))
        assert events == [("fsm_config_warning", {
            "version_id": "v",
            "code": "no_initial_state",
            "warning": "Version has no initial state",
        })]

    def test_to_dict(self):
        data = validate_version(version([{"id": "a"}]), log=False).to_dict()
        assert data["isClean"] is False
        assert data["warnings"][0]["code"] == "no_initial_state"


class TestStateDistribution:

    def test_counts_including_empty_states(self, make_version, state_store):
        v = FSMVersion.from_dict(make_version())
        state_store.commit_transition("a", "v1", "s1", NOW)
        state_store.commit_transition("b", "v1", "s1", NOW)
        state_store.commit_transition("c", "v1", "s3", NOW)
        state_store.commit_transition("d", "other", "s3", NOW)

        dist = state_distribution(v, state_store)

        assert dist.total == 3
        assert dist.orphaned == 0
        assert [s.count for s in dist.states] == [2, 0, 1, 0, 0]
        assert dist.count_for("s3") == 1
        assert dist.count_for("nope") == 0

    def test_orphaned_users(self, make_version, state_store):
        v = FSMVersion.from_dict(make_version())
        state_store.commit_transition("a", "v1", "deleted", NOW)
        dist = state_distribution(v, state_store)
        assert dist.total == 1
        assert dist.orphaned == 1

    def test_to_dict(self, make_version, state_store):
        dist = state_distribution(FSMVersion.from_dict(make_version()), state_store).to_dict()
        assert dist["versionId"] == "v1"
        assert dist["total"] == 0
        assert dist["states"][0] == {
            "stateId": "s1", "name": "NEW", "count": 0, "isInitial": True, "isTerminal": False,
        }
