"""
Tests for the settings loader.
"""

import pytest
from pathlib import Path

from lifecycle_engine.settings import load_settings, validate_settings, DotDict, DEFAULTS


class TestDotDict:
    """DotDict access"""

    def test_dot_access(self):
        d = DotDict({"a": 1, "b": {"c": 2}})
        assert d.a == 1
        assert d.b.c == 2

    def test_missing_key_raises(self):
        d = DotDict({"a": 1})
        with pytest.raises(AttributeError):
            _ = d.nonexistent

    def test_get_nested(self):
        d = DotDict({"a": {"b": {"c": 3}}})
        assert d.get_nested("a.b.c") == 3
        assert d.get_nested("a.b.x", "default") == "default"
        assert d.get_nested("a.b.c.d", 0) == 0

    def test_set_attr(self):
        d = DotDict({})
        d.foo = "bar"
        assert d["foo"] == "bar"


class TestLoadSettings:
    """Loading from YAML"""

    def test_load_defaults_when_no_file(self):
        settings = load_settings(Path("/nonexistent/path.yaml"))
        assert settings.fsm.time_window_minutes == DEFAULTS["fsm"]["time_window_minutes"]
        assert settings.dispatch.bulk_limit == 100

    def test_deep_merge(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("fsm:\n  timezone: Europe/Berlin\n", encoding="utf-8")

        settings = load_settings(path)

        assert settings.fsm.timezone == "Europe/Berlin"
        assert settings.fsm.max_immersion_depth == DEFAULTS["fsm"]["max_immersion_depth"]
        assert settings.context.low_balance_threshold == 20

    def test_empty_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path).simulator.max_context_bytes == 65536

    def test_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("dispatch:\n  bulk_limit: 7\n", encoding="utf-8")
        monkeypatch.setenv("LIFECYCLE_SETTINGS", str(path))
        assert load_settings().dispatch.bulk_limit == 7

    def test_shipped_file_is_valid(self):
        settings = load_settings(Path(__file__).parent.parent / "lifecycle_engine" / "settings.yaml")
        assert validate_settings(settings) == []
        assert settings.feature_flags["fsm_engine"] is True


class TestValidateSettings:

    def test_defaults_are_valid(self):
        assert validate_settings(load_settings(Path("/nonexistent.yaml"))) == []

    @pytest.mark.parametrize("yaml_text,expected", [
        ("context:\n  low_balance_threshold: -1\n", "context.low_balance_threshold must be >= 0"),
        ("fsm:\n  time_window_minutes: 0\n", "fsm.time_window_minutes must be between 1 and 1440"),
        ("fsm:\n  time_window_minutes: 2000\n", "fsm.time_window_minutes must be between 1 and 1440"),
        ("fsm:\n  max_immersion_depth: 0\n", "fsm.max_immersion_depth must be >= 1"),
        ("dispatch:\n  bulk_limit: 0\n", "dispatch.bulk_limit must be >= 1"),
        ("dispatch:\n  parallel: 0\n", "dispatch.parallel must be >= 1"),
        ("simulator:\n  max_context_bytes: 0\n", "simulator.max_context_bytes must be >= 1"),
    ])
    def test_errors(self, tmp_path, yaml_text, expected):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml_text, encoding="utf-8")
        assert validate_settings(load_settings(path)) == [expected]
