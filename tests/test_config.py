"""Tests for settings loading and validate_config()."""
import os

import pytest

from steamdl.config import CoreSettings, validate_config


def _messages(issues, level=None):
    return [i["message"] for i in issues if level is None or i["level"] == level]


class TestSettingsLoading:
    def test_defaults(self):
        s = CoreSettings()
        assert s.tool_args == ["{target}", "{destination}"]
        assert s.max_runtime_seconds == 3600.0
        assert s.progress_pattern_version == "steamcmd-v1"
        assert s.persist_denied is False

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("STEAMDL_MAX_RUNTIME_SECONDS", "42")
        monkeypatch.setenv("STEAMDL_PERSIST_DENIED", "true")
        monkeypatch.setenv("STEAMDL_TOOL_ARGS", '["+workshop_download_item", "{target}"]')
        s = CoreSettings()
        assert s.max_runtime_seconds == 42.0
        assert s.persist_denied is True
        assert s.tool_args == ["+workshop_download_item", "{target}"]


class TestValidateConfig:
    def test_valid_settings_have_no_issues(self, settings):
        assert validate_config(settings) == []

    def test_missing_tool_is_error(self, settings, tmp_path):
        bad = settings.model_copy(update={"tool_path": str(tmp_path / "nope")})
        errors = _messages(validate_config(bad), "ERROR")
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_args_without_target_warns(self, settings):
        bad = settings.model_copy(update={"tool_args": ["{destination}"]})
        warnings = _messages(validate_config(bad), "WARNING")
        assert any("{target}" in m for m in warnings)

    def test_unknown_pattern_version(self, settings):
        bad = settings.model_copy(update={"progress_pattern_version": "steamcmd-v9"})
        errors = _messages(validate_config(bad), "ERROR")
        assert any("steamcmd-v9" in m and "steamcmd-v1" in m for m in errors)

    @pytest.mark.parametrize("field", ["max_runtime_seconds", "kill_grace_seconds", "subscriber_buffer"])
    def test_non_positive_bounds(self, settings, field):
        bad = settings.model_copy(update={field: 0})
        errors = _messages(validate_config(bad), "ERROR")
        assert f"{field} must be > 0" in errors

    def test_negative_retention(self, settings):
        bad = settings.model_copy(update={"retention_seconds": -1})
        assert "retention_seconds must be >= 0" in _messages(validate_config(bad), "ERROR")

    @pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="root ignores directory permissions")
    def test_read_only_download_root(self, settings, tmp_path):
        root = tmp_path / "ro"
        root.mkdir()
        root.chmod(0o500)
        try:
            bad = settings.model_copy(update={"download_root": root})
            assert any("not writable" in m for m in _messages(validate_config(bad), "ERROR"))
        finally:
            root.chmod(0o700)
