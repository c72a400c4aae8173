"""Tests for startup configuration validation."""

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from coaching.config import Settings


def _settings(**overrides) -> Settings:
    values = {"anthropic_api_key": "sk-ant-real", "deepgram_api_key": "dg-real"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestValidateStartup:
    def test_valid_config_has_no_warnings(self):
        assert _settings().validate_startup() == []

    @pytest.mark.parametrize("key", ["", "sk-ant-..."])
    def test_missing_anthropic_key_raises(self, key):
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            _settings(anthropic_api_key=key).validate_startup()

    def test_missing_deepgram_key_warns(self):
        warnings = _settings(deepgram_api_key="").validate_startup()
        assert len(warnings) == 1
        assert "DEEPGRAM_API_KEY" in warnings[0]

    def test_recent_window_must_be_positive(self):
        with pytest.raises(ValueError, match="RECENT_TURNS_LIMIT"):
            _settings(recent_turns_limit=0).validate_startup()


class TestDefaults:
    def test_context_window_defaults(self):
        s = _settings()
        assert s.recent_turns_limit == 6
        assert s.summarize_threshold == 10
        assert s.max_response_chars == 200

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SUMMARIZE_THRESHOLD", "14")
        monkeypatch.setenv("TELEPHONY_SPEAKER", "caller")
        s = _settings()
        assert s.summarize_threshold == 14
        assert s.telephony_speaker == "caller"
