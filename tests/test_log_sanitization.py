"""
Log sanitization and session correlation tests.

Verifies that credentials never reach rendered log events and that the live
session id is attached to every event emitted inside a session.
"""

from colloquy.logging_config import (
    add_service_context,
    add_session_id,
    sanitize_secrets,
    session_id_var,
    set_session_id,
)


class TestLogSanitization:
    """Tests for the secret sanitization processor."""

    def test_redact_api_key(self):
        """The Gemini key keeps a two-character prefix only."""
        event_dict = {"event": "Connecting", "api_key": "AIzaSyExampleExample"}
        result = sanitize_secrets(None, None, event_dict)
        assert result["api_key"] == "AI***REDACTED***"
        assert result["event"] == "Connecting"

    def test_short_secret_fully_redacted(self):
        result = sanitize_secrets(None, None, {"token": "abc"})
        assert result["token"] == "***REDACTED***"

    def test_suffix_match(self):
        """Keys ending in a sensitive name are redacted too."""
        result = sanitize_secrets(None, None, {"gemini_api_key": "AIzaSyExample", "google_token": "tok-123456"})
        assert "REDACTED" in result["gemini_api_key"]
        assert "REDACTED" in result["google_token"]

    def test_similar_names_untouched(self):
        """passthrough and voice_name are not secrets."""
        event_dict = {"passthrough": "yes", "voice_name": "Fenrir", "frames_dropped": 3}
        assert sanitize_secrets(None, None, dict(event_dict)) == event_dict

    def test_nested_config_dump(self):
        event_dict = {
            "event": "Config loaded",
            "config": {"gemini": {"api_key": "AIzaSyNested", "model": "gemini-2.0-flash-exp"}},
        }
        result = sanitize_secrets(None, None, event_dict)
        assert "REDACTED" in result["config"]["gemini"]["api_key"]
        assert result["config"]["gemini"]["model"] == "gemini-2.0-flash-exp"

    def test_list_of_dicts(self):
        event_dict = {"keys": [{"api_key": "AIzaSyList1"}, {"name": "plain"}]}
        result = sanitize_secrets(None, None, event_dict)
        assert "REDACTED" in result["keys"][0]["api_key"]
        assert result["keys"][1]["name"] == "plain"

    def test_empty_and_none_preserved(self):
        result = sanitize_secrets(None, None, {"api_key": "", "token": None})
        assert result["api_key"] == ""
        assert result["token"] is None


class TestSessionCorrelation:
    """Tests for session id and service context processors."""

    def test_session_id_attached(self):
        token = session_id_var.set(None)
        try:
            session_id = set_session_id()
            assert len(session_id) == 12
            result = add_session_id(None, None, {"event": "Live session connected"})
            assert result["session_id"] == session_id
        finally:
            session_id_var.reset(token)

    def test_explicit_session_id_not_overwritten(self):
        token = session_id_var.set("outer")
        try:
            result = add_session_id(None, None, {"session_id": "inner"})
            assert result["session_id"] == "inner"
        finally:
            session_id_var.reset(token)

    def test_no_session_no_field(self):
        token = session_id_var.set(None)
        try:
            assert "session_id" not in add_session_id(None, None, {"event": "idle"})
        finally:
            session_id_var.reset(token)

    def test_service_context(self):
        result = add_service_context(None, None, {"logger": "colloquy.core.session_supervisor"})
        assert result["service"] == "colloquy"
        assert result["component"] == "colloquy.core.session_supervisor"
