"""
Integration tests for load_config() and validate_config().

Exercises the full YAML -> credentials -> defaults -> pydantic pipeline on
temporary files and on the bundled config/colloquy.yaml.
"""

import pytest

from colloquy.config import AppConfig, load_config, validate_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "GEMINI_API_KEY", "GOOGLE_API_KEY", "LOG_LEVEL",
        "COLLOQUY_INPUT_DEVICE", "COLLOQUY_OUTPUT_DEVICE", "COLLOQUY_CAPTURE_RATE",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Tests for load_config."""

    def test_bundled_config(self, monkeypatch):
        """The shipped YAML loads with the documented defaults."""
        monkeypatch.setenv("GEMINI_API_KEY", "test-key")
        config = load_config()
        assert isinstance(config, AppConfig)
        assert config.gemini.api_key == "test-key"
        assert config.gemini.model == "gemini-2.0-flash-exp"
        assert config.gemini.voice_name == "Fenrir"
        assert config.gemini.response_modalities == ["AUDIO"]
        assert "Colloquy" in config.gemini.instructions
        assert config.audio.frame_size == 2048
        assert config.retry.max_attempts == 3
        assert config.retry.base_delay_ms == 1000
        assert config.retry.max_delay_ms == 5000

    def test_minimal_file_gets_defaults(self, tmp_path):
        config_file = tmp_path / "live.yaml"
        config_file.write_text("gemini:\n  voice_name: Puck\n")
        config = load_config(str(config_file))
        assert config.gemini.voice_name == "Puck"
        assert config.gemini.api_key is None
        assert config.audio.lead_time_ms == 50
        assert config.audio.keepalive_tone_hz == 440.0
        assert config.display.refresh_hz == 60.0

    def test_yaml_api_key_ignored(self, tmp_path):
        config_file = tmp_path / "live.yaml"
        config_file.write_text("gemini:\n  api_key: leaked-in-yaml\n")
        config = load_config(str(config_file))
        assert config.gemini.api_key is None

    def test_env_overrides_flow_through(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COLLOQUY_CAPTURE_RATE", "48000")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        config_file = tmp_path / "live.yaml"
        config_file.write_text("audio:\n  capture_sample_rate_hz: 16000\n")
        config = load_config(str(config_file))
        assert config.audio.capture_sample_rate_hz == 48000
        assert config.logging.level == "warning"


class TestValidateConfig:
    """Tests for validate_config."""

    def test_valid_config(self):
        config = AppConfig(gemini={"api_key": "k", "instructions": "Be brief."})
        errors, warnings = validate_config(config)
        assert errors == []
        assert warnings == []

    def test_missing_api_key_is_error(self):
        errors, _ = validate_config(AppConfig(gemini={"instructions": "x"}))
        assert any("API key" in e for e in errors)

    def test_capture_rate_below_wire_rate(self):
        config = AppConfig(gemini={"api_key": "k", "instructions": "x"}, audio={"capture_sample_rate_hz": 8000})
        errors, _ = validate_config(config)
        assert any("below the wire rate" in e for e in errors)

    def test_non_multiple_capture_rate_warns(self):
        config = AppConfig(gemini={"api_key": "k", "instructions": "x"}, audio={"capture_sample_rate_hz": 44100})
        errors, warnings = validate_config(config)
        assert errors == []
        assert any("interpolated" in w for w in warnings)

    def test_lead_time_bounds_warn(self):
        short = AppConfig(gemini={"api_key": "k", "instructions": "x"}, audio={"lead_time_ms": 5})
        long = AppConfig(gemini={"api_key": "k", "instructions": "x"}, audio={"lead_time_ms": 900})
        assert any("very small" in w for w in validate_config(short)[1])
        assert any("very large" in w for w in validate_config(long)[1])

    def test_missing_persona_warns(self):
        _, warnings = validate_config(AppConfig(gemini={"api_key": "k"}))
        assert any("persona" in w for w in warnings)
