"""
Tests for perpsim/settings.py - environment-driven defaults.

Tests cover:
- get_engine_defaults() falls back to perpsim.config constants
- PERPSIM_* overrides and invalid values
- load_config() reading an explicit .env file
- get_log_level() validation
- BacktestConfig.from_settings()
"""

import pytest

from perpsim import config, settings
from perpsim.models import BacktestConfig, BacktestConfigError

ENV_VARS = (
    "PERPSIM_FEE_RATE",
    "PERPSIM_MAINTENANCE_BUFFER",
    "PERPSIM_DECISION_TIMEOUT",
    "PERPSIM_MAX_POSITION_FRACTION",
    "PERPSIM_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate tests from the caller's environment and any project .env."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(settings, "_CONFIG_LOADED", True)


class TestEngineDefaults:
    """Tests for get_engine_defaults()."""

    def test_constants_when_unset(self):
        defaults = settings.get_engine_defaults()
        assert defaults["fee_rate"] == config.TAKER_FEE_RATE
        assert defaults["maintenance_margin_buffer"] == config.MAINTENANCE_MARGIN_BUFFER
        assert defaults["decision_timeout_seconds"] == config.DECISION_TIMEOUT_SECONDS
        assert defaults["max_position_fraction"] == config.MAX_POSITION_FRACTION

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PERPSIM_FEE_RATE", "0.0004")
        monkeypatch.setenv("PERPSIM_DECISION_TIMEOUT", "5")
        defaults = settings.get_engine_defaults()
        assert defaults["fee_rate"] == 0.0004
        assert defaults["decision_timeout_seconds"] == 5.0

    def test_invalid_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("PERPSIM_FEE_RATE", "cheap")
        assert settings.get_engine_defaults()["fee_rate"] == config.TAKER_FEE_RATE

    def test_blank_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("PERPSIM_MAX_POSITION_FRACTION", "  ")
        assert settings.get_engine_defaults()["max_position_fraction"] == config.MAX_POSITION_FRACTION


class TestLoadConfig:
    """Tests for load_config()."""

    def test_reads_env_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("PERPSIM_MAINTENANCE_BUFFER=0.005\n")
        # Registered so monkeypatch removes the value the file sets
        monkeypatch.setenv("PERPSIM_MAINTENANCE_BUFFER", "0")
        assert settings.load_config(force_reload=True, env_path=env_file) is True
        assert settings.get_engine_defaults()["maintenance_margin_buffer"] == 0.005

    def test_missing_env_file(self, tmp_path):
        assert settings.load_config(force_reload=True, env_path=tmp_path / "missing.env") is False

    def test_loaded_once(self, tmp_path):
        assert settings.load_config(env_path=tmp_path / ".env") is False


class TestLogLevel:
    """Tests for get_log_level()."""

    def test_default(self):
        assert settings.get_log_level() == config.LOG_LEVEL

    def test_override(self, monkeypatch):
        monkeypatch.setenv("PERPSIM_LOG_LEVEL", "debug")
        assert settings.get_log_level() == "DEBUG"

    def test_unknown_level(self, monkeypatch):
        monkeypatch.setenv("PERPSIM_LOG_LEVEL", "CHATTY")
        assert settings.get_log_level() == config.LOG_LEVEL


class TestFromSettings:
    """Tests for BacktestConfig.from_settings()."""

    def test_env_defaults_applied(self, monkeypatch, t0):
        monkeypatch.setenv("PERPSIM_FEE_RATE", "0.001")
        cfg = BacktestConfig.from_settings(
            instruments="BTC", start_time=t0, end_time=t0.replace(day=2)
        )
        assert cfg.fee_rate == 0.001
        assert cfg.instruments == ("BTC",)

    def test_explicit_argument_wins(self, monkeypatch, t0):
        monkeypatch.setenv("PERPSIM_FEE_RATE", "0.001")
        cfg = BacktestConfig.from_settings(
            instruments=("BTC",), start_time=t0, end_time=t0.replace(day=2), fee_rate=0.0
        )
        assert cfg.fee_rate == 0.0

    def test_invalid_env_value_still_validated(self, monkeypatch, t0):
        monkeypatch.setenv("PERPSIM_MAX_POSITION_FRACTION", "1.5")
        with pytest.raises(BacktestConfigError):
            BacktestConfig.from_settings(
                instruments=("BTC",), start_time=t0, end_time=t0.replace(day=2)
            )
