"""Tests for environment configuration, connection profiles and logging setup."""

import logging

import pytest
from pydantic import ValidationError

from cdpwire.browser.profile import ConnectionProfile
from cdpwire.config import CONFIG, Config
from cdpwire.logging_config import setup_logging


class TestConfig:
    """CONFIG re-reads the environment on every access."""

    def test_singleton(self):
        assert Config() is CONFIG

    def test_defaults(self, monkeypatch):
        for name in (
            "CDPWIRE_LOGGING_LEVEL",
            "CDPWIRE_CDP_URL",
            "CDPWIRE_PROTOCOL_TIMEOUT_MS",
            "CDPWIRE_WAIT_FOR_INITIAL_TARGETS",
            "CDPWIRE_USE_TAB_TARGET",
        ):
            monkeypatch.delenv(name, raising=False)
        assert CONFIG.LOGGING_LEVEL == "info"
        assert CONFIG.CDP_URL is None
        assert CONFIG.PROTOCOL_TIMEOUT_MS == 180_000
        assert CONFIG.WAIT_FOR_INITIAL_TARGETS is True
        assert CONFIG.USE_TAB_TARGET is False

    def test_values_follow_environment(self, monkeypatch):
        monkeypatch.setenv("CDPWIRE_PROTOCOL_TIMEOUT_MS", "5000")
        assert CONFIG.PROTOCOL_TIMEOUT_MS == 5000
        monkeypatch.setenv("CDPWIRE_PROTOCOL_TIMEOUT_MS", "0")
        assert CONFIG.PROTOCOL_TIMEOUT_MS == 0
        monkeypatch.setenv("CDPWIRE_USE_TAB_TARGET", "True")
        assert CONFIG.USE_TAB_TARGET is True
        monkeypatch.setenv("CDP_LOGGING_LEVEL", "debug")
        assert CONFIG.CDP_LOGGING_LEVEL == "DEBUG"

    def test_bad_integer_falls_back(self, monkeypatch, caplog):
        monkeypatch.setenv("CDPWIRE_SLOW_MO_MS", "fast")
        with caplog.at_level(logging.WARNING, logger="cdpwire.config"):
            assert CONFIG.SLOW_MO_MS == 0
        assert "CDPWIRE_SLOW_MO_MS" in caplog.text

    def test_validated_snapshot_rejects_negative_timeout(self, monkeypatch):
        monkeypatch.setenv("CDPWIRE_PROTOCOL_TIMEOUT_MS", "-1")
        with pytest.raises(ValidationError):
            CONFIG.env()


class TestConnectionProfile:
    """Profiles built from the environment and from keyword arguments."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CDPWIRE_CDP_URL", "http://localhost:9222")
        monkeypatch.setenv("CDPWIRE_PROTOCOL_TIMEOUT_MS", "30000")
        monkeypatch.setenv("CDPWIRE_WAIT_FOR_INITIAL_TARGETS", "false")
        profile = ConnectionProfile.from_env()
        assert profile.cdp_url == "http://localhost:9222"
        assert profile.protocol_timeout_ms == 30_000
        assert profile.wait_for_initial_targets is False

    def test_overrides_win_and_none_is_ignored(self, monkeypatch):
        monkeypatch.setenv("CDPWIRE_CDP_URL", "http://localhost:9222")
        profile = ConnectionProfile.from_env(cdp_url=None, slow_mo_ms=50, use_tab_target=True)
        assert profile.cdp_url == "http://localhost:9222"
        assert profile.slow_mo_ms == 50
        assert profile.use_tab_target is True

    def test_validation(self):
        with pytest.raises(ValidationError):
            ConnectionProfile(protocol_timeout_ms=-5)
        profile = ConnectionProfile()
        with pytest.raises(ValidationError):
            profile.slow_mo_ms = -1

    def test_callables_are_accepted(self):
        profile = ConnectionProfile(target_filter=lambda info: info.type == "page")
        assert profile.target_filter is not None
        assert profile.is_target_exposed is None


class TestSetupLogging:
    """The package logger gets one console handler."""

    def test_levels_and_single_handler(self):
        logger = setup_logging("debug", wire_level="warning")
        setup_logging("info", wire_level="warning")
        handlers = [handler for handler in logger.handlers if handler.get_name() == "cdpwire-console"]
        assert len(handlers) == 1
        assert logger.level == logging.INFO
        assert logging.getLogger("cdpwire.wire").getEffectiveLevel() == logging.WARNING

    def test_unknown_level_name_falls_back_to_info(self):
        assert setup_logging("chatty").level == logging.INFO
