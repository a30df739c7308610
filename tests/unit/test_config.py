"""Tests for settings and structured logging."""

import json
import logging

import pytest

from tally_engine.common.config import TallySettings, get_settings
from tally_engine.common.logging import JSONFormatter, get_logger, setup_logging


class TestSettings:
    def test_defaults_to_hosted(self):
        settings = TallySettings()
        assert settings.standalone is False
        assert settings.deployment_mode == "hosted"

    def test_standalone_from_env(self, monkeypatch):
        monkeypatch.setenv("TALLY_STANDALONE", "true")
        get_settings.cache_clear()
        try:
            settings = get_settings()
            assert settings.standalone is True
            assert settings.deployment_mode == "standalone"
        finally:
            get_settings.cache_clear()

    def test_unknown_log_level_rejected(self):
        with pytest.raises(RuntimeError, match="Unknown log level"):
            TallySettings(log_level="LOUD").validate_for_production()

    def test_debug_in_production_warns(self):
        with pytest.warns(UserWarning, match="Debug logging"):
            TallySettings(environment="production", log_level="debug").validate_for_production()


class TestLogging:
    def test_json_formatter_includes_context(self):
        record = logging.LogRecord(
            "tally_engine.pools.rules", logging.WARNING, __file__, 1,
            "flagging pool %s", ("pool-1",), None,
        )
        record.pool_id = "pool-1"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["logger"] == "tally_engine.pools.rules"
        assert entry["message"] == "flagging pool pool-1"
        assert entry["pool_id"] == "pool-1"
        assert "subscription_id" not in entry

    def test_setup_logging_replaces_handler(self):
        setup_logging("DEBUG")
        setup_logging("WARNING", json_lines=False)

        root = logging.getLogger("tally_engine")
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_get_logger_scoped(self):
        assert get_logger("pools").name == "tally_engine.pools"
