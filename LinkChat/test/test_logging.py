"""
Tests for the logging setup.
"""

import json
import logging

from LinkChat.core.logging import JsonFormatter, LogConfig, LoggingManager, create_testing_config


class TestLoggingManager:
    """Tests for LoggingManager."""

    def setup_method(self):
        self.manager = LoggingManager()
        self.root_level = logging.getLogger().level

    def teardown_method(self):
        # drop every handler this manager installed
        self.manager.configure(LogConfig(console_output=False))
        logging.getLogger().setLevel(self.root_level)

    def test_file_output(self, tmp_path):
        """Test records and errors land in their rotating files."""
        self.manager.configure(LogConfig(
            level="INFO", console_output=False, file_output=True, log_dir=str(tmp_path)
        ))
        logger = logging.getLogger("LinkChat.test.logging")
        logger.info("hello file")
        logger.error("bad thing")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "hello file" in (tmp_path / "linkchat.log").read_text(encoding="utf-8")
        errors = (tmp_path / "linkchat_errors.log").read_text(encoding="utf-8")
        assert "bad thing" in errors
        assert "hello file" not in errors

    def test_reconfigure_replaces_handlers(self, tmp_path):
        """Test configuring twice does not stack handlers."""
        config = LogConfig(console_output=False, file_output=True, log_dir=str(tmp_path))
        self.manager.configure(config)
        self.manager.configure(config)

        installed = [h for h in logging.getLogger().handlers if h in self.manager._handlers]
        assert len(installed) == 2
        assert self.manager.config is config

    def test_component_levels(self):
        """Test per-component overrides are applied."""
        self.manager.configure(create_testing_config())

        assert logging.getLogger("websockets").level == logging.ERROR

    def test_set_level_keeps_error_handler(self, tmp_path):
        """Test changing the level leaves the errors-only file alone."""
        self.manager.configure(LogConfig(console_output=False, file_output=True, log_dir=str(tmp_path)))

        self.manager.set_level("WARNING")

        assert logging.getLogger().level == logging.WARNING
        levels = sorted(h.level for h in self.manager._handlers)
        assert levels == [logging.WARNING, logging.ERROR]


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_format(self):
        """Test a record becomes one JSON object."""
        record = logging.LogRecord("LinkChat.x", logging.WARNING, __file__, 10, "user %s", ("alice",), None)

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["logger"] == "LinkChat.x"
        assert data["message"] == "user alice"
        assert data["line"] == 10
