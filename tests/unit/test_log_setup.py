"""
Unit tests for crmsync/logging_config.py.

configure_logging: idempotency, log dir creation, level from LOG_LEVEL.
log_call: CALL / OK / FAIL lines, return value pass-through, re-raise.
"""

import logging
import logging.handlers
import os
from unittest.mock import MagicMock, patch

import pytest

from crmsync.logging_config import configure_logging, log_call


def _reset_logger():
    logger = logging.getLogger("crmsync")
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def _log_paths(directory):
    return (
        patch("crmsync.logging_config._LOG_DIR", directory),
        patch("crmsync.logging_config._LOG_FILE", directory / "crmsync.log"),
    )


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------

class TestConfigureLogging:

    def setup_method(self):
        _reset_logger()

    def teardown_method(self):
        _reset_logger()

    def test_returns_crmsync_logger(self, tmp_path):
        log_dir, log_file = _log_paths(tmp_path)
        with log_dir, log_file:
            logger = configure_logging()
        assert logger.name == "crmsync"

    def test_creates_missing_log_dir(self, tmp_path):
        target = tmp_path / "logs"
        log_dir, log_file = _log_paths(target)
        with log_dir, log_file:
            configure_logging()
        assert target.is_dir()

    def test_attaches_one_rotating_handler_across_calls(self, tmp_path):
        log_dir, log_file = _log_paths(tmp_path)
        with log_dir, log_file:
            configure_logging()
            configure_logging()
        handlers = logging.getLogger("crmsync").handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.handlers.RotatingFileHandler)

    def test_level_defaults_to_info(self, tmp_path):
        env = {k: v for k, v in os.environ.items() if k != "LOG_LEVEL"}
        log_dir, log_file = _log_paths(tmp_path)
        with patch.dict(os.environ, env, clear=True), log_dir, log_file:
            configure_logging()
        assert logging.getLogger("crmsync").level == logging.INFO

    def test_level_from_env(self, tmp_path):
        log_dir, log_file = _log_paths(tmp_path)
        with patch.dict(os.environ, {"LOG_LEVEL": "debug"}), log_dir, log_file:
            configure_logging()
        assert logging.getLogger("crmsync").level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self, tmp_path):
        log_dir, log_file = _log_paths(tmp_path)
        with patch.dict(os.environ, {"LOG_LEVEL": "LOUD"}), log_dir, log_file:
            configure_logging()
        assert logging.getLogger("crmsync").level == logging.INFO


# ---------------------------------------------------------------------------
# log_call
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_logger():
    logger = MagicMock()
    with patch("crmsync.logging_config.logging") as mock_logging:
        mock_logging.getLogger.return_value = logger
        yield logger


class TestLogCall:

    def test_returns_wrapped_result(self):
        @log_call
        def total(a, b):
            return a + b

        assert total(2, 3) == 5

    def test_keeps_function_name(self):
        @log_call
        def queries_send():
            pass

        assert queries_send.__name__ == "queries_send"

    def test_call_line_lists_arguments(self, mock_logger):
        @log_call
        def queries_send(query_id, direct=True):
            pass

        queries_send(12, direct=False)
        msg = mock_logger.debug.call_args[0][0]
        assert msg.startswith("CALL queries_send")
        assert "12" in msg
        assert "direct=False" in msg

    def test_ok_line_with_timing(self, mock_logger):
        @log_call
        def sweep():
            pass

        sweep()
        msg = mock_logger.info.call_args[0][0]
        assert "OK" in msg and "sweep" in msg and "ms" in msg

    def test_fail_line_and_reraise(self, mock_logger):
        @log_call
        def sync_run():
            raise RuntimeError("gateway down")

        with pytest.raises(RuntimeError, match="gateway down"):
            sync_run()

        msg = mock_logger.error.call_args[0][0]
        assert "FAIL sync_run" in msg
        assert "RuntimeError: gateway down" in msg
        mock_logger.info.assert_not_called()

    def test_credentials_are_masked(self, mock_logger):
        @log_call
        def configure(domain, api_key=None):
            pass

        configure("shop.example", api_key="s3cr3t")
        msg = mock_logger.debug.call_args[0][0]
        assert "s3cr3t" not in msg
        assert "api_key=***" in msg
        assert "'shop.example'" in msg

    def test_non_zero_exit_is_logged_and_reraised(self, mock_logger):
        @log_call
        def queries_show():
            raise SystemExit(1)

        with pytest.raises(SystemExit):
            queries_show()

        msg = mock_logger.warning.call_args[0][0]
        assert msg.startswith("EXIT queries_show | code 1")
        mock_logger.info.assert_not_called()
        mock_logger.error.assert_not_called()

    def test_clean_exit_is_not_a_warning(self, mock_logger):
        @log_call
        def sync_stop():
            raise SystemExit(0)

        with pytest.raises(SystemExit):
            sync_stop()

        mock_logger.warning.assert_not_called()
