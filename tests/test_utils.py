"""
Unit Tests - Logging setup and graceful shutdown
"""
import logging
import signal

from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.utils.signal_handler import GracefulShutdownHandler


class TestLogging:

    def test_setup_logging_writes_component_file(self, tmp_path):
        log_file = tmp_path / "component.log"

        logger = setup_logging("retail_dwh.test_component", log_level="debug", log_file=str(log_file))
        logger.debug("hello")
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert "retail_dwh.test_component - DEBUG - hello" in log_file.read_text()

    def test_reconfiguring_does_not_stack_handlers(self, tmp_path):
        log_file = str(tmp_path / "component.log")

        setup_logging("retail_dwh.test_stack", log_file=log_file)
        logger = setup_logging("retail_dwh.test_stack", log_file=log_file)

        assert len(logger.handlers) == 2

    def test_unknown_level_falls_back_to_info(self, tmp_path):
        logger = setup_logging("retail_dwh.test_level", log_level="chatty", log_file=str(tmp_path / "x.log"))

        assert logger.level == logging.INFO


class TestGracefulShutdown:

    def test_signal_raises_flag(self):
        handler = GracefulShutdownHandler("test")

        handler._signal_handler(signal.SIGTERM, None)

        assert handler.should_shutdown is True
        assert handler.received_signal == "SIGTERM"

    def test_listening_restores_previous_handlers(self):
        previous = signal.getsignal(signal.SIGTERM)
        handler = GracefulShutdownHandler("test")

        handler.start_listening()
        assert signal.getsignal(signal.SIGTERM) == handler._signal_handler
        handler.stop_listening()

        assert signal.getsignal(signal.SIGTERM) == previous

    def test_cleanup_runs_every_function_once(self):
        calls = []

        def failing():
            calls.append("failing")
            raise RuntimeError("close failed")

        handler = GracefulShutdownHandler("test")
        handler.register_cleanup(failing)
        handler.register_cleanup(lambda: calls.append("close"))

        handler.cleanup()
        handler.cleanup()

        assert calls == ["failing", "close"]
