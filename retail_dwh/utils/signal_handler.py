"""
Graceful shutdown handling for warehouse load runs.

A load run is a fixed sequence of atomic steps. SIGTERM/SIGINT never cut a
step in half: the handler only raises a flag, and the pipeline checks it
between steps, records the run as failed and releases its store.
"""

import logging
import signal
from typing import Callable, List, Optional


class GracefulShutdownHandler:
    """
    Turns shutdown signals into a flag polled between load steps.

    Usage:
        shutdown_handler = GracefulShutdownHandler(__name__)
        shutdown_handler.register_cleanup(store.close)
        shutdown_handler.start_listening()

        pipeline = IncrementalLoadPipeline(store, shutdown_handler=shutdown_handler)
        pipeline.run()

        shutdown_handler.cleanup()
    """

    def __init__(self, logger_name: Optional[str] = None):
        self.should_shutdown = False
        self.received_signal: Optional[str] = None
        self.cleanup_functions: List[Callable[[], None]] = []
        self.logger = logging.getLogger(logger_name or __name__)
        self._previous_handlers = {}

    def register_cleanup(self, cleanup_func: Callable[[], None]) -> None:
        """
        Register a function to run during cleanup (e.g. closing the store).

        Args:
            cleanup_func: Zero-argument callable
        """
        self.cleanup_functions.append(cleanup_func)
        self.logger.debug(f"Registered cleanup function: {getattr(cleanup_func, '__name__', cleanup_func)}")

    def _signal_handler(self, signum: int, frame) -> None:
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, the run will stop after the current step")
        self.received_signal = signal_name
        self.should_shutdown = True

    def request_shutdown(self, reason: str = "manual") -> None:
        """Raise the shutdown flag without a signal (used by embedding callers)."""
        self.logger.info(f"Shutdown requested: {reason}")
        self.received_signal = reason
        self.should_shutdown = True

    def start_listening(self) -> None:
        """Install handlers for SIGTERM and SIGINT."""
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)
        self.logger.info("Graceful shutdown handler activated (SIGTERM, SIGINT)")

    def stop_listening(self) -> None:
        """Restore the handlers that were active before start_listening()."""
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()

    def cleanup(self) -> None:
        """Execute all registered cleanup functions; one failing does not stop the rest."""
        self.logger.info("Starting shutdown cleanup...")

        for i, cleanup_func in enumerate(self.cleanup_functions, 1):
            name = getattr(cleanup_func, '__name__', repr(cleanup_func))
            try:
                self.logger.debug(f"Executing cleanup function {i}/{len(self.cleanup_functions)}: {name}")
                cleanup_func()
            except Exception as e:
                self.logger.error(f"Error in cleanup function {name}: {e}")

        self.cleanup_functions.clear()
        self.logger.info("Shutdown cleanup completed")
