"""
Logging for the upsert load generator.

Every record carries the run id so that output from several generator
instances writing to one backend can be told apart.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


LOGGER_NAME = "load_test"
LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(run_id)s] %(threadName)s - %(message)s"

# redis-py and the liveness server log under their own names
LIBRARY_LOGGERS = ("redis", "uvicorn", "uvicorn.error")


class RunIdFilter(logging.Filter):
    """Stamps ``run_id`` onto every record passing through a handler."""

    def __init__(self, run_id: Optional[str] = None):
        super().__init__()
        self.run_id = run_id or "-"

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = self.run_id
        return True


class ConsoleHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stdout`` is at emit time."""

    def __init__(self):
        super().__init__(sys.stdout)

    @property
    def stream(self):
        return sys.stdout

    @stream.setter
    def stream(self, value):
        pass


class LoadTestLogger:
    """Owns the handlers of the generator's logger and the library loggers it adopts."""

    def __init__(self, log_level: str = "INFO", log_file: Optional[str] = None, run_id: Optional[str] = None):
        self.level = logging.getLevelName(log_level.upper())
        if not isinstance(self.level, int):
            raise ValueError(f"Unknown log level: {log_level}")
        self.log_file = log_file
        self.run_id = run_id
        self.logger = logging.getLogger(LOGGER_NAME)
        self._configure()

    def _build_handlers(self):
        formatter = logging.Formatter(LOG_FORMAT)
        run_filter = RunIdFilter(self.run_id)

        handlers = [ConsoleHandler()]
        if self.log_file:
            Path(self.log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.log_file))

        for handler in handlers:
            handler.setLevel(self.level)
            handler.setFormatter(formatter)
            handler.addFilter(run_filter)
        return handlers

    def _configure(self):
        handlers = self._build_handlers()
        for name in (LOGGER_NAME,) + LIBRARY_LOGGERS:
            target = logging.getLogger(name)
            for old in list(target.handlers):
                target.removeHandler(old)
                if name == LOGGER_NAME:
                    old.close()
            for handler in handlers:
                target.addHandler(handler)
            target.setLevel(self.level)
            target.propagate = False

    def connection_event(self, event_type: str, details: dict):
        message = f"Connection {event_type}: {details}"
        if event_type in ("FAILED", "LOST", "ERROR"):
            self.logger.error(message)
        else:
            self.logger.info(message)


_logger_instance: Optional[LoadTestLogger] = None


def _instance() -> LoadTestLogger:
    global _logger_instance
    if _logger_instance is None:
        _logger_instance = LoadTestLogger()
    return _logger_instance


def get_logger() -> logging.Logger:
    """The generator's logger, configured with defaults on first use."""
    return _instance().logger


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None,
                  run_id: Optional[str] = None) -> LoadTestLogger:
    """Replace the current handlers with ones for ``log_level`` and ``log_file``."""
    global _logger_instance
    _logger_instance = LoadTestLogger(log_level, log_file, run_id)
    return _logger_instance


def log_connection_event(event_type: str, details: dict):
    _instance().connection_event(event_type, details)


def log_error_with_traceback(message: str, exception: Exception = None):
    """Log at ERROR with the active exception's traceback attached."""
    text = f"{message}: {exception}" if exception else message
    get_logger().error(text, exc_info=True)
