"""
Structured logging for the documentation sync package.

Everything under the `docsync.sync` logger tree is written as one JSON object
per line. Call sites attach structured context with
`logger.info("...", extra={'details': {...}})`; the payload lands under the
`details` key of the emitted record.

The level and optional log file come from `SyncConfig`. Building a
`LoggingManager` with different values reconfigures the handlers in place.
"""

import json
import logging
import sys
from typing import List, Optional

ROOT_LOGGER_NAME = "docsync.sync"


class JsonFormatter(logging.Formatter):

    def format(self, record):
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        details = getattr(record, 'details', None)
        if details is not None:
            payload['details'] = details
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def _build_handlers(level: str, log_file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    formatter = JsonFormatter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


class LoggingManager:
    """
    Process-wide owner of the `docsync.sync` handlers.
    """
    _instance = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, log_level: str = "INFO", log_file: Optional[str] = None):
        level = log_level.upper()
        if getattr(self, '_configured', None) == (level, log_file):
            return

        self.log_level = level
        self.log_file = log_file
        self.logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.logger.setLevel(level)
        self.logger.propagate = False

        for stale in list(self.logger.handlers):
            self.logger.removeHandler(stale)
            stale.close()
        for handler in _build_handlers(level, log_file):
            self.logger.addHandler(handler)

        self._configured = (level, log_file)

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        if LoggingManager._instance is None:
            LoggingManager()
        return logging.getLogger(name)


def get_logger(name: str) -> logging.Logger:
    return LoggingManager.get_logger(name)
