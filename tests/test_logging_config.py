"""
Log file layout: every rotating handler owns its file.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

import tripsync.broadcast  # noqa: F401
import tripsync.consumer  # noqa: F401
import tripsync.crud  # noqa: F401
import tripsync.schemas  # noqa: F401
import tripsync.timezones  # noqa: F401
import tripsync.trip_detector  # noqa: F401
import tripsync.webhook  # noqa: F401
import tripsync.worker  # noqa: F401
from tripsync.logging_config import get_logger


def _file_handlers():
    handlers = []
    for logger in logging.Logger.manager.loggerDict.values():
        for h in getattr(logger, "handlers", []):
            if isinstance(h, RotatingFileHandler):
                handlers.append(h)
    return handlers


def test_no_two_handlers_share_a_log_file():
    paths = [h.baseFilename for h in _file_handlers()]

    assert len(paths) == len(set(paths))
    assert {"timezones.log", "broadcast.log", "worker.log"} <= {os.path.basename(p) for p in paths}


def test_get_logger_does_not_stack_handlers():
    first = get_logger("worker", "worker.log")
    again = get_logger("worker", "worker.log")

    assert first is again
    assert len([h for h in again.handlers if isinstance(h, RotatingFileHandler)]) == 1
