"""
Logging setup for the ``evvm_signer`` logger tree.

Modules log through ``logging.getLogger(__name__)``; this module only
attaches a handler to the package logger. JSON output uses
python-json-logger so lines can be shipped to a log aggregator.

Never pass private keys or raw signatures to a logger. Addresses,
operation kinds, steps, and nonce sources are fine.

Usage:
    from evvm_signer.logging_config import setup_logging

    setup_logging(level="DEBUG", json_format=True)
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from pythonjsonlogger import jsonlogger

PACKAGE_LOGGER = "evvm_signer"

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class EngineJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds a UTC timestamp, level, and service name."""

    def __init__(self, service_name: str = "evvm-signer") -> None:
        super().__init__(fmt="%(timestamp)s %(level)s %(name)s %(message)s")
        self.service_name = service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["level"] = record.levelname.lower()
        log_record["service"] = self.service_name


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure and return the package logger.

    Replaces any handlers previously installed by this function, so it
    is safe to call more than once (e.g. after reloading settings).

    Args:
        level: Logging level name.
        json_format: Emit JSON lines instead of plain text.
        stream: Output stream. Defaults to stderr.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        if getattr(handler, "_evvm_signer", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._evvm_signer = True  # type: ignore[attr-defined]
    if json_format:
        handler.setFormatter(EngineJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
