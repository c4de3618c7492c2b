from __future__ import annotations

import logging
import os
import re
import sys
from typing import Optional


class SensitiveDataFilter(logging.Filter):
    """Masks passwords, secrets and keys in log records."""

    PATTERNS = [
        (re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r"\1***MASKED***"),
        (re.compile(r'(secret["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r"\1***MASKED***"),
        (re.compile(r'(encrypted_key["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r"\1***MASKED***"),
        (re.compile(r'(signature["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r"\1***MASKED***"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask_value(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)
        return True

    def _mask_value(self, value):
        if isinstance(value, str):
            for pattern, replacement in self.PATTERNS:
                value = pattern.sub(replacement, value)
        return value


def setup_logging(component_name: str = "timelocker", log_level: Optional[str] = None) -> logging.Logger:
    """Attach a stderr handler to the ``component_name`` logger.

    The level comes from ``log_level``, else ``TIMELOCKER_LOG_LEVEL``, else
    WARNING. Calling it twice does not add a second handler.
    """
    if log_level is None:
        log_level = os.getenv("TIMELOCKER_LOG_LEVEL", "WARNING")
    level = getattr(logging, log_level.upper(), logging.WARNING)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    handler.addFilter(SensitiveDataFilter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger
