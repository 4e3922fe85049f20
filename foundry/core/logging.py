"""Logging setup for foundry.

Everything logs under the ``foundry`` logger. Every handler redacts
secrets from the formatted message before writing it.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from foundry.core.sanitizer import sanitize

_ROOT = "foundry"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
# Client libraries that log every request at INFO.
_NOISY = ("httpx", "httpcore", "openai", "anthropic", "langsmith")

_configured = False


class RedactingFilter(logging.Filter):
    """Scrub secrets from the fully formatted message of each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = sanitize(message)
        if cleaned != message:
            record.msg, record.args = cleaned, None
        return True


def setup_logging(settings=None, *, force: bool = False) -> logging.Logger:
    """Configure the foundry logger from settings. Idempotent unless *force*.

    An empty ``log_file`` keeps output on the console only.
    """
    global _configured
    logger = logging.getLogger(_ROOT)
    if _configured and not force:
        return logger

    if settings is None:
        from foundry.core.config import get_settings
        settings = get_settings()

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(getattr(logging, str(settings.log_level).upper(), logging.INFO))
    logger.propagate = False

    fmt = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    redact = RedactingFilter()
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.addFilter(redact)
    logger.addHandler(console)

    log_file = (settings.log_file or "").strip()
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        file_handler.setFormatter(fmt)
        file_handler.addFilter(redact)
        logger.addHandler(file_handler)

    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    logger.info("Logging initialised (level=%s, file=%s)", settings.log_level, log_file or "<console>")
    return logger


def get_logger(name: str = _ROOT) -> logging.Logger:
    """Get a child of the foundry logger. Call setup_logging() at startup first."""
    if name == _ROOT or name.startswith(_ROOT + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")
