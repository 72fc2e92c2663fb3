"""Root logging setup and PII masking for shopper-facing log lines."""

from __future__ import annotations

import logging
import re
from contextlib import suppress
from logging.handlers import RotatingFileHandler
from pathlib import Path

from personalize.config import settings

MAIN_LOG = "personalize.log"
ERRORS_LOG = "errors.log"

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# search queries, enrichment payloads and catalog/cart errors can echo customer input
_SCRUBBED_LOGGERS = ("personalize.behavior", "personalize.enrichment", "personalize.catalog", "personalize.service")

_QUIET_LOGGERS = {"httpx": logging.WARNING, "httpcore": logging.WARNING, "apscheduler": logging.WARNING}

_MASKS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE), "<email>"),
    (re.compile(r"\b\+?\d{6,15}\b"), "<phone>"),
    (re.compile(r"(?P<key>\b(?:token|api_?key|secret)\s*[=:]\s*)[A-Za-z0-9._-]{4,}", re.IGNORECASE), r"\g<key><token>"),
    (re.compile(r"(?P<key>\bBearer\s+)[A-Za-z0-9._~+/-]+=*", re.IGNORECASE), r"\g<key><token>"),
)


def scrub(text: str) -> str:
    for pattern, replacement in _MASKS:
        text = pattern.sub(replacement, text)
    return text


class PiiScrubbingFilter(logging.Filter):
    """Render the record once with masked arguments, so formatters never see raw values."""

    def filter(self, record: logging.LogRecord) -> bool:
        args = record.args
        if isinstance(args, dict):
            record.args = {key: scrub(value) if isinstance(value, str) else value for key, value in args.items()}
        elif args:
            record.args = tuple(scrub(item) if isinstance(item, str) else item for item in args)
        record.msg = scrub(record.getMessage())
        record.args = ()
        return True


def _rotating(path: Path, level: int, max_bytes: int, backups: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: str | None = None, level: int | None = None) -> Path:
    """Replace root handlers with console, ``personalize.log`` and ``errors.log`` (WARNING+).

    Defaults come from ``LOG_DIR`` / ``LOG_LEVEL``. Safe to call again: previous
    handlers are closed first. Returns the resolved log directory.
    """

    log_path = Path(log_dir if log_dir is not None else settings.LOG_DIR)
    log_path.mkdir(parents=True, exist_ok=True)
    resolved_level = settings.log_level if level is None else level

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        with suppress(Exception):
            handler.close()
    root.setLevel(resolved_level)

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)
    console = logging.StreamHandler()
    console.setLevel(resolved_level)
    console.setFormatter(formatter)

    errors = _rotating(log_path / ERRORS_LOG, logging.WARNING, 2_000_000, 3, formatter)
    errors.addFilter(PiiScrubbingFilter())
    for handler in (console, _rotating(log_path / MAIN_LOG, resolved_level, 5_000_000, 5, formatter), errors):
        root.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    for name in _SCRUBBED_LOGGERS:
        scrubbed = logging.getLogger(name)
        scrubbed.filters = [f for f in scrubbed.filters if not isinstance(f, PiiScrubbingFilter)]
        scrubbed.addFilter(PiiScrubbingFilter())

    root.info(
        "logging initialized, level=%s dir=%s",
        logging.getLevelName(resolved_level),
        log_path.resolve(),
    )
    return log_path.resolve()


__all__ = ["ERRORS_LOG", "MAIN_LOG", "PiiScrubbingFilter", "scrub", "setup_logging"]
