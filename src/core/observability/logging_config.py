"""
Logging configuration — one setup call per process.

main.py calls ``setup_logging_from_env()`` before any command runs;
modules log through ``logging.getLogger(__name__)``.

Level precedence:
    --debug / --verbose / --quiet  >  KAIO_LOG_LEVEL  >  WARNING

KAIO_LOG_FILE adds a file handler (KAIO_LOG_FILE_LEVEL sets its own
level).  Debug output includes the thread name, since each background
task polls on a thread named ``task-<id>``.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ENV_LEVEL = "KAIO_LOG_LEVEL"
ENV_FILE = "KAIO_LOG_FILE"
ENV_FILE_LEVEL = "KAIO_LOG_FILE_LEVEL"

# ── Formats per console level ───────────────────────────────────

_FORMATS: dict[int, tuple[str, str | None]] = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d — %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
    logging.WARNING: ("%(message)s", None),
}

_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d — %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Only the node/indexer probes pull in HTTP libraries
_NOISY_LOGGERS = ("urllib3", "charset_normalizer")


def resolve_level(*, debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Pick the console level from CLI flags, then the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(ENV_LEVEL, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Install console (and optional file) handlers on the root logger.

    Args:
        level: Console level name.
        log_file: Path of an additional log file; parent dirs are created.
        log_file_level: Level for the file (default: ``level``).
        quiet_third_party: Hold HTTP library loggers at WARNING unless
            the console is at DEBUG.
    """
    console_level = _parse_level(level)
    if console_level <= logging.DEBUG:
        fmt, datefmt = _FORMATS[logging.DEBUG]
    elif console_level <= logging.INFO:
        fmt, datefmt = _FORMATS[logging.INFO]
    else:
        fmt, datefmt = _FORMATS[logging.WARNING]

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        root_level = min(root_level, file_level)
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(file_level)
        handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        root.addHandler(handler)

    root.setLevel(root_level)

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def setup_logging_from_env(*, debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Configure logging from CLI flags and KAIO_* variables.  Returns the console level."""
    level = resolve_level(debug=debug, verbose=verbose, quiet=quiet)
    setup_logging(
        level=level,
        log_file=os.environ.get(ENV_FILE),
        log_file_level=os.environ.get(ENV_FILE_LEVEL),
        quiet_third_party=not debug,
    )
    return level


def _parse_level(level: str | None) -> int:
    """Level name to number; unknown names mean WARNING."""
    numeric = getattr(logging, (level or "").upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
