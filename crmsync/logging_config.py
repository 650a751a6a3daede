"""
Logging configuration for crmsync.

One 'crmsync' logger for the CLI, the sync thread and the engine modules.

  Log file : $LOG_DIR/crmsync.log (LOG_DIR defaults to <project>/logs)
  Rotation : 5 MB × 3 backups
  Level    : LOG_LEVEL env var, INFO when unset or unknown

CLI commands are wrapped with @log_call:

    2026-10-19 09:12:44 | DEBUG    | CALL queries_send | args=(query_id=12, via_gateway=False)
    2026-10-19 09:12:45 | INFO     | OK   queries_send | 812ms
    2026-10-19 09:12:45 | WARNING  | EXIT queries_send | code 1 | 790ms
    2026-10-19 09:13:02 | ERROR    | FAIL sync_run | ConfigurationError: person hook missing | 4ms

Arguments whose name looks like a credential are masked in CALL lines.
"""

import functools
import logging
import logging.handlers
import os
import time
from pathlib import Path

LOGGER_NAME = "crmsync"

_LOG_DIR = Path(os.environ.get("LOG_DIR") or Path(__file__).parent.parent / "logs")
_LOG_FILE = _LOG_DIR / "crmsync.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3

_SECRET_MARKERS = ("api_key", "password", "token", "secret")
_MASK = "***"


def _level_from_env() -> int:
    level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> logging.Logger:
    """
    Attach the rotating file handler to the crmsync logger.
    Safe to call from every CLI invocation: later calls return the logger as is.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    _LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.setLevel(_level_from_env())

    handler = logging.handlers.RotatingFileHandler(
        _LOG_FILE,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)
    return logger


def _describe_args(args, kwargs) -> str:
    parts = [repr(a) for a in args]
    for key, value in kwargs.items():
        shown = _MASK if any(marker in key.lower() for marker in _SECRET_MARKERS) else repr(value)
        parts.append(f"{key}={shown}")
    return ", ".join(parts) if parts else "—"


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def log_call(func):
    """
    Log a CLI command around its execution.

    - DEBUG on entry      : CALL <name> | args=(...)
    - INFO on success     : OK   <name> | <N>ms
    - WARNING on sys.exit : EXIT <name> | code <N> | <N>ms  (non-zero codes only)
    - ERROR on exception  : FAIL <name> | ExcType: message | <N>ms
    Exits and exceptions are re-raised.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(LOGGER_NAME)
        name = func.__name__
        start = time.perf_counter()
        logger.debug(f"CALL {name} | args=({_describe_args(args, kwargs)})")

        try:
            result = func(*args, **kwargs)
        except SystemExit as exc:
            if exc.code not in (None, 0):
                logger.warning(f"EXIT {name} | code {exc.code} | {_elapsed_ms(start)}ms")
            raise
        except Exception as exc:
            logger.error(f"FAIL {name} | {type(exc).__name__}: {exc} | {_elapsed_ms(start)}ms")
            raise

        logger.info(f"OK   {name} | {_elapsed_ms(start)}ms")
        return result

    return wrapper
