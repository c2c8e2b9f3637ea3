"""Logging setup for ingestgraph.

Three loguru sinks are installed on import:
- stderr, filtered per logger name (see below)
- a daily DEBUG file under the log directory, rotated at 10 MB and kept 7 days
- ``latest.log`` with TRACE output of the current run

The log directory is ``INGESTGRAPH_LOG_DIR`` (default ~/.ingestgraph/logs).

Stderr verbosity follows ``INGESTGRAPH_LOG_LEVEL`` (default INFO). Loggers are
named after their module path inside the package (``builder``, ``db.merge``,
``references.ledger``) and any prefix of that path can be tuned on its own
with ``INGESTGRAPH_LOG_<PATH>``, dots written as underscores:

    INGESTGRAPH_LOG_DB_MERGE=DEBUG          merge engine only
    INGESTGRAPH_LOG_REFERENCES=WARNING      every references.* logger
    INGESTGRAPH_LOG_REFERENCES_LEDGER=TRACE wins over the line above

The longest matching prefix wins. Unknown level names are ignored.
"""

import os
import sys
from collections.abc import Mapping
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from time import perf_counter

from loguru import logger

ENV_PREFIX = "INGESTGRAPH_LOG_"
DEFAULT_LEVEL = "INFO"

_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}"
_STDERR_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def _known_level(value: str) -> bool:
    try:
        logger.level(value)
    except ValueError:
        return False
    return True


def level_for(name: str, environ: Mapping[str, str] | None = None) -> str:
    """Resolve the stderr level for a logger name.

    Args:
        name: Dotted logger name, e.g. ``references.ledger``
        environ: Variables to read (default: ``os.environ``)

    Returns:
        Upper-case loguru level name
    """
    env = os.environ if environ is None else environ
    parts = [p for p in name.split(".") if p]
    while parts:
        value = env.get(ENV_PREFIX + "_".join(parts).upper(), "").strip().upper()
        if value and _known_level(value):
            return value
        parts.pop()

    value = env.get(ENV_PREFIX + "LEVEL", DEFAULT_LEVEL).strip().upper()
    return value if _known_level(value) else DEFAULT_LEVEL


@lru_cache(maxsize=None)
def _threshold(name: str) -> int:
    return logger.level(level_for(name)).no


def _stderr_filter(record) -> bool:
    return record["level"].no >= _threshold(record["extra"].get("name", ""))


def configure_logging(log_dir: Path | None = None, stream=None) -> Path:
    """Replace all loguru handlers with the ingestgraph sinks.

    Levels are looked up once per logger name and cached; calling this
    again picks up changed environment overrides.

    Args:
        log_dir: Directory for the file sinks (default: ``INGESTGRAPH_LOG_DIR``)
        stream: Text stream for the filtered sink (default: ``sys.stderr``)

    Returns:
        The directory the file sinks write to
    """
    if log_dir is None:
        log_dir = Path(os.getenv(ENV_PREFIX + "DIR", str(Path.home() / ".ingestgraph" / "logs")))
    log_dir.mkdir(parents=True, exist_ok=True)
    _threshold.cache_clear()

    logger.remove()
    logger.configure(extra={"name": ""})
    logger.add(stream or sys.stderr, level=0, filter=_stderr_filter, format=_STDERR_FORMAT, colorize=True)
    logger.add(
        log_dir / "ingestgraph_{time:YYYY-MM-DD}.log",
        level="DEBUG",
        format=_FILE_FORMAT,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
    )
    logger.add(log_dir / "latest.log", level="TRACE", format=_FILE_FORMAT, rotation="5 MB", retention=1)
    return log_dir


configure_logging()


def get_logger(name: str):
    """Logger bound to a dotted component name such as ``db.merge``."""
    return logger.bind(name=name)


@contextmanager
def log_timing(operation: str, log_instance=None, level: str = "debug"):
    """Log how long the block took once it exits.

    Yields:
        dict whose ``elapsed_ms`` is filled in on exit
    """
    log_fn = log_instance or logger
    timing = {"elapsed_ms": 0.0}
    start = perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = (perf_counter() - start) * 1000
        getattr(log_fn, level)(f"{operation}: {timing['elapsed_ms']:.1f}ms")


__all__ = ["logger", "configure_logging", "get_logger", "level_for", "log_timing"]
