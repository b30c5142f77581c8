import logging
import shutil
import sys
from typing import Iterable, Optional

from .exceptions import MissingDependencyError

logger = logging.getLogger("openedx-snapshot")

LOG_FORMAT = '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stream handler to the package logger.

    The package logger does not propagate, so running under cron or another
    application's root logger configuration never duplicates lines.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)

    Returns:
        The configured package logger
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logger.setLevel(numeric_level)
    logger.propagate = False
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(handler)

    return logger


def require_commands(*names: str) -> None:
    """Fail before any side effect if an external tool is not on PATH."""
    for name in names:
        if shutil.which(name) is None:
            raise MissingDependencyError(name)


def resolve_command(candidates: Iterable[str], explicit: Optional[str] = None) -> str:
    """Return the first available command among candidates.

    Args:
        candidates: Command names in order of preference
        explicit: Configured command; when set, it is the only candidate

    Returns:
        The command name that was found

    Raises:
        MissingDependencyError: If none of the candidates is available
    """
    names = [explicit] if explicit else list(candidates)
    for name in names:
        if shutil.which(name) is not None:
            return name
    raise MissingDependencyError(" or ".join(names))
