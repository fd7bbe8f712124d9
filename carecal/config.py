"""Runtime configuration for the carecal engine.

Values are read from environment variables so deployments and tests can
tune them without code changes.
"""
import logging
import os
import sys


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# Full SQLAlchemy URL. The async sqlite driver is the default so a fresh
# checkout works without a database server.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./carecal.db')

# Echo every SQL statement to the engine logger (noisy; debugging only).
ECHO_SQL = _trueish(os.getenv('ECHO_SQL', '0'))

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Upper bound on raw occurrences enumerated for a single master in one
# resolve() call. A minutely rule over a wide window would otherwise expand
# into an unbounded list.
MAX_OCCURRENCES_PER_MASTER = _int_env('MAX_OCCURRENCES_PER_MASTER', 5000)

# Shift-start materialization window: the first shift ever clones from the
# start of (today - LOOKBACK) through the end of (today + LOOKAHEAD).
CLONE_LOOKBACK_DAYS = _int_env('CLONE_LOOKBACK_DAYS', 1)
CLONE_LOOKAHEAD_DAYS = _int_env('CLONE_LOOKAHEAD_DAYS', 1)


def configure_logging(level: str | None = None) -> None:
    """Attach a stdout handler to the package logger when none is configured."""
    logger = logging.getLogger('carecal')
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level or LOG_LEVEL)


# Optional local overrides: define variables in carecal/local_config.py to
# override the defaults above without changing versioned config. Keep that
# file out of version control.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
