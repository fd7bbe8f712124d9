import asyncio
import os
import pathlib
import sys
import tempfile
import uuid
import warnings

import pytest
import pytest_asyncio

# Point the engine at a throwaway SQLite file before carecal.db is imported;
# the module builds its engine from DATABASE_URL at import time.
_TMP_DIR = tempfile.mkdtemp(prefix='carecal-tests-')
os.environ.setdefault('DATABASE_URL', f'sqlite+aiosqlite:///{_TMP_DIR}/carecal_test.db')

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except ImportError:
    pass

import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel', 'aiosqlite'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from carecal.db import init_db, dispose_engine
from carecal.memory_store import InMemorySeriesStore
from carecal.service import CalendarService
from carecal.store import SqlSeriesStore


@pytest_asyncio.fixture(params=['sql', 'memory'])
async def store(request):
    """Run a test once against SQLite and once against the in-memory store."""
    if request.param == 'sql':
        await init_db()
        return SqlSeriesStore()
    return InMemorySeriesStore()


@pytest.fixture
def scope_id():
    # the SQLite file is shared by the whole session; a fresh scope per test
    # keeps tests from seeing each other's rows
    return f'team-{uuid.uuid4().hex[:8]}'


@pytest.fixture
def service(store):
    return CalendarService(store)


def pytest_sessionfinish(session, exitstatus):
    """Dispose the async engine so no connection outlives the session."""
    try:
        asyncio.run(dispose_engine())
    except RuntimeError:
        pass
