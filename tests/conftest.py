"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio


@pytest_asyncio.fixture
async def sqlite_pool():
    """Create an in-memory SQLite connection pool."""
    from relkit import create_engine

    pool = await create_engine("sqlite::memory:")
    yield pool
    await pool.close()


@pytest_asyncio.fixture
async def postgres_pool():
    """Create a PostgreSQL connection pool.

    Set DATABASE_URL environment variable to use a real PostgreSQL database.
    Otherwise, this fixture is skipped.
    """
    from relkit import create_engine

    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")

    pool = await create_engine(url)
    yield pool
    await pool.close()


class QueryLog:
    """Records the statements a pool executes."""

    def __init__(self, pool):
        self.events = []
        self._stop = pool.listen(self.events.append)

    @property
    def selects(self):
        """Statements that returned rows."""
        return [e for e in self.events if e.kind == "query"]

    @property
    def statements(self):
        return [e for e in self.events if e.kind in ("query", "statement")]

    def clear(self):
        self.events.clear()

    def stop(self):
        self._stop()


@pytest.fixture
def query_log():
    """Attach a QueryLog to a pool: ``log = query_log(engine)``."""
    logs = []

    def attach(pool):
        log = QueryLog(pool)
        logs.append(log)
        return log

    yield attach
    for log in logs:
        log.stop()
