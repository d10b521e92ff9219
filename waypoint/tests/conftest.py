from __future__ import annotations

import os

# Point the engine at a throwaway SQLite file before any waypoint module builds it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-waypoint.db")

import pytest  # noqa: E402

from waypoint.persistence.db import create_schema, drop_schema, engine  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Rebuild every table so relationship state never leaks across tests.
    await drop_schema()
    await create_schema()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
