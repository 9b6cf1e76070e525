"""
Shared fixtures for AgentLoop tests.

Every test gets its own in-memory database. The HTTP tests point the app's
shared connection at that database and talk to it through httpx's ASGI
transport, so no server process is started (the lifespan and its scan task
do not run).
"""
import os
from datetime import datetime, timezone

import aiosqlite
import httpx
import pytest
import pytest_asyncio

# Keep an accidental get_db() away from the real data directory
os.environ.setdefault("AGENTLOOP_DB", ":memory:")
os.environ.setdefault("AGENTLOOP_SCAN_INTERVAL", "0")

from agentloop.db import crud
from agentloop.db.database import init_schema
import agentloop.db.database as dbmod


@pytest_asyncio.fixture
async def db():
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await init_schema(conn)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def client(db):
    from agentloop.main import app

    dbmod._db = db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    dbmod._db = None


@pytest.fixture
def t0() -> datetime:
    """A fixed, millisecond-aligned reference time close to the wall clock."""
    return crud.from_ms(crud.to_ms(datetime.now(timezone.utc)))
