from __future__ import annotations

from typing import AsyncIterator

import pytest

from eventrelay.domain.models import Base
from eventrelay.persistence.db import engine


@pytest.fixture(autouse=True)
async def database_schema() -> AsyncIterator[None]:
    # Fresh schema per test; dispose so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
