import asyncio

import pytest

from server.src.modules.notes_db import DEFAULT_DATABASE_URL, normalize_database_url
from server.src.modules.notes_errors import StorageTimeoutError

from tests.conftest import notes_context


def test_normalize_database_url():
    assert normalize_database_url(None) == DEFAULT_DATABASE_URL
    assert normalize_database_url("postgres://u:p@db/notes") == "postgresql+asyncpg://u:p@db/notes"
    assert normalize_database_url("postgresql://u:p@db/notes") == "postgresql+asyncpg://u:p@db/notes"
    assert normalize_database_url("postgresql+asyncpg://db/notes") == "postgresql+asyncpg://db/notes"


@pytest.mark.asyncio
async def test_slow_storage_call_times_out():
    async with notes_context(timeout=0.01) as ctx:
        async with ctx.open_db() as db:
            with pytest.raises(StorageTimeoutError) as info:
                await db.run(asyncio.sleep(1), "slow_call")
            assert info.value.context["label"] == "slow_call"
            assert "not responding" in info.value.message
