import os
from contextlib import asynccontextmanager

from httpx import ASGITransport, AsyncClient

MEMORY_URL = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("DATABASE_URL", MEMORY_URL)
os.environ.setdefault("RELAY_TOKEN", "")

from main import create_app
from settings import Settings
from server.src.modules.notes_db import NotesContext, build_engine, build_sessionmaker, create_schema
from server.src.modules.notes_repo import NotesRepo

WORKSPACE = "111111111111111111"
OTHER_WORKSPACE = "222222222222222222"


@asynccontextmanager
async def notes_context(database_url: str = MEMORY_URL, timeout: float = 8.0):
    engine = build_engine(database_url)
    await create_schema(engine)
    try:
        yield NotesContext(sessions=build_sessionmaker(engine), storage_timeout=timeout)
    finally:
        await engine.dispose()


@asynccontextmanager
async def notes_repo(workspace_id: str = WORKSPACE):
    async with notes_context() as ctx:
        async with ctx.open_db() as db:
            repo = NotesRepo(db)
            await repo.ensure_workspace(workspace_id)
            yield repo


@asynccontextmanager
async def notes_client(relay_token: str | None = None, auth_token: str | None = None):
    app = create_app(Settings(database_url=MEMORY_URL, relay_token=relay_token))
    headers: dict[str, str] = {}
    token = auth_token if auth_token is not None else relay_token
    if token:
        headers["Authorization"] = f"Bearer {token}"
    async with notes_context() as ctx:
        app.state.notes = ctx
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as client:
            yield client
