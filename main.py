from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from settings import Settings, get_settings
from server.src.modules.logging_helpers import logger
from server.src.modules.interactions_api import router as interactions_router
from server.src.modules.notes_db import NotesContext, build_engine, build_sessionmaker, create_schema

# ---------- Lifespan (startup/shutdown) ----------
def lifespan_for(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings.database_url)
        try:
            if settings.create_schema_on_startup:
                await create_schema(engine)
            app.state.notes = NotesContext(
                sessions=build_sessionmaker(engine),
                storage_timeout=settings.storage_timeout_seconds,
            )
            app.state.relay_token = settings.relay_token
            logger.info("notes service ready (timeout=%ss)", settings.storage_timeout_seconds)
            yield
        finally:
            app.state.notes = None
            await engine.dispose()
            logger.info("storage engine disposed")
    return lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(lifespan=lifespan_for(settings))
    app.state.notes = None
    app.state.relay_token = settings.relay_token

    # ---------- Health ----------
    @app.get("/", include_in_schema=False, response_class=PlainTextResponse)
    def root():
        return "OK"

    app.include_router(interactions_router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=get_settings().port)
