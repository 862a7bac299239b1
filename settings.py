from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./notes.db"
    database_sync_url: str | None = None
    relay_token: str | None = None
    discord_token: str | None = None
    client_id: str | None = None
    guild_id: str | None = None
    storage_timeout_seconds: float = 8.0
    create_schema_on_startup: bool = True
    port: int = 3000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        extra="ignore",
    )

def get_settings() -> Settings:
    return Settings()
