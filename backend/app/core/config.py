from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Expense Splitter Sync API"
    debug: bool = True
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    # "redis" keeps the remote store authoritative, "local" runs from the
    # durable SQL cache only, "memory" is for tests and throwaway dev runs.
    store_backend: Literal["redis", "local", "memory"] = "local"
    local_fallback_enabled: bool = True

    database_url: str = "sqlite:///./expense_splitter.db"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "splitter"

    username_min_length: int = 3
    username_max_length: int = 20
    group_name_max_length: int = 80
    user_search_limit: int = 25

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
