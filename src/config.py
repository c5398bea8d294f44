"""
Application configuration settings.

Every key can be overridden with a WORKITEMS_-prefixed environment variable
or a .env file, e.g. WORKITEMS_CASCADE_WORKERS=4.
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Work Item Lifecycle Engine"
    API_V1_PREFIX: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    RELOAD: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Lifecycle
    SYSTEM_ACTOR_ID: str = "system"
    BUDGET_VARIANCE_THRESHOLD: float = 1.2
    CASCADE_WORKERS: int = 1  # >1 fans campaign cascades out over a thread pool

    model_config = SettingsConfigDict(
        env_prefix="WORKITEMS_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
