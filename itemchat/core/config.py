from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    MONGO_URL: str = Field(default="mongodb://localhost:27017")
    MONGO_DB: str = Field(default="itemchat")
    # empty disables cross-process fan-out
    REDIS_URL: str = Field(default="")

    JWT_SECRET: str = Field(default="change-me")
    JWT_ALGORITHM: str = Field(default="HS256")

    MAX_MESSAGE_LENGTH: int = Field(default=4000, ge=1)
    # how long a claimed but unwritten seq holds back readers
    SEQ_SETTLE_TIMEOUT: float = Field(default=2.0, ge=0)
    SUBSCRIPTION_BUFFER_SIZE: int = Field(default=100, ge=1)
    SUBSCRIPTION_IDLE_TIMEOUT: float = Field(default=120.0, gt=0)
    SWEEP_INTERVAL: float = Field(default=30.0, gt=0)
    SUMMARY_CACHE_TTL: float = Field(default=5.0, ge=0)
    CONVERSATION_LIST_LIMIT: int = Field(default=200, ge=1)
    WS_HEARTBEAT_INTERVAL: float = Field(default=30.0, gt=0)

    LOG_LEVEL: str = Field(default="INFO")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
