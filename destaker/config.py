from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Runtime
    ENV: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Datastores
    MONGODB_URI: str | None = None  # unset disables persistence
    MONGO_DB_NAME: str = Field(default="destaker")
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    ENABLE_REDIS: bool = Field(default=False)

    # Pool source
    DEFILLAMA_POOLS_URL: str = Field(default="https://yields.llama.fi/pools")
    MIN_POOL_TVL_USD: float = Field(default=1_000_000.0)
    POOL_CACHE_TTL_SECONDS: int = Field(default=300)

    # AI gateway (OpenAI-compatible chat completions)
    AI_GATEWAY_URL: str = Field(default="https://ai.gateway.lovable.dev/v1/chat/completions")
    AI_GATEWAY_API_KEY: str | None = None
    SETTLEMENT_MODEL: str = Field(default="google/gemini-2.5-flash-lite")
    PREDICTION_MODEL: str = Field(default="google/gemini-3-flash-preview")
    CLASSIFIER_TIMEOUT_SECONDS: float = Field(default=30.0)

    # Chain read for workflow reports
    ETH_RPC_URL: str = Field(default="https://ethereum-rpc.publicnode.com")

    # Shared HTTP client
    HTTP_TIMEOUT_SECONDS: float = Field(default=15.0)
    HTTP_MAX_ATTEMPTS: int = Field(default=3)

    # Batch pacing
    BATCH_MIN_INTERVAL_SECONDS: float = Field(default=1.0)
    BATCH_RATE_LIMIT_BACKOFF_SECONDS: float = Field(default=5.0)
    BATCH_BACKOFF_MULTIPLIER: float = Field(default=2.0)
    BATCH_MAX_BACKOFF_SECONDS: float = Field(default=60.0)
    BATCH_DEADLINE_SECONDS: float = Field(default=300.0)

    # Background jobs
    REFRESH_INTERVAL_SECONDS: int = Field(default=600)
    SETTLEMENT_INTERVAL_SECONDS: int = Field(default=1800)

    def persistence_enabled(self) -> bool:
        return bool(self.MONGODB_URI)

    def classifier_enabled(self) -> bool:
        return bool(self.AI_GATEWAY_API_KEY)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
