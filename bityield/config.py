from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Runtime
    ENV: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Cache store
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    ENABLE_REDIS: bool = Field(default=False)
    CACHE_TTL_SECONDS: int = Field(default=1800, gt=0)
    CACHE_STALE_SECONDS: int = Field(default=600, gt=0)

    # Background updater
    ENABLE_BACKGROUND_UPDATER: bool = Field(default=True)
    REFRESH_INTERVAL_SECONDS: int = Field(default=600, gt=0)

    # Observability
    LOKI_URL: str | None = None

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)

    # Protocol APIs and contracts
    VELAR_API_BASE: str = Field(default="https://api.velar.co")
    ALEX_API_BASE: str = Field(default="https://api.alexlab.co")
    VELAR_DEX_CONTRACT: str = Field(default="SP1Y5YSTAHZ88XYK1VPDH24GY0HPX5J4JECTMY4A1.univ2-core")
    ALEX_PROTOCOL_CONTRACT: str = Field(default="SP3K8BC0PPEVCV7NZ6QSRWPQ2JE9E5B6N3PA0KBR9.alex-vault")

    # Price oracle
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3")
    BINANCE_BASE_URL: str = Field(default="https://api.binance.com/api/v3")
    BTC_PRICE_FALLBACK_USD: float = Field(default=100_000.0, gt=0)

    # AI recommendations (OpenAI-compatible chat completions)
    OPENAI_API_KEY: str | None = None
    OPENAI_API_BASE: str = Field(default="https://api.openai.com/v1")
    OPENAI_MODEL: str = Field(default="gpt-4o")
    AI_TEMPERATURE: float = Field(default=0.3, ge=0.0, le=2.0)
    AI_MAX_TOKENS: int = Field(default=1500, gt=0)
    AI_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0)
    AI_ENABLED: bool = Field(default=True)

    # Safety
    MAX_APY_THRESHOLD: float = Field(default=1000.0, gt=0)
    MIN_TVL_FOR_RECOMMENDATION: float = Field(default=1_000_000.0, gt=0)

    # Rate limiting
    API_RATE_LIMIT: int = Field(default=100, gt=0)
    API_RATE_WINDOW_SECONDS: int = Field(default=60, gt=0)

    @model_validator(mode="after")
    def _check_cache_windows(self) -> "Settings":
        if self.CACHE_STALE_SECONDS >= self.CACHE_TTL_SECONDS:
            raise ValueError("CACHE_STALE_SECONDS must be smaller than CACHE_TTL_SECONDS")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
