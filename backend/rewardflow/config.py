from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "rewardflow-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "Rewardflow")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/rewardflow_dev")

    # Identity provider (tokens are minted upstream, we only verify them)
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")
    jwt_audience: str | None = os.getenv("JWT_AUDIENCE") or None

    # External reward provider
    reward_provider_url: str = os.getenv("REWARD_PROVIDER_URL", "")
    reward_provider_api_key: str = os.getenv("REWARD_PROVIDER_API_KEY", "")
    reward_provider_timeout_seconds: float = float(os.getenv("REWARD_PROVIDER_TIMEOUT_SECONDS", "10"))
    reward_provider_webhook_secret: str = os.getenv("REWARD_PROVIDER_WEBHOOK_SECRET", "")
    default_reward_currency: str = os.getenv("DEFAULT_REWARD_CURRENCY", "USD")

    # Background jobs (reward reconciliation)
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    reconcile_stale_minutes: int = int(os.getenv("RECONCILE_STALE_MINUTES", "30"))

settings = Settings()
