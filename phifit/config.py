from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "phifit-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "PhiFit")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/phifit_dev")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Sessions
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    access_ttl_min: int = int(os.getenv("ACCESS_TTL_MIN", "10080"))  # 7d, matches the session cookie
    refresh_ttl_min: int = int(os.getenv("REFRESH_TTL_MIN", "43200"))  # 30d
    session_cookie_secure: bool = os.getenv("SESSION_COOKIE_SECURE", "0") == "1"

    # Shared secret for the periodic week-lock trigger (empty = unprotected, dev only)
    cron_secret: str = os.getenv("CRON_SECRET", "")

    # Login rate limiting: memory|redis
    rate_limit_backend: str = os.getenv("RATE_LIMIT_BACKEND", "memory")
    rate_limit_max_attempts: int = int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "5"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900"))  # 15 min
    rate_limit_lockout_seconds: int = int(os.getenv("RATE_LIMIT_LOCKOUT_SECONDS", "3600"))

    side_challenge_expiry_hours: int = int(os.getenv("SIDE_CHALLENGE_EXPIRY_HOURS", "48"))

settings = Settings()
