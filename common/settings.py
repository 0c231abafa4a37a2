import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./itrust.db")
    redis_url: str = os.getenv("REDIS_URL", "")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "itrust")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))
    internal_audience: str = os.getenv("INTERNAL_AUDIENCE", "itrust-internal")

    # Vouch policy, amounts in TRUST
    vouch_cost: str = os.getenv("VOUCH_COST", "0.2")
    early_adopter_limit: int = int(os.getenv("EARLY_ADOPTER_LIMIT", "100"))
    early_adopter_grant: str = os.getenv("EARLY_ADOPTER_GRANT", "300")
    standard_grant: str = os.getenv("STANDARD_GRANT", "10")

    lock_timeout_seconds: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5.0"))
    conflict_retry_attempts: int = int(os.getenv("CONFLICT_RETRY_ATTEMPTS", "3"))
    idempotency_ttl_seconds: int = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "600"))

    leaderboard_refresh_seconds: float = float(os.getenv("LEADERBOARD_REFRESH_SECONDS", "30"))
    leaderboard_limit: int = int(os.getenv("LEADERBOARD_LIMIT", "100"))
    search_limit: int = int(os.getenv("SEARCH_LIMIT", "20"))
    activity_limit: int = int(os.getenv("ACTIVITY_LIMIT", "20"))

settings = Settings()
