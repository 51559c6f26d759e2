"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic import ValidationError
from pydantic_settings import BaseSettings


class ConfigurationError(RuntimeError):
    """Raised at cold start when required environment variables are missing."""


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Vitalink"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Terra (wearable aggregator) ---
    terra_api_key: str
    terra_dev_id: str
    terra_signing_secret: str  # HMAC secret for inbound webhook signatures
    terra_api_base: str = "https://api.tryterra.co/v2"
    terra_request_timeout_seconds: float = 15.0

    # --- Supabase ---
    supabase_url: str
    supabase_service_role_key: str  # server-side only, also guards cron routes
    supabase_db_url: str  # direct postgres connection string for asyncpg
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Clerk ---
    clerk_jwks_url: str = "https://api.clerk.com/v1/jwks"

    # --- CORS ---
    cors_origins: list[str] = ["*"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def _missing_fields(exc: ValidationError) -> list[str]:
    return sorted(
        str(err["loc"][0]).upper()
        for err in exc.errors()
        if err.get("type") == "missing" and err.get("loc")
    )


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        missing = _missing_fields(exc)
        if missing:
            raise ConfigurationError(
                "Missing required environment variables: " + ", ".join(missing)
            ) from exc
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
