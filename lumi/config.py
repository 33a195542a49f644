"""Application configuration using Pydantic Settings."""
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_name: str = "Lumi Reading Log"
    debug: bool = False
    log_level: str = "INFO"

    # MongoDB
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "lumi"

    # JWT (tokens are issued by the identity provider; we only verify them)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60

    # Firebase (FCM)
    firebase_credentials_path: str = ""

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:5173"

    # Reverse proxies whose X-Forwarded-For is believed (comma-separated peer addresses)
    trusted_proxies: str = ""

    # Reading statistics
    reading_timezone: str = "UTC"  # calendar days and "today" are taken in this zone
    min_minutes_per_log: int = 1
    max_minutes_per_log: int = 240

    # Link codes
    verify_max_attempts: int = 10
    verify_window_seconds: int = 60
    rate_limit_backend: str = "mongo"  # mongo, memory
    bulk_code_max_students: int = 10
    link_code_validity_days: int = 365
    link_code_max_validity_days: int = 3650
    link_code_max_generation_attempts: int = 25

    # Change-stream triggers
    enable_change_streams: bool = True
    trigger_max_attempts: int = 3

    @model_validator(mode="after")
    def _validate_production_secrets(self):
        if not self.debug:
            if self.jwt_secret_key in ("change-me-in-production", ""):
                raise ValueError(
                    "JWT_SECRET_KEY must be set to a strong secret when DEBUG is not enabled. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
        if self.rate_limit_backend not in ("mongo", "memory"):
            raise ValueError("RATE_LIMIT_BACKEND must be 'mongo' or 'memory'")
        return self


settings = Settings()
