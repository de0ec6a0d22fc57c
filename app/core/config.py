# app/core/config.py
import secrets
from typing import List, Optional, Union, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Environment settings
    ENVIRONMENT: Literal["development", "testing", "production"] = "development"

    # API settings
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)

    # Server settings
    SERVER_NAME: str = "localhost"
    SERVER_HOST: str = "http://localhost:8000"

    # CORS settings
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:8081",
        "http://localhost:19006",
    ]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None  # Path to log file if file logging is enabled

    # Database settings
    SQLALCHEMY_DATABASE_URI: str

    # JWT settings
    JWT_ALGORITHM: str = "HS256"

    # API Call Timeouts (in seconds)
    DEFAULT_TIMEOUT: int = 30

    # GitHub
    GITHUB_CLIENT_ID: str = ""
    GITHUB_CLIENT_SECRET: str = ""
    GITHUB_INTEGRATION_SCOPES: str = "read:user,notifications"
    GITHUB_MAX_ITEMS_PER_SYNC: int = 200
    GITHUB_RATE_LIMIT_THRESHOLD: int = 10

    # Google
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_INTEGRATION_SCOPES: str = (
        "openid email profile https://www.googleapis.com/auth/calendar.readonly"
    )
    GOOGLE_MAX_ITEMS_PER_SYNC: int = 500

    # Integrations
    INTEGRATIONS_ENCRYPTION_KEY: str = ""
    INTEGRATION_SYNC_INTERVAL_MINUTES: int = 15
    INTEGRATION_SYNC_DEBOUNCE_SECONDS: int = 300
    OAUTH_STATE_TTL_MINUTES: int = 10
    MOBILE_CALLBACK_SCHEME: str = "timeblock"

    # Feature flags
    ENABLE_INTEGRATION_SYNC_WORKER: bool = True

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )


# Create settings instance
settings = Settings()
