"""Configuration management with pydantic-settings."""

from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"

    # Session tokens
    jwt_secret: str = "supersecretkey"
    jwt_algorithm: Literal["HS256"] = "HS256"
    jwt_expire_minutes: int = 24 * 60
    cookie_name: str = "token"
    environment: Literal["development", "production"] = "development"

    # Password reset
    reset_token_expire_minutes: int = 10

    # Outbound email
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "noreply@storefront.local"

    # Payments (optional, app works without it)
    stripe_secret_key: str = ""

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @field_validator("jwt_secret")
    @classmethod
    def check_secret_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("JWT secret must not be empty")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings from environment.

    Raises:
        ValidationError: If environment variables are invalid.
    """
    return Settings()
