"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "SportSwap Marketplace"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/sportswap.db"

    # Offers
    OFFER_MESSAGE_MAX_LENGTH: int = Field(default=500, gt=0)
    OFFER_SUGGESTED_DISCOUNT: float = Field(default=0.15, ge=0, lt=1)  # opening offer is 15% off asking

    # Messaging
    MESSAGE_MAX_LENGTH: int = Field(default=2000, gt=0)
    TEMP_MESSAGE_ID_PREFIX: str = "temp-"

    # Change feed
    FEED_CHANNEL_QUEUE_SIZE: int = Field(default=100, gt=0)  # events buffered per channel before dropping

    # Comma-separated; a JSON list in .env is joined back into one string
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    # Streaming / SSE
    SSE_HEARTBEAT_INTERVAL: int = Field(default=15, gt=0)  # seconds between keep-alive pings

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Singleton instance
settings = Settings()
