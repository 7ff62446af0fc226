"""Configuration management for the complaint service."""
import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Application configuration."""

    # API Configuration
    API_KEY = os.getenv("API_KEY", "test-api-key-12345")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Database Configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./connect.db")

    # Storage Configuration
    STORAGE_DIR = os.getenv("STORAGE_DIR", "./storage")
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000/files")
    MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(5 * 1024 * 1024)))
    ATTACHMENT_BUCKET = "complaint-attachments"
    AVATAR_BUCKET = "avatars"

    # Alert Configuration
    ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
    ALERT_ENABLED = os.getenv("ALERT_ENABLED", "false").lower() == "true"

    # Centers
    DEFAULT_CENTER = os.getenv("DEFAULT_CENTER", "Kochi")

    # Validation bounds
    TITLE_MIN_LENGTH = 5
    TITLE_MAX_LENGTH = 100
    DESCRIPTION_MIN_LENGTH = 20
    DESCRIPTION_MAX_LENGTH = 1000
    MESSAGE_MAX_LENGTH = 2000
    RATING_MIN = 1
    RATING_MAX = 5

    # Analytics
    TREND_DAYS = 7


config = Config()
