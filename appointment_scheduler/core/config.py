from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List
import os

class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Appointment Scheduler"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    TESTING: bool = os.getenv("TESTING", "0").lower() in ("1", "true", "t", "yes", "y")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./scheduler.db")
    TEST_DATABASE_URL: str = os.getenv("TEST_DATABASE_URL", "sqlite:///./test.db")

    # Security
    SECRET_KEY: str = "your-secret-key-change-this-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Redis (display name cache and rate limiting)
    REDIS_URL: str = "redis://localhost:6379"
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 3600
    DISPLAY_NAME_CACHE_TTL: int = 300

    # Appointments
    STORE_TIMEOUT_SECONDS: float = 10.0
    MAX_AUDIO_BYTES: int = 1024 * 1024  # 1 MiB
    VALIDATION_ERROR_DISMISS_SECONDS: int = 2

    # Object storage for audio attachments: "local" or "s3"
    OBJECT_STORE_BACKEND: str = "local"
    MEDIA_ROOT: str = "./media"
    MEDIA_URL: str = "/media"
    S3_BUCKET: Optional[str] = None
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: str = "auto"
    S3_ACCESS_KEY_ID: Optional[str] = None
    S3_SECRET_ACCESS_KEY: Optional[str] = None

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173", "http://testserver"]

    @property
    def get_database_url(self):
        """Return the appropriate database URL based on if we're testing"""
        if self.TESTING:
            return self.TEST_DATABASE_URL
        return self.DATABASE_URL

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

# Create settings instance
settings = Settings()
