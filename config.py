"""
Configuration management using environment variables.
"""
from pydantic_settings import BaseSettings
from typing import Optional
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    API_TITLE: str = "Civic Resolution Verifier"
    API_DESCRIPTION: str = "Fraud-resistant verification of civic issue resolution photos"
    API_VERSION: str = "1.0.0"

    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False

    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # Vision oracle
    GEMINI_API_KEY: Optional[str] = None
    LLM_MODEL: str = "gemini-1.5-pro"
    LLM_TEMPERATURE: float = 0.1
    LLM_MAX_OUTPUT_TOKENS: int = 2048
    # Classify new reports from their before image
    REPORT_ANALYSIS_ENABLED: bool = True

    # Persistence
    DATABASE_URL: str = "sqlite:///./civic_verifier.db"

    # Object storage (local disk, served under /uploads)
    UPLOAD_DIR: str = "uploads"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    MAX_UPLOAD_SIZE: int = 5 * 1024 * 1024  # 5MB

    # Image downloads (seconds)
    HASH_DOWNLOAD_TIMEOUT: float = 10.0
    ORACLE_DOWNLOAD_TIMEOUT: float = 15.0

    # Location thresholds (meters)
    STANDARD_MAX_DISTANCE_M: float = 100.0
    STRICT_MAX_DISTANCE_M: float = 20.0
    STRICT_MAX_EXIF_DEVIATION_M: float = 10.0

    # EXIF recency (hours)
    MAX_IMAGE_AGE_HOURS: float = 24.0

    # Perceptual similarity thresholds (percent)
    NEAR_DUPLICATE_SIMILARITY: float = 95.0
    STANDARD_UNRELATED_SIMILARITY: float = 10.0
    STRICT_UNRELATED_SIMILARITY: float = 5.0

    # Oracle confidence floors (percent)
    STANDARD_MIN_CONFIDENCE: float = 70.0
    STRICT_MIN_CONFIDENCE: float = 80.0

    # Strict mode accepts only scores below this ceiling
    STRICT_SCORE_CEILING: int = 30

    # Audit records are written by a background worker when enabled
    AUDIT_BACKGROUND_WORKER: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()

Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
