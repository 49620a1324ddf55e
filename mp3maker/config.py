"""
Configuration management for the MP3 Maker service
"""

import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings:
    """Application settings"""

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3003"))
    # Empty for local, e.g. '/mp3maker' behind a reverse proxy
    BASE_PATH: str = os.getenv("BASE_PATH", "").rstrip("/")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", os.getenv("NODE_ENV", "development"))

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # Filesystem
    PUBLIC_DIR: str = os.getenv("PUBLIC_DIR", str(PROJECT_ROOT / "public"))
    # Kept outside PUBLIC_DIR so artifacts are only reachable through /file/{id}
    TEMP_DIR: str = os.getenv("TEMP_DIR", str(PROJECT_ROOT / "temp"))
    COOKIES_FILE: str = os.getenv("COOKIES_FILE", str(PROJECT_ROOT / "cookies.txt"))

    # yt-dlp
    # Optional path to a yt-dlp executable. When unset the installed yt_dlp
    # package is run with the current interpreter.
    YTDLP_PATH: Optional[str] = os.getenv("YTDLP_PATH", None)
    AUDIO_FORMAT: str = os.getenv("AUDIO_FORMAT", "mp3")
    AUDIO_QUALITY: str = os.getenv("AUDIO_QUALITY", "320k")
    # Used for YouTube in production when no cookies file is present
    YOUTUBE_CLIENT_STRATEGY: str = os.getenv(
        "YOUTUBE_CLIENT_STRATEGY", "youtube:player_client=ios,android"
    )

    # Timeouts (in seconds)
    METADATA_TIMEOUT: float = float(os.getenv("METADATA_TIMEOUT", "30"))
    SUBSCRIBER_WAIT_TIMEOUT: float = float(os.getenv("SUBSCRIBER_WAIT_TIMEOUT", "5"))
    CONVERSION_TIMEOUT: float = float(os.getenv("CONVERSION_TIMEOUT", "1800"))  # 30 minutes
    CANCEL_GRACE_PERIOD: float = float(os.getenv("CANCEL_GRACE_PERIOD", "5"))

    # Sessions
    MAX_SESSIONS: int = int(os.getenv("MAX_SESSIONS", "50"))
    SESSION_TTL: float = float(os.getenv("SESSION_TTL", "3600"))  # 1 hour
    SESSION_SWEEP_INTERVAL: float = float(os.getenv("SESSION_SWEEP_INTERVAL", "60"))

    # Admin log stream
    LOG_HISTORY_SIZE: int = int(os.getenv("LOG_HISTORY_SIZE", "500"))

    # Server-Sent Events
    SSE_KEEPALIVE_INTERVAL: float = float(os.getenv("SSE_KEEPALIVE_INTERVAL", "15"))

    @property
    def is_production(self) -> bool:
        """Production when explicitly configured or served under a sub-path."""
        return self.ENVIRONMENT.lower() == "production" or self.BASE_PATH != ""

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


# Global settings instance
settings = Settings()
