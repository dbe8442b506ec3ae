"""
Configuration management for the CardMail API.

Handles environment variables, provider keys, and pipeline settings.
"""

import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Application configuration class.

    Attributes:
        DEBUG: Enable debug mode
        TESTING: Enable testing mode
        SECRET_KEY: Flask secret key
        MAX_CONTENT_LENGTH: Maximum upload file size (16MB default)
        ALLOWED_EXTENSIONS: Allowed image file extensions
        WORKER_CONCURRENCY: Jobs processed in parallel
        SNAPSHOT_FOLDER: Directory for job snapshots (empty keeps them in memory)
    """

    # Flask Settings
    DEBUG: bool = _env_bool("CARDMAIL_DEBUG")
    TESTING: bool = _env_bool("CARDMAIL_TESTING")
    SECRET_KEY: str = os.getenv("CARDMAIL_SECRET_KEY", "dev-secret-key-change-in-production")

    # File Upload Settings
    MAX_CONTENT_LENGTH: int = 16 * 1024 * 1024  # 16MB max file size
    ALLOWED_EXTENSIONS: set = {"png", "jpg", "jpeg", "gif", "bmp", "webp", "heic"}
    ALLOWED_MIME_TYPES: set = {
        "image/png", "image/jpeg", "image/gif", "image/bmp", "image/webp", "image/heic"
    }

    # Pipeline Settings
    WORKER_CONCURRENCY: int = int(os.getenv("CARDMAIL_WORKER_CONCURRENCY", "4"))
    RATE_LIMIT_MAX_STARTS: int = int(os.getenv("CARDMAIL_RATE_LIMIT_MAX_STARTS", "10"))
    RATE_LIMIT_WINDOW_SECONDS: float = float(os.getenv("CARDMAIL_RATE_LIMIT_WINDOW_SECONDS", "1.0"))
    MAX_ATTEMPTS: int = int(os.getenv("CARDMAIL_MAX_ATTEMPTS", "3"))
    BACKOFF_BASE_SECONDS: float = float(os.getenv("CARDMAIL_BACKOFF_BASE_SECONDS", "2.0"))
    BACKOFF_MAX_SECONDS: float = float(os.getenv("CARDMAIL_BACKOFF_MAX_SECONDS", "60"))
    MAX_OUTSTANDING_JOBS: int = int(os.getenv("CARDMAIL_MAX_OUTSTANDING_JOBS", "100"))
    MAX_RETAINED_COMPLETED: int = int(os.getenv("CARDMAIL_MAX_RETAINED_COMPLETED", "100"))  # sent jobs kept in memory
    MAX_RETAINED_FAILED: int = int(os.getenv("CARDMAIL_MAX_RETAINED_FAILED", "50"))
    PROVIDER_TIMEOUT_SECONDS: float = float(os.getenv("CARDMAIL_PROVIDER_TIMEOUT_SECONDS", "30"))
    SNAPSHOT_FOLDER: str = os.getenv("CARDMAIL_SNAPSHOT_FOLDER", "snapshots")

    # OCR Settings
    USE_LOCAL_OCR_FALLBACK: bool = _env_bool("CARDMAIL_USE_LOCAL_OCR_FALLBACK", "True")
    OCR_LANGUAGES: list = os.getenv("CARDMAIL_OCR_LANGUAGES", "ja,en").split(",")  # EasyOCR language codes
    OCR_GPU: bool = _env_bool("CARDMAIL_OCR_GPU")

    # Gemini (OCR, parsing, composition)
    GOOGLE_API_KEY: Optional[str] = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL: str = os.getenv("CARDMAIL_GEMINI_MODEL", "gemini-2.5-flash")

    # Gmail
    GMAIL_API_URL: str = os.getenv(
        "CARDMAIL_GMAIL_API_URL", "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
    )

    # Composition defaults
    DEFAULT_TONE: str = os.getenv("CARDMAIL_DEFAULT_TONE", "professional")
    DEFAULT_LANGUAGE: str = os.getenv("CARDMAIL_DEFAULT_LANGUAGE", "ja")
    SENDER_NAME: Optional[str] = os.getenv("CARDMAIL_SENDER_NAME")
    SENDER_COMPANY: Optional[str] = os.getenv("CARDMAIL_SENDER_COMPANY")

    # Logging
    LOG_LEVEL: str = os.getenv("CARDMAIL_LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def init_app(cls, app) -> None:
        """Initialize Flask app with configuration.

        Args:
            app: Flask application instance
        """
        app.config.from_object(cls)
        app.config["CARDMAIL_CONFIG"] = cls

        if cls.SNAPSHOT_FOLDER:
            os.makedirs(cls.SNAPSHOT_FOLDER, exist_ok=True)

        # Configure logging
        logging.basicConfig(
            level=getattr(logging, cls.LOG_LEVEL.upper()),
            format=cls.LOG_FORMAT
        )

        logger.info("Configuration initialized successfully")

    @classmethod
    def is_allowed_file(cls, filename: str) -> bool:
        """Check if file extension is allowed.

        Args:
            filename: Name of the file to check

        Returns:
            True if file extension is allowed, False otherwise
        """
        return "." in filename and \
            filename.rsplit(".", 1)[1].lower() in cls.ALLOWED_EXTENSIONS

    @classmethod
    def get_api_status(cls) -> dict:
        """Get status of configured provider keys.

        Returns:
            Dictionary with provider availability status
        """
        return {
            "gemini_api": cls.GOOGLE_API_KEY is not None,
            "local_ocr_fallback": cls.USE_LOCAL_OCR_FALLBACK,
            "default_sender": cls.SENDER_NAME is not None
        }


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    LOG_LEVEL = "INFO"


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    DEBUG = True
    LOG_LEVEL = "DEBUG"
    SNAPSHOT_FOLDER = ""
    GOOGLE_API_KEY = None
    USE_LOCAL_OCR_FALLBACK = False
    BACKOFF_BASE_SECONDS = 0.01
    PROVIDER_TIMEOUT_SECONDS = 2.0


# Configuration mapping
config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig
}


def get_config(config_name: Optional[str] = None) -> Config:
    """Get configuration class by name.

    Args:
        config_name: Configuration name (development, production, testing)

    Returns:
        Configuration class
    """
    if config_name is None:
        config_name = os.getenv("CARDMAIL_ENV", "development")
    return config_by_name.get(config_name, DevelopmentConfig)
