"""
Configuration management for the scene orchestration backend
"""

import logging
import os
from typing import Optional

import structlog
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./scene_jobs.db")

    # Redis
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_MAX_CONNECTIONS: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
    REDIS_SOCKET_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    REDIS_SOCKET_CONNECT_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))
    REDIS_RETRY_ON_TIMEOUT: bool = os.getenv("REDIS_RETRY_ON_TIMEOUT", "true").lower() == "true"
    REDIS_HEALTH_CHECK_INTERVAL: int = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))
    # Progress fan-out is optional; the job store stays authoritative
    REDIS_ENABLED: bool = os.getenv("REDIS_ENABLED", "true").lower() == "true"

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    # Seconds background compositing gets to finish on shutdown before it is cancelled
    SHUTDOWN_GRACE_SECONDS: float = float(os.getenv("SHUTDOWN_GRACE_SECONDS", "30"))
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Replicate Configuration
    REPLICATE_API_KEY: str = os.getenv("REPLICATE_API_KEY", "")
    REPLICATE_API_TOKEN: str = os.getenv("REPLICATE_API_TOKEN", "")  # Alternative naming
    REPLICATE_MODEL: str = os.getenv("REPLICATE_MODEL", "pixverse/pixverse-v5")
    REPLICATE_MODEL_VERSION: Optional[str] = os.getenv("REPLICATE_MODEL_VERSION", None)
    REPLICATE_MAX_RETRIES: int = int(os.getenv("REPLICATE_MAX_RETRIES", "3"))
    REPLICATE_TIMEOUT: int = int(os.getenv("REPLICATE_TIMEOUT", "600"))

    # Webhook (completion fast-path)
    # Public URL Replicate calls back on; leave empty to rely on polling only
    WEBHOOK_URL: str = os.getenv("WEBHOOK_URL", "")
    REPLICATE_WEBHOOK_SECRET: str = os.getenv("REPLICATE_WEBHOOK_SECRET", "")
    WEBHOOK_SIGNATURE_HEADER: str = os.getenv("WEBHOOK_SIGNATURE_HEADER", "Replicate-Signature")

    # Status poller
    POLLER_ENABLED: bool = os.getenv("POLLER_ENABLED", "true").lower() == "true"
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "10"))
    POLL_BATCH_SIZE: int = int(os.getenv("POLL_BATCH_SIZE", "100"))
    POLL_CONCURRENCY: int = int(os.getenv("POLL_CONCURRENCY", "8"))
    # A scene prediction pending longer than this fails the job
    SCENE_TIMEOUT_SECONDS: int = int(os.getenv("SCENE_TIMEOUT_SECONDS", "600"))
    # Encoding jobs, and running jobs without a live prediction, that have not
    # moved for this long are resumed (up to MAX_JOB_RECOVERIES times), then failed
    STALLED_JOB_TIMEOUT_SECONDS: int = int(os.getenv("STALLED_JOB_TIMEOUT_SECONDS", "1800"))
    MAX_JOB_RECOVERIES: int = int(os.getenv("MAX_JOB_RECOVERIES", "1"))

    # Compositor retry policy (1s, 2s, 4s ... capped)
    COMPOSITOR_MAX_RETRIES: int = int(os.getenv("COMPOSITOR_MAX_RETRIES", "3"))
    COMPOSITOR_INITIAL_DELAY: float = float(os.getenv("COMPOSITOR_INITIAL_DELAY", "1.0"))
    COMPOSITOR_MAX_DELAY: float = float(os.getenv("COMPOSITOR_MAX_DELAY", "10.0"))
    COMPOSITOR_WORKDIR: str = os.getenv("COMPOSITOR_WORKDIR", "/tmp/scene_jobs")
    DOWNLOAD_TIMEOUT: int = int(os.getenv("DOWNLOAD_TIMEOUT", "300"))

    # Encode settings
    OUTPUT_FPS: int = int(os.getenv("OUTPUT_FPS", "24"))
    OUTPUT_CODEC: str = os.getenv("OUTPUT_CODEC", "libx264")
    OUTPUT_PRESET: str = os.getenv("OUTPUT_PRESET", "fast")

    # AWS S3 Configuration
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "")
    AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    ARTIFACT_URL_EXPIRY: int = int(os.getenv("ARTIFACT_URL_EXPIRY", "604800"))  # 7 days in seconds

    # Redis pub/sub channels
    JOB_STATUS_CHANNEL: str = "job_status_updates"
    JOB_PROGRESS_CHANNEL: str = "job_progress_updates"

    @property
    def replicate_api_token(self) -> str:
        """Token under either supported environment name."""
        return self.REPLICATE_API_TOKEN or self.REPLICATE_API_KEY

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


# Global settings instance
settings = Settings()


def configure_logging() -> None:
    """Configure structlog once for the API process and the standalone worker."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
