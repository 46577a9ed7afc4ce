"""
Configuration module for the scan analysis service.

This module loads configuration from environment variables and provides
a configuration object for the application.
"""

import os
import logging
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

logger = logging.getLogger(__name__)


def _env(name: str, default: str):
    return field(default_factory=lambda: os.getenv(name, default))


def _env_int(name: str, default: int):
    return field(default_factory=lambda: int(os.getenv(name, str(default))))


def _env_bool(name: str, default: bool):
    return field(default_factory=lambda: os.getenv(name, str(default)).lower() == "true")


@dataclass
class AppConfig:
    """Configuration class for the scan analysis service."""

    # Inference service configuration
    inference_base_url: str = _env("INFERENCE_BASE_URL", "https://image-name-136538419615.us-central1.run.app")
    inference_timeout_seconds: int = _env_int("INFERENCE_TIMEOUT_SECONDS", 30)
    conversion_timeout_seconds: int = _env_int("CONVERSION_TIMEOUT_SECONDS", 60)
    enable_llm_report: bool = _env_bool("ENABLE_LLM_REPORT", True)
    model_version: str = _env("MODEL_VERSION", "v2.1")

    # Queue and worker configuration
    queue_service_time_seconds: int = _env_int("QUEUE_SERVICE_TIME_SECONDS", 300)
    estimated_analysis_seconds: int = _env_int("ESTIMATED_ANALYSIS_SECONDS", 60)
    worker_count: int = _env_int("WORKER_COUNT", 2)
    worker_queue_size: int = _env_int("WORKER_QUEUE_SIZE", 50)
    processing_timeout_seconds: int = _env_int("PROCESSING_TIMEOUT_SECONDS", 900)

    # Celery configuration
    celery_broker_url: str = _env("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = _env("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
    celery_always_eager: bool = _env_bool("CELERY_ALWAYS_EAGER", False)
    celery_task_soft_time_limit: int = _env_int("CELERY_TASK_SOFT_TIME_LIMIT", 600)
    celery_task_time_limit: int = _env_int("CELERY_TASK_TIME_LIMIT", 840)
    celery_result_expires: int = _env_int("CELERY_TASK_RESULT_EXPIRES", 3600)

    # Storage configuration
    aws_region: str = _env("AWS_REGION", "us-east-1")
    output_bucket: str = _env("OUTPUT_BUCKET", "")
    local_image_root: str = _env("LOCAL_IMAGE_ROOT", "./data/images")

    # API configuration
    api_host: str = _env("API_HOST", "0.0.0.0")
    api_port: int = _env_int("API_PORT", 8000)
    jwt_secret_key: str = _env("JWT_SECRET_KEY", "development_secret_key")
    jwt_expiration_minutes: int = _env_int("JWT_EXPIRATION_MINUTES", 60 * 24)

    # Application configuration
    debug_mode: bool = _env_bool("DEBUG_MODE", False)
    log_level: str = _env("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Validate configuration after initialization."""
        numeric_level = getattr(logging, self.log_level.upper(), None)
        if not isinstance(numeric_level, int):
            numeric_level = logging.INFO
        logging.basicConfig(
            level=numeric_level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        if self.worker_count < 1:
            raise ValueError("WORKER_COUNT must be at least 1")
        if self.worker_queue_size < 1:
            raise ValueError("WORKER_QUEUE_SIZE must be at least 1")
        if self.celery_task_soft_time_limit >= self.celery_task_time_limit:
            raise ValueError("CELERY_TASK_SOFT_TIME_LIMIT must be below CELERY_TASK_TIME_LIMIT")
        if self.celery_task_time_limit >= self.processing_timeout_seconds:
            logger.warning("CELERY_TASK_TIME_LIMIT is not below PROCESSING_TIMEOUT_SECONDS; "
                           "running tasks may be reclaimed as stuck")

        # Log configuration (excluding sensitive values)
        if self.debug_mode:
            logger.debug(f"Inference URL: {self.inference_base_url}")
            logger.debug(f"Broker: {self.celery_broker_url} (eager={self.celery_always_eager})")
            logger.debug(f"Workers: {self.worker_count} (max in flight {self.worker_queue_size})")
            logger.debug(f"Image root: {self.local_image_root} (outputs to {self.output_bucket or 'local disk'})")
            logger.debug(f"Log Level: {self.log_level}")


def load_config() -> AppConfig:
    """
    Load and return the application configuration.

    Returns:
        AppConfig: The application configuration
    """
    return AppConfig()
