"""Configuration and environment settings for the expense categorizer."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from categorizer.core.errors import ConfigurationError

MAX_BATCH_SIZE = 100


class Settings(BaseSettings):
    """Application settings for the expense categorizer."""

    groq_api_key: str | None = None
    model: str = "llama-3.3-70b-versatile"
    temperature: float = 0.3
    max_tokens: int = 200
    retry_attempts: int = 3
    category_sample_size: int = 100

    database_url: str = "sqlite:///expenses.db"

    queue_backend: Literal["memory", "sqs"] = "memory"
    sqs_queue_url: str | None = None
    aws_region: str = "us-east-1"
    aws_endpoint_url: str | None = None
    max_receive_count: int = 3
    visibility_timeout: int = 360
    receive_batch_size: int = 10
    worker_concurrency: int = 2
    batch_timeout: float = 300.0
    embedded_worker: bool = False

    log_file: str = "logs/categorizer.log"
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def max_batch_size(self) -> int:
        """Classification chunk ceiling; fixed by the provider, not configurable."""
        return MAX_BATCH_SIZE

    def require_classifier(self) -> str:
        """Return the classifier API key or fail the startup."""
        if not self.groq_api_key:
            msg = "GROQ_API_KEY is not set; the categorization worker cannot start"
            raise ConfigurationError(msg)
        return self.groq_api_key


def get_settings() -> "Settings":
    """Return an instance of the application settings."""
    return Settings()
