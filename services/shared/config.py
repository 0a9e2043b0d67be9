"""Shared configuration management for the invoice pipeline.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_PIPELINE_REVIEW_THRESHOLD=0.85
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-compliance-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Extraction provider configuration
    extraction_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Extraction provider: openai (cloud API), ollama (self-hosted LLM)",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used for field extraction",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5:7b",
        description="Ollama model to use for extraction (e.g., qwen2.5:7b, llama3.1:8b)",
    )

    # Decision thresholds
    pipeline_auto_approve_threshold: float = Field(
        default=0.95,
        ge=0,
        le=1,
        description="Aggregate confidence at or above which invoices are auto-approved",
    )
    pipeline_review_threshold: float = Field(
        default=0.80,
        ge=0,
        le=1,
        description="Aggregate confidence at or above which invoices go to manual review",
    )

    # Batch processing
    pipeline_batch_max_size: int = Field(
        default=50,
        ge=1,
        description="Maximum number of invoices accepted by one batch request",
    )
    pipeline_max_workers: int = Field(
        default=4,
        ge=1,
        description="Worker threads used to process a batch concurrently",
    )

    # Retry policy for the extraction stage
    pipeline_retry_on_error: bool = Field(
        default=True,
        description="Retry the extraction stage on transient errors",
    )
    pipeline_max_retries: int = Field(
        default=2,
        ge=0,
        description="Additional extraction attempts after the first failure",
    )
    pipeline_retry_wait_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Initial backoff between extraction retries",
    )

    # Tax rules
    default_tax_rate: float = Field(
        default=18.0,
        description="Fallback GST rate (most common slab) when no HSN match is found",
    )
    fiscal_year_start_month: int = Field(
        default=4,
        ge=1,
        le=12,
        description="Calendar month in which the fiscal year starts (India: April)",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
