"""Shared configuration management for the invoice tax pipeline.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
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
        default="invoice-tax-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Classification provider configuration
    classification_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Classification provider: openai (cloud API), ollama (self-hosted LLM)",
    )
    openai_classification_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used for tax classification",
    )

    # Vision provider configuration (scanned invoices)
    vision_provider: Literal["openai"] = Field(
        default="openai",
        description="Vision provider for image/PDF invoices",
    )
    openai_vision_model: str = Field(
        default="gpt-4o",
        description="OpenAI model used for image extraction",
    )

    # Ollama configuration (for classification_provider="ollama")
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5:7b",
        description="Ollama model to use for classification (e.g., qwen2.5:7b, llama3.1:8b)",
    )

    # External call policy
    classification_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Upper bound for a single classification call",
    )
    vision_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound for a single vision extraction call",
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive provider failures before the circuit opens",
    )
    circuit_breaker_reset_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds an open circuit waits before allowing a trial call",
    )

    # Classification context hints
    default_tax_regime: str = Field(
        default="Régimen Ordinario",
        description="Tax regime passed to the classifier as context",
    )
    default_city_code: str = Field(
        default="11001",
        description="DANE city code used when the invoice does not state one (Bogotá)",
    )

    # Job processing
    job_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum processing attempts per job",
    )
    job_lease_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Lease TTL guarding a job against concurrent workers",
    )
    review_confidence_threshold: float = Field(
        default=0.85,
        ge=0,
        le=1,
        description="Extraction/classification confidence below which a job needs review",
    )

    # Tax rules
    tax_rules_path: Path | None = Field(
        default=None,
        description="JSON rule book with versioned tax rule sets (built-in rules if unset)",
    )

    # Queue configuration (arq / Redis)
    queue_enabled: bool = Field(
        default=False,
        description="Process jobs through the arq worker instead of in-process",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the job queue and job store",
    )
    queue_max_jobs: int = Field(
        default=10,
        ge=1,
        description="Maximum concurrent jobs per worker",
    )
    queue_job_timeout: int = Field(
        default=300,
        ge=1,
        description="Hard timeout for one job execution in seconds",
    )
    retry_backoff_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Base delay before a failed job is picked up again",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
