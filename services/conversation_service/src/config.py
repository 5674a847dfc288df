"""
Haven Conversation Service - Configuration.
Centralized service configuration using pydantic-settings.
"""
from __future__ import annotations
import logging
from functools import lru_cache
from typing import Any
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

from services.shared.infrastructure import LLMClientSettings


class RiskSettings(BaseSettings):
    """Risk assessment engine tuning."""
    trend_window: int = Field(default=5, ge=2, le=20)
    ema_alpha: float = Field(default=0.5, gt=0.0, le=1.0)
    slope_threshold: float = Field(default=0.05, ge=0.0, le=1.0)
    volatility_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    sentiment_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    crisis_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    trend_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    high_intensity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    severity_penalty_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    sentiment_model: str | None = Field(default=None)
    crisis_model: str | None = Field(default=None)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    model_config = SettingsConfigDict(
        env_prefix="HAVEN_RISK_",
        env_file=".env",
        extra="ignore",
    )


class PlanSettings(BaseSettings):
    """Therapeutic plan versioning configuration."""
    review_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_history_depth: int = Field(default=40, ge=1, le=200)
    revision_model: str | None = Field(default=None)
    revision_temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    revision_max_tokens: int = Field(default=2048, ge=256, le=16000)

    model_config = SettingsConfigDict(
        env_prefix="HAVEN_PLAN_",
        env_file=".env",
        extra="ignore",
    )


class ContextSettings(BaseSettings):
    """Conversation context snapshot configuration."""
    message_window: int = Field(default=15, ge=1, le=200)
    risk_window: int = Field(default=10, ge=1, le=100)
    speculative_analysis: bool = Field(default=True)
    response_temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    model_config = SettingsConfigDict(
        env_prefix="HAVEN_CONTEXT_",
        env_file=".env",
        extra="ignore",
    )


class ObservabilitySettings(BaseSettings):
    """Logging configuration."""
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="HAVEN_OBSERVABILITY_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class ConversationServiceSettings(BaseSettings):
    """Main conversation service configuration."""
    service_name: str = Field(default="conversation-service")
    service_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    format_retries: int = Field(default=1, ge=0, le=3)
    crisis_hotline_number: str = Field(default="988")

    llm: LLMClientSettings = Field(default_factory=LLMClientSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    plan: PlanSettings = Field(default_factory=PlanSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = SettingsConfigDict(
        env_prefix="HAVEN_",
        env_file=".env",
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        allowed = ["development", "staging", "testing", "production"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    def to_dict(self) -> dict[str, Any]:
        """Export configuration as dictionary (excluding secrets)."""
        return {
            "service_name": self.service_name,
            "service_version": self.service_version,
            "environment": self.environment,
            "format_retries": self.format_retries,
            "llm": {
                "model": self.llm.model,
                "max_retries": self.llm.max_retries,
                "timeout_seconds": self.llm.timeout_seconds,
            },
            "risk": {
                "trend_window": self.risk.trend_window,
                "slope_threshold": self.risk.slope_threshold,
            },
            "context": {
                "message_window": self.context.message_window,
                "risk_window": self.context.risk_window,
                "speculative_analysis": self.context.speculative_analysis,
            },
        }


@lru_cache
def get_settings() -> ConversationServiceSettings:
    """Get cached service settings singleton."""
    return ConversationServiceSettings()


def reset_settings() -> None:
    """Reset settings cache (for testing)."""
    get_settings.cache_clear()


def configure_logging(settings: ObservabilitySettings) -> None:
    """Configure structlog output and level filtering."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
