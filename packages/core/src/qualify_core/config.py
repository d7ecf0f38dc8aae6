"""Configuration system for the qualifying-income engine.

This module provides Pydantic Settings-based configuration with environment
variable support and sensible defaults. Engine defaults (agency, loan program,
pay-frequency fallback) live on an explicit EngineConfig object that is passed
into each calculation instead of being read from module-level constants.

Usage:
    from qualify_core.config import QualifyConfig, configure_logging

    # Load from environment variables and .env file
    config = QualifyConfig()
    configure_logging(config.log_level)

    calculator = IncomeCalculator(documents, calculations, config=config.engine)
"""

import logging
from typing import Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.documents import PayFrequency


class EngineConfig(BaseSettings):
    """Calculation engine settings.

    Environment Variables:
        QUALIFY_ENGINE_DEFAULT_AGENCY: Agency used when a call does not name one
        QUALIFY_ENGINE_DEFAULT_LOAN_PROGRAM: Loan program used when a call does not name one
        QUALIFY_ENGINE_PAY_FREQUENCY_FALLBACK: Frequency assumed for pay stubs
            with a missing or unrecognized pay frequency
        QUALIFY_ENGINE_WARN_ON_FREQUENCY_FALLBACK: Emit a review warning when
            the fallback frequency is used
        QUALIFY_ENGINE_DECLINING_TREND_THRESHOLD: Year-over-year decline that
            triggers a declining-income warning (0.20 = 20%)
    """

    model_config = SettingsConfigDict(
        env_prefix="QUALIFY_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_agency: str = Field(
        default="fannie",
        description="Agency rule set used when none is supplied",
    )
    default_loan_program: str = Field(
        default="conventional",
        description="Loan program used when none is supplied",
    )
    pay_frequency_fallback: PayFrequency = Field(
        default=PayFrequency.MONTHLY,
        description="Pay frequency assumed when a pay stub does not state a recognizable one",
    )
    warn_on_frequency_fallback: bool = Field(
        default=True,
        description="Flag fallback pay frequencies for human review",
    )
    declining_trend_threshold: float = Field(
        default=0.20,
        gt=0.0,
        lt=1.0,
        description="Year-over-year decline that is flagged as a declining trend",
    )

    @field_validator("default_agency", "default_loan_program")
    @classmethod
    def normalize_key(cls, v: str) -> str:
        """Lower-case and strip lookup keys."""
        if not v or not v.strip():
            raise ValueError("Agency and loan program defaults cannot be empty")
        return v.strip().lower()


class LLMConfig(BaseSettings):
    """LLM extraction settings.

    Environment Variables:
        QUALIFY_LLM_MODEL: Anthropic model name
        QUALIFY_LLM_MAX_TOKENS: Maximum output tokens
        QUALIFY_LLM_API_KEY: API key (falls back to ANTHROPIC_API_KEY)
        QUALIFY_LLM_TIMEOUT: Request timeout in seconds
        QUALIFY_LLM_MIN_REGEX_CONFIDENCE: Below this, regex results are
            re-extracted with the LLM
    """

    model_config = SettingsConfigDict(
        env_prefix="QUALIFY_LLM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model identifier for the LLM",
    )
    max_tokens: int = Field(
        default=2000,
        gt=0,
        le=200000,
        description="Maximum tokens in response",
    )
    api_key: Optional[str] = Field(
        default=None,
        description="API key for the LLM provider",
    )
    timeout: float = Field(
        default=60.0,
        gt=0,
        description="Request timeout in seconds",
    )
    min_regex_confidence: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Regex extractions below this confidence fall back to the LLM",
    )

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        """Ensure model name is not empty."""
        if not v or not v.strip():
            raise ValueError("Model name cannot be empty")
        return v.strip()


class QualifyConfig(BaseSettings):
    """Root configuration.

    Environment Variables:
        QUALIFY_ENV: Environment name (development, staging, production, test)
        QUALIFY_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
        QUALIFY_DATA_DIR: Directory for stored calculations and exports

    Example:
        config = QualifyConfig(
            engine=EngineConfig(default_agency="freddie"),
            log_level="DEBUG",
        )
    """

    model_config = SettingsConfigDict(
        env_prefix="QUALIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    env: str = Field(
        default="development",
        description="Environment name (development, staging, production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    data_dir: str = Field(
        default="./data",
        description="Directory for stored calculations and exported worksheets",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment name."""
        valid_envs = {"development", "staging", "production", "test"}
        v_lower = v.lower().strip()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of: {valid_envs}")
        return v_lower

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper().strip()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of: {valid_levels}")
        return v_upper

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.env == "production"


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog to drop events below ``log_level``."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
