"""
Configuration management for the GitLab commit tracer.

This module provides centralized configuration with:
- GitLab API access and retry settings
- Chain tracing defaults
- Feed monitor and commit processor tuning
- Logging configuration
"""

from typing import Optional, Dict, Any, Union
from pathlib import Path
from functools import lru_cache

from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings import BaseSettings as PydanticBaseSettings


class GitLabSettings(BaseSettings):
    """GitLab API configuration settings."""

    model_config = SettingsConfigDict(env_prefix="GITLAB_", extra="ignore")

    url: str = Field(default="https://gitlab.com", description="GitLab instance base URL")
    token: Optional[SecretStr] = Field(default=None, description="Personal access token")
    project_id: Optional[Union[int, str]] = Field(
        default=None, description="Default project ID or namespaced path"
    )
    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    max_retries: int = Field(default=3, ge=0, description="Retry attempts for transient errors")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff delay in seconds")
    min_request_interval: float = Field(
        default=0.1, ge=0, description="Minimum spacing between requests in seconds"
    )
    rate_limit_low_water: int = Field(
        default=10, ge=0, description="Remaining-quota level that triggers a wait for reset"
    )

    @field_validator("url")
    @classmethod
    def validate_gitlab_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("GitLab URL must be HTTP/HTTPS")
        return v.rstrip("/")


class TracingSettings(BaseSettings):
    """Chain tracing defaults."""

    model_config = SettingsConfigDict(env_prefix="TRACING_", extra="ignore")

    include_epics: bool = Field(default=True, description="Resolve epics for traced issues")
    follow_related_mrs: bool = Field(default=True, description="Union in issue-related MRs")
    use_cache: bool = Field(default=True, description="Cache API responses between traces")
    cache_ttl: int = Field(default=300, gt=0, description="Cache entry TTL in seconds")
    continue_on_error: bool = Field(
        default=True, description="Downgrade sub-step failures to warnings"
    )


class ProcessorSettings(BaseSettings):
    """Commit processor queue settings."""

    model_config = SettingsConfigDict(env_prefix="PROCESSOR_", extra="ignore")

    concurrency: int = Field(default=3, ge=1, description="Maximum concurrent traces")
    max_retries: int = Field(default=3, ge=1, description="Attempts before a commit fails")
    retry_delay: float = Field(default=5.0, ge=0, description="Fixed delay between attempts")


class FeedMonitorSettings(BaseSettings):
    """Feed monitor settings."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_", extra="ignore")

    projects_file: str = Field(
        default="config/projects.json", description="Monitored projects configuration file"
    )
    initial_load_limit: int = Field(
        default=50, ge=1, description="Commits emitted when a branch is first baselined"
    )
    failure_alert_threshold: int = Field(
        default=5, ge=1, description="Consecutive poll failures before an alert is logged"
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: str = Field(default="INFO", description="Logging level")
    format: str = Field(default="text", description="Log format (json/text)")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_log_format(cls, v):
        if v.lower() not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class Settings(PydanticBaseSettings):
    """
    Main application settings.

    Nested groups can be overridden with their own prefixes (``GITLAB_TOKEN``,
    ``PROCESSOR_CONCURRENCY``) or through the root delimiter
    (``PROCESSOR__CONCURRENCY``).
    """

    app_name: str = Field(default="GitLab Commit Tracer", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    gitlab: GitLabSettings = Field(default_factory=GitLabSettings)
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    processor: ProcessorSettings = Field(default_factory=ProcessorSettings)
    monitor: FeedMonitorSettings = Field(default_factory=FeedMonitorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        valid_environments = ["development", "testing", "staging", "production"]
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v

    @field_validator("debug")
    @classmethod
    def validate_debug_mode(cls, v, info):
        if info.data.get("environment") == "production" and v:
            raise ValueError("Debug mode cannot be enabled in production")
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Example:
        >>> settings = get_settings()
        >>> print(settings.gitlab.url)
        >>> print(settings.processor.concurrency)
    """
    return Settings()


# Global settings instance
settings = get_settings()


def is_production() -> bool:
    """Check if running in production environment."""
    return settings.environment == "production"


def is_testing() -> bool:
    """Check if running in testing environment."""
    return settings.environment == "testing"


def validate_configuration(config: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Validate settings and return validation results.

    Example:
        >>> validation = validate_configuration()
        >>> if not validation['valid']:
        >>>     print("Configuration errors:", validation['errors'])
    """
    config = config or settings
    errors = []
    warnings = []

    if config.gitlab.token is None or not config.gitlab.token.get_secret_value():
        errors.append("GitLab token is required (set GITLAB_TOKEN)")

    if config.gitlab.project_id is None:
        warnings.append("No default project configured; project IDs must be passed explicitly")

    if not Path(config.monitor.projects_file).exists():
        warnings.append(f"Projects file not found: {config.monitor.projects_file}")

    if config.environment == "production" and config.debug:
        errors.append("Debug mode cannot be enabled in production")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "environment": config.environment,
    }


def export_config(config: Optional[Settings] = None) -> Dict[str, Any]:
    """Export configuration for display and diagnostics (without secrets)."""
    config = config or settings
    return {
        "app_name": config.app_name,
        "version": config.version,
        "environment": config.environment,
        "debug": config.debug,
        "gitlab": {
            "url": config.gitlab.url,
            "project_id": config.gitlab.project_id,
            "timeout": config.gitlab.timeout,
            "max_retries": config.gitlab.max_retries,
            "token_configured": config.gitlab.token is not None,
        },
        "tracing": config.tracing.model_dump(),
        "processor": config.processor.model_dump(),
        "monitor": config.monitor.model_dump(),
        "logging": config.logging.model_dump(),
    }


if __name__ == "__main__":
    import json

    validation = validate_configuration()

    print("Configuration Validation:")
    print(json.dumps(validation, indent=2))

    print("\nConfiguration Export:")
    print(json.dumps(export_config(), indent=2, default=str))

    if not validation["valid"]:
        exit(1)
