"""Configuration management with YAML and environment variable support"""

import os
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CompletionPolicy = Literal["complete", "mark_unknown"]


class BaseConfigSection(BaseSettings):
    """Base class for config sections.

    Source priority is environment variables, then init kwargs (the YAML
    section), then dotenv and secrets, then field defaults.
    """

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings source priority: env vars > init kwargs > defaults."""
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


class ServerConfig(BaseConfigSection):
    """Server configuration"""

    host: str = "0.0.0.0"  # nosec B104 - containerized deployment
    port: int = 8000

    model_config = SettingsConfigDict(env_prefix="KAPTURE_SERVER_")


class WorkerConfig(BaseConfigSection):
    """Extraction worker connection settings"""

    base_url: str = "http://localhost:3001"
    request_timeout: float = 15.0  # seconds
    connect_timeout: float = 5.0

    model_config = SettingsConfigDict(env_prefix="KAPTURE_WORKER_")

    @field_validator("request_timeout", "connect_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class StorageConfig(BaseConfigSection):
    """Object storage configuration"""

    root_dir: str = "/app/media"
    request_timeout: float = 10.0  # seconds
    public_base_url: str = "/api/v1/files"

    model_config = SettingsConfigDict(env_prefix="KAPTURE_STORAGE_")


class ReconciliationConfig(BaseConfigSection):
    """Job reconciliation sweep configuration"""

    interval: float = 30.0  # seconds between sweeps
    batch_limit: int = 50
    max_concurrency: int = 4
    recovery_successes: int = 10
    not_found_grace: int = 300  # seconds
    pending_timeout: int = 600  # seconds
    stuck_job_policy: CompletionPolicy = "complete"
    not_found_policy: CompletionPolicy = "complete"

    model_config = SettingsConfigDict(env_prefix="KAPTURE_RECONCILIATION_")

    @field_validator("batch_limit", "max_concurrency", "recovery_successes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v


class RetentionConfig(BaseConfigSection):
    """Retention and cleanup configuration"""

    keep_count: int = 5
    cleanup_delay: int = 3600  # seconds
    batch_size: int = 50
    max_iterations: int = 20
    iteration_pause: float = 0.1  # seconds
    quota_concurrency: int = 5
    emergency_older_than_days: int = 30
    sweep_interval: int = 3600  # seconds

    model_config = SettingsConfigDict(env_prefix="KAPTURE_RETENTION_")

    @field_validator("keep_count")
    @classmethod
    def validate_keep_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("keep_count must be at least 1")
        return v

    @field_validator("batch_size", "max_iterations", "quota_concurrency")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v


class CircuitBreakerConfig(BaseConfigSection):
    """Circuit breaker thresholds, applied per dependency"""

    failure_threshold: int = 5
    cooldown: float = 60.0  # seconds

    model_config = SettingsConfigDict(env_prefix="KAPTURE_CIRCUIT_BREAKER_")

    @field_validator("failure_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("failure_threshold must be at least 1")
        return v


class ProgressConfig(BaseConfigSection):
    """Progress cache configuration"""

    ttl: int = 86400  # seconds (24 hours)
    max_entries: int = 10000

    model_config = SettingsConfigDict(env_prefix="KAPTURE_PROGRESS_")


class LoggingConfig(BaseConfigSection):
    """Logging configuration"""

    level: str = "INFO"
    format: str = "json"

    model_config = SettingsConfigDict(env_prefix="KAPTURE_LOGGING_")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return v_upper


class SecurityConfig(BaseConfigSection):
    """Security configuration"""

    api_keys: List[str] = Field(default_factory=list)
    allow_degraded_start: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(env_prefix="KAPTURE_SECURITY_")


class MonitoringConfig(BaseConfigSection):
    """Monitoring configuration"""

    metrics_enabled: bool = True

    model_config = SettingsConfigDict(env_prefix="KAPTURE_MONITORING_")


class Config(BaseSettings):
    """Main application configuration"""

    server: ServerConfig = Field(default_factory=ServerConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="KAPTURE_")


_SECTIONS: Dict[str, Type[BaseConfigSection]] = {
    "server": ServerConfig,
    "worker": WorkerConfig,
    "storage": StorageConfig,
    "reconciliation": ReconciliationConfig,
    "retention": RetentionConfig,
    "circuit_breaker": CircuitBreakerConfig,
    "progress": ProgressConfig,
    "logging": LoggingConfig,
    "security": SecurityConfig,
    "monitoring": MonitoringConfig,
}


class ConfigService:
    """Service for loading and managing configuration"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get("KAPTURE_CONFIG_PATH", "config.yaml")
        self._config: Optional[Config] = None

    def load(self) -> Config:
        """Load configuration from the YAML file with environment variable overrides.

        Each section resolves its own precedence through BaseConfigSection, so
        the YAML data is simply passed in as init kwargs.
        """
        config_data: Dict[str, Any] = {}

        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f)
                if yaml_data:
                    config_data = yaml_data

        sections = {
            name: section_cls(**(config_data.get(name) or {}))
            for name, section_cls in _SECTIONS.items()
        }
        self._config = Config(**sections)

        return self._config

    def validate(self) -> bool:
        """Validate cross-section constraints of the loaded configuration"""
        if self._config is None:
            raise ValueError("Configuration not loaded. Call load() first.")

        if not self._config.security.api_keys and not self._config.security.allow_degraded_start:
            raise ValueError("At least one API key must be configured")

        # A hung worker call must not outlive the sweep that issued it
        if self._config.worker.request_timeout >= self._config.reconciliation.interval:
            raise ValueError("worker.request_timeout must be shorter than reconciliation.interval")

        if self._config.storage.request_timeout >= self._config.reconciliation.interval:
            raise ValueError("storage.request_timeout must be shorter than reconciliation.interval")

        return True

    @property
    def config(self) -> Config:
        """Get the loaded configuration"""
        if self._config is None:
            raise ValueError("Configuration not loaded. Call load() first.")
        return self._config
