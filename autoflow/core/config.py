"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables."""

    # Queue Backend
    queue_backend: Literal["redis", "memory"] = Field(default="redis", env="QUEUE_BACKEND")

    # Redis Configuration
    redis_host: str = Field(default="localhost", env="REDIS_HOST")
    redis_port: int = Field(default=6379, env="REDIS_PORT", ge=1, le=65535)
    redis_password: Optional[str] = Field(default=None, env="REDIS_PASSWORD")
    redis_db: int = Field(default=0, env="REDIS_DB", ge=0)
    redis_key_prefix: str = Field(default="autoflow", env="REDIS_KEY_PREFIX", min_length=1)
    redis_connect_timeout: float = Field(default=5.0, env="REDIS_CONNECT_TIMEOUT", gt=0)

    # Worker Pools
    workflow_concurrency: int = Field(default=5, env="WORKFLOW_CONCURRENCY", ge=1, le=100)
    node_concurrency: int = Field(default=10, env="NODE_CONCURRENCY", ge=1, le=200)

    # Workflow Queue Policy
    workflow_remove_on_complete: int = Field(default=100, env="WORKFLOW_REMOVE_ON_COMPLETE", ge=0)
    workflow_remove_on_fail: int = Field(default=50, env="WORKFLOW_REMOVE_ON_FAIL", ge=0)
    workflow_attempts: int = Field(default=3, env="WORKFLOW_ATTEMPTS", ge=1, le=20)
    workflow_backoff_delay: int = Field(default=2000, env="WORKFLOW_BACKOFF_DELAY", ge=0)  # ms

    # Node Queue Policy
    node_remove_on_complete: int = Field(default=200, env="NODE_REMOVE_ON_COMPLETE", ge=0)
    node_remove_on_fail: int = Field(default=100, env="NODE_REMOVE_ON_FAIL", ge=0)
    node_attempts: int = Field(default=2, env="NODE_ATTEMPTS", ge=1, le=20)
    node_backoff_delay: int = Field(default=1000, env="NODE_BACKOFF_DELAY", ge=0)  # ms

    # Global Retry Defaults
    retry_max_attempts: int = Field(default=3, env="RETRY_MAX_ATTEMPTS", ge=1, le=20)
    retry_delay: int = Field(default=2000, env="RETRY_DELAY", ge=0)  # ms

    # Execution
    node_job_timeout: float = Field(default=300.0, env="NODE_JOB_TIMEOUT", gt=0)  # seconds
    log_persistence_enabled: bool = Field(default=False, env="LOG_PERSISTENCE_ENABLED")
    log_retention_seconds: int = Field(default=86400, env="LOG_RETENTION_SECONDS", ge=60)

    # Monitoring
    monitoring_enabled: bool = Field(default=False, env="MONITORING_ENABLED")
    monitoring_host: str = Field(default="0.0.0.0", env="MONITORING_HOST")
    monitoring_port: int = Field(default=3001, env="MONITORING_PORT", ge=1024, le=65535)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and check the level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def redis_url(self) -> str:
        """Connection URL assembled from the individual Redis settings."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
