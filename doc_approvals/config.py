"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Engine components receive an EngineConfig explicitly; the module-level instance
exists only for process entry points.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    """Approval engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="DOCFLOW_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///doc_approvals.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None  # If None, logs to stdout

    # SLA and escalation
    sla_enabled: bool = True
    escalation_enabled: bool = True
    escalation_grace_hours: int = Field(default=24, ge=0)
    escalation_role_name: str = "MANAGER"
    escalation_extension_hours: int = Field(default=24, gt=0)
    escalation_strategy: Literal["first", "round_robin", "least_loaded"] = "first"
    # Escalated tasks keep OVERDUE unless this is switched on
    escalation_resets_status: bool = False

    # Task due dates when a step has no SLA of its own
    default_task_sla_hours: int = Field(default=48, gt=0)

    # Scheduler
    scheduler_interval_minutes: int = Field(default=10, gt=0)
    scheduler_initial_delay_minutes: int = Field(default=2, ge=0)
    scheduler_batch_size: int = Field(default=200, gt=0)
    scheduler_max_batches_per_tick: int = Field(default=10, gt=0)
    scheduler_conflict_retries: int = Field(default=3, ge=0)

    # Notifications
    notification_workers: int = Field(default=4, gt=0)


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
