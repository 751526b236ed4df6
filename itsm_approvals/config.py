"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ApprovalsConfig(BaseSettings):
    """Approval engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "approvals.db"
    storage_retry_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.05

    # Authorization configuration
    group_derived_roles: bool = True  # Roles granted to groups apply to members
    bootstrap_admin_id: Optional[str] = None  # User created with the admin role on start-up

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_escalation_timeout_hours: Optional[float] = None
    analytics_window_days: int = 30

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "APPROVALS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ApprovalsConfig()


def get_config() -> ApprovalsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ApprovalsConfig:
    """Reload configuration from environment"""
    global config
    config = ApprovalsConfig()
    return config
