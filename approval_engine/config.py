"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class ApprovalEngineConfig(BaseSettings):
    """Approval workflow engine configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///approvals.db"  # "memory" for in-memory storage
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # SLA sweeper configuration
    sweep_interval_seconds: int = 300  # 0 disables the background thread
    max_conflict_retries: int = 3
    
    # Business rules configuration
    elevated_roles: List[str] = ["admin"]  # may cancel any instance
    default_allowed_actions: List[str] = ["APPROVE", "REJECT", "DELEGATE"]
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "APPROVAL_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ApprovalEngineConfig()


def get_config() -> ApprovalEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ApprovalEngineConfig:
    """Reload configuration from environment"""
    global config
    config = ApprovalEngineConfig()
    return config
