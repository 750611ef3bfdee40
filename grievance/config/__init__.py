"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="grievance-escalation", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/grievances",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Policy ==========
    escalation_policy_path: Path = Field(
        default=Path("escalation_policy.yaml"),
        description="Path to escalation policy YAML file"
    )
    escalation_interval_seconds: int = Field(
        default=900,
        description="Seconds between escalation ticks (0 disables the scheduler)",
        ge=0
    )
    balancer_seed: Optional[int] = Field(
        default=None,
        description="Seed for the workload balancer random tie-break"
    )

    # ========== Notifier ==========
    notifier_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook URL of the external notification service"
    )
    notifier_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single notification delivery",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Priority(str):
    """Issue priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueStatus(str):
    """Issue lifecycle statuses."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Role(str):
    """Dashboard user roles that can own issues."""
    AGENT = "agent"
    MANAGER = "manager"
    ADMIN = "admin"


class AuditAction(str):
    """Audit ledger action tags."""
    ESCALATED = "escalated"
    ESCALATION_REASSIGNED = "escalation_reassigned"
    AUTO_ASSIGNED = "auto_assigned"
    REASSIGNED = "reassigned"
    REOPENED = "reopened"


class NotificationKind(str):
    """Kinds of notifications sent to the external notifier."""
    ISSUE_ESCALATED = "issue_escalated"
    ISSUE_ASSIGNED = "issue_assigned"


SYSTEM_ACTOR = "system"


# ========== Lists for validation ==========

# Ascending order; escalation moves one step to the right.
PRIORITY_ORDER = [
    Priority.LOW, Priority.MEDIUM,
    Priority.HIGH, Priority.CRITICAL
]
VALID_PRIORITIES = list(PRIORITY_ORDER)
VALID_STATUSES = [
    IssueStatus.OPEN, IssueStatus.IN_PROGRESS,
    IssueStatus.RESOLVED, IssueStatus.CLOSED
]
OPEN_STATUSES = [IssueStatus.OPEN, IssueStatus.IN_PROGRESS]
TERMINAL_STATUSES = [IssueStatus.RESOLVED, IssueStatus.CLOSED]
VALID_ROLES = [Role.AGENT, Role.MANAGER, Role.ADMIN]
