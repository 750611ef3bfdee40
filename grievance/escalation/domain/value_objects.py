"""
Escalation Value Objects
========================

Immutable configuration objects for the escalation domain.

The policy is an explicit object handed to the engine, so tests and
tenants can run with their own thresholds without shared state.
"""

from datetime import date
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from grievance.config import Priority, Role, VALID_ROLES
from grievance.core import ConfigurationGapException

RoleStr = Literal["agent", "manager", "admin"]


class EscalationThreshold(BaseModel):
    """Time budget for one priority and the role that takes over on breach."""

    model_config = ConfigDict(frozen=True)

    priority: str = Field(..., min_length=1, description="Priority key")
    hours: float = Field(..., gt=0, description="Business-hours budget before escalation")
    target_role: RoleStr = Field(..., description="Role that receives the first escalation")


class WorkingWindow(BaseModel):
    """
    Working hours used for business-hours durations.

    Weekdays follow Python's numbering (Monday=0 .. Sunday=6). The default
    is Monday to Saturday, 09:00-17:00, with Sunday off.
    """

    model_config = ConfigDict(frozen=True)

    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=17, ge=1, le=24)
    working_weekdays: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5])
    holidays: List[date] = Field(default_factory=list)
    timezone: str = Field(default="UTC", description="IANA timezone of the window")

    @field_validator("working_weekdays")
    @classmethod
    def validate_weekdays(cls, v: List[int]) -> List[int]:
        """Weekdays must be 0-6 and at least one must be set."""
        if not v:
            raise ValueError("working_weekdays cannot be empty")
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("working_weekdays must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(v))

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{v}'") from e
        return v

    @model_validator(mode="after")
    def validate_hours(self) -> "WorkingWindow":
        if self.end_hour <= self.start_hour:
            raise ValueError("end_hour must be after start_hour")
        return self

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _default_thresholds() -> Dict[str, EscalationThreshold]:
    return {
        Priority.CRITICAL: EscalationThreshold(priority=Priority.CRITICAL, hours=4, target_role=Role.ADMIN),
        Priority.HIGH: EscalationThreshold(priority=Priority.HIGH, hours=12, target_role=Role.MANAGER),
        Priority.MEDIUM: EscalationThreshold(priority=Priority.MEDIUM, hours=24, target_role=Role.MANAGER),
        Priority.LOW: EscalationThreshold(priority=Priority.LOW, hours=72, target_role=Role.AGENT),
    }


class EscalationPolicy(BaseModel):
    """
    Escalation policy loaded from YAML.

    Thresholds are keyed by priority. A priority without a threshold is a
    configuration gap: lookups raise instead of falling back to a default.
    """

    model_config = ConfigDict(frozen=True)

    thresholds: Dict[str, EscalationThreshold] = Field(default_factory=_default_thresholds)
    cooldown_hours: float = Field(default=6, ge=0, description="Calendar hours between escalations")
    reescalation_business_hours: float = Field(
        default=24, ge=0, description="Business hours between escalations"
    )
    max_level: int = Field(default=3, ge=1, le=3)
    role_rank: Dict[str, int] = Field(
        default_factory=lambda: {Role.AGENT: 0, Role.MANAGER: 1, Role.ADMIN: 2},
        description="Lower rank is preferred when open counts tie"
    )
    level_roles: Dict[int, List[str]] = Field(
        default_factory=lambda: {2: [Role.MANAGER, Role.ADMIN], 3: [Role.ADMIN]},
        description="Eligible roles after reaching a level; level 1 uses the threshold's target role"
    )
    assignment_roles: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            Priority.CRITICAL: [Role.ADMIN, Role.MANAGER],
            Priority.HIGH: [Role.ADMIN, Role.MANAGER, Role.AGENT],
            Priority.MEDIUM: [Role.AGENT, Role.MANAGER],
            Priority.LOW: [Role.AGENT],
        },
        description="Eligible roles for first assignment, per priority"
    )
    notify_roles: List[str] = Field(default_factory=lambda: [Role.ADMIN, Role.MANAGER])
    reopen_window_days: int = Field(default=7, ge=0)
    at_risk_ratio: float = Field(default=0.8, gt=0, lt=1)
    working_window: WorkingWindow = Field(default_factory=WorkingWindow)

    @model_validator(mode="before")
    @classmethod
    def fill_threshold_keys(cls, data: Any) -> Any:
        """Allow `thresholds: {high: {hours: 12, target_role: manager}}` in YAML."""
        if isinstance(data, dict) and isinstance(data.get("thresholds"), dict):
            thresholds = {}
            for key, value in data["thresholds"].items():
                if isinstance(value, dict) and "priority" not in value:
                    value = {**value, "priority": key}
                thresholds[key] = value
            data = {**data, "thresholds": thresholds}
        return data

    @model_validator(mode="after")
    def validate_roles(self) -> "EscalationPolicy":
        for key, threshold in self.thresholds.items():
            if threshold.priority != key:
                raise ValueError(f"threshold for '{key}' declares priority '{threshold.priority}'")
        for roles in list(self.level_roles.values()) + list(self.assignment_roles.values()):
            unknown = set(roles) - set(VALID_ROLES)
            if unknown:
                raise ValueError(f"unknown roles: {sorted(unknown)}")
        return self

    def threshold_for(self, priority: str) -> EscalationThreshold:
        """
        Get the threshold for a priority.

        Raises:
            ConfigurationGapException: If the priority has no threshold
        """
        threshold = self.thresholds.get(priority)
        if threshold is None:
            raise ConfigurationGapException(priority)
        return threshold

    def roles_for_level(
        self,
        level: int,
        threshold: Optional[EscalationThreshold] = None
    ) -> List[str]:
        """Roles eligible to own an issue that has reached the given level."""
        if level <= 1 and threshold is not None:
            return [threshold.target_role]
        roles = self.level_roles.get(level)
        if roles:
            return list(roles)
        if threshold is not None:
            return [threshold.target_role]
        return [Role.MANAGER]

    def assignment_roles_for(self, priority: str) -> List[str]:
        """
        Roles eligible for first assignment at a priority.

        Raises:
            ConfigurationGapException: If the priority has no assignment rule
        """
        roles = self.assignment_roles.get(priority)
        if not roles:
            raise ConfigurationGapException(priority)
        return list(roles)

    def rank_of(self, role: str) -> int:
        """Role preference rank; unknown roles sort after every known one."""
        return self.role_rank.get(role, len(self.role_rank))
