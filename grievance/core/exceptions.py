"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class AuditPersistenceException(RepositoryException):
    """Raised when an audit entry could not be written."""

    def __init__(self, issue_id: str, action: str, cause: Exception):
        self.issue_id = issue_id
        self.action = action
        self.cause = cause
        super().__init__(
            f"Failed to record audit entry '{action}' for issue {issue_id}: {cause}",
            {"issue_id": issue_id, "action": action}
        )


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ConfigurationGapException(ConfigurationException):
    """Raised when no escalation threshold exists for a priority."""

    def __init__(self, priority: str):
        self.priority = priority
        super().__init__(
            f"No escalation threshold configured for priority '{priority}'",
            {"priority": priority}
        )


class InvalidTransitionException(DomainException):
    """Raised when an issue cannot move to the requested state."""

    def __init__(self, issue_id: str, message: str):
        self.issue_id = issue_id
        super().__init__(message, {"issue_id": issue_id})


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class NotificationException(ExternalServiceException):
    """Exception for notifier delivery failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notifier", message, details)
