"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from grievance.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    AuditPersistenceException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ConfigurationGapException,
    InvalidTransitionException,
    ExternalServiceException,
    NotificationException,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "AuditPersistenceException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ConfigurationGapException",
    "InvalidTransitionException",
    "ExternalServiceException",
    "NotificationException",
]
