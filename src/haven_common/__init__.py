"""
Haven Common Library.

Shared primitives used by every Haven service:
- Structured exception hierarchy with correlation tracking
"""

from .exceptions import (
    ApplicationError,
    BusinessRuleViolationError,
    ConfigurationError,
    DomainError,
    EntityNotFoundError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    ExternalServiceError,
    HavenError,
    InfrastructureError,
    InvariantViolationError,
    LLMServiceError,
    PersistenceError,
    SafetyError,
    ValidationError,
)

__all__ = [
    "ApplicationError",
    "BusinessRuleViolationError",
    "ConfigurationError",
    "DomainError",
    "EntityNotFoundError",
    "ErrorCategory",
    "ErrorContext",
    "ErrorSeverity",
    "ExternalServiceError",
    "HavenError",
    "InfrastructureError",
    "InvariantViolationError",
    "LLMServiceError",
    "PersistenceError",
    "SafetyError",
    "ValidationError",
]
