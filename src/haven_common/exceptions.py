"""
Haven Exception Hierarchy.
Structured exception handling with correlation tracking and severity-driven logging.
"""
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field
import structlog

logger = structlog.get_logger(__name__)


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    NOT_FOUND = "not_found"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    CONFIGURATION = "configuration"
    SAFETY = "safety"
    INTERNAL = "internal"


class ErrorContext(BaseModel):
    """Structured context for error tracking."""
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    service_name: str = Field(default="haven")
    operation: str | None = None
    user_id: str | None = None
    conversation_id: str | None = None
    additional_data: dict[str, Any] = Field(default_factory=dict)
    model_config = {"frozen": True}

    def with_operation(self, operation: str) -> ErrorContext:
        return self.model_copy(update={"operation": operation})

    def with_user(self, user_id: str, conversation_id: str | None = None) -> ErrorContext:
        return self.model_copy(update={
            "user_id": user_id,
            "conversation_id": conversation_id or self.conversation_id,
        })


class HavenError(Exception):
    """Base exception for all Haven errors with structured tracking."""
    error_code: str = "HAVEN_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, *, user_message: str | None = None,
                 context: ErrorContext | None = None, cause: Exception | None = None,
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or "Something went wrong on our side. Let's keep talking."
        self.context = context or ErrorContext()
        self.cause = cause
        self.details = details or {}
        self._log_error()

    def _log_error(self) -> None:
        log_data = {
            "error_code": self.error_code, "category": self.category.value,
            "severity": self.severity.value, "correlation_id": self.context.correlation_id,
            "operation": self.context.operation, "details": self.details,
        }
        if self.context.user_id:
            log_data["user_id"] = self.context.user_id
        if self.context.conversation_id:
            log_data["conversation_id"] = self.context.conversation_id
        if self.cause:
            log_data["cause_type"] = type(self.cause).__name__
            log_data["cause_message"] = str(self.cause)
        if self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.error(self.message, **log_data)
        else:
            logger.warning(self.message, **log_data)

    @property
    def is_critical(self) -> bool:
        return self.severity == ErrorSeverity.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.error_code, "message": self.user_message,
                         "correlation_id": self.context.correlation_id,
                         "timestamp": self.context.timestamp.isoformat()}}

    def to_internal_dict(self) -> dict[str, Any]:
        result = self.to_dict()
        result["internal"] = {"message": self.message, "category": self.category.value,
                              "severity": self.severity.value, "details": self.details,
                              "operation": self.context.operation}
        if self.cause:
            result["internal"]["cause"] = {"type": type(self.cause).__name__,
                                           "message": str(self.cause)}
        return result


# Domain Layer Exceptions
class DomainError(HavenError):
    error_code = "DOMAIN_ERROR"
    category = ErrorCategory.BUSINESS_RULE
    severity = ErrorSeverity.MEDIUM


class ValidationError(DomainError):
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, *, field: str | None = None, value: Any = None,
                 constraint: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if constraint:
            details["constraint"] = constraint
        super().__init__(message, details=details, **kwargs)
        self.field, self.value, self.constraint = field, value, constraint


class EntityNotFoundError(DomainError):
    error_code = "ENTITY_NOT_FOUND"
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW

    def __init__(self, entity_type: str, entity_id: str, **kwargs: Any) -> None:
        message = f"{entity_type} with ID '{entity_id}' not found"
        details = kwargs.pop("details", {})
        details.update({"entity_type": entity_type, "entity_id": entity_id})
        super().__init__(message, details=details, **kwargs)
        self.entity_type, self.entity_id = entity_type, entity_id


class BusinessRuleViolationError(DomainError):
    error_code = "BUSINESS_RULE_VIOLATION"

    def __init__(self, rule: str, message: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["rule"] = rule
        super().__init__(message, details=details, **kwargs)
        self.rule = rule


class InvariantViolationError(DomainError):
    error_code = "INVARIANT_VIOLATION"
    severity = ErrorSeverity.HIGH


# Application Layer Exceptions
class ApplicationError(HavenError):
    error_code = "APPLICATION_ERROR"
    severity = ErrorSeverity.MEDIUM


class SafetyError(ApplicationError):
    error_code = "SAFETY_ERROR"
    category = ErrorCategory.SAFETY
    severity = ErrorSeverity.CRITICAL


# Infrastructure Layer Exceptions
class InfrastructureError(HavenError):
    error_code = "INFRASTRUCTURE_ERROR"
    category = ErrorCategory.EXTERNAL_SERVICE
    severity = ErrorSeverity.HIGH


class PersistenceError(InfrastructureError):
    error_code = "PERSISTENCE_ERROR"
    category = ErrorCategory.DATABASE

    def __init__(self, message: str, *, operation: str | None = None,
                 severity: ErrorSeverity | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if operation:
            details["db_operation"] = operation
        if severity is not None:
            self.severity = severity
        super().__init__(message, details=details, **kwargs)


class ExternalServiceError(InfrastructureError):
    error_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service_name: str, message: str, *,
                 status_code: int | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["service_name"] = service_name
        if status_code:
            details["upstream_status"] = status_code
        super().__init__(message, details=details, **kwargs)
        self.service_name = service_name


class LLMServiceError(ExternalServiceError):
    error_code = "LLM_SERVICE_ERROR"

    def __init__(self, provider: str, message: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["provider"] = provider
        super().__init__(service_name=f"LLM:{provider}", message=message,
                         details=details, **kwargs)


class ConfigurationError(InfrastructureError):
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL

    def __init__(self, message: str, *, config_key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, **kwargs)
