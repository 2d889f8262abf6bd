"""Structured error taxonomy for the bookstore data assistant.

Every failure the assistant can observe is classified here:

- Hierarchical error categories (Planning, Validation, Execution, ...)
- Severity levels (INFO, WARNING, ERROR, CRITICAL)
- Retryability indicators
- Structured JSON serialization for all errors

Most of these errors never reach a user. They are caught at the smallest
unit that can degrade gracefully (one SQL step, one lookup, one LLM call).
Only ConfigurationError is meant to propagate to the HTTP layer, where it is
turned into a generic failure with a machine-readable code.

Example:
    >>> try:
    ...     raise SqlSafetyError("Semicolons are not allowed", details={"rule": "semicolon"})
    ... except StructuredError as e:
    ...     error_json = e.to_dict()
    ...     print(error_json["category"])
    validation
"""
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ErrorCategory(Enum):
    """Error categories for classification."""
    PLANNING = "planning"           # LLM planning/generation errors
    VALIDATION = "validation"       # SQL safety / schema validation errors
    EXECUTION = "execution"         # SQL execution and business lookup errors
    TIMEOUT = "timeout"             # Timeout/cancellation errors
    RATE_LIMIT = "rate_limit"       # Provider rate/quota errors
    CREDENTIAL = "credential"       # Invalid or expired provider credentials
    PROVIDER = "provider"           # Other provider-side rejections
    CONFIGURATION = "configuration"  # Configuration/setup errors
    UNKNOWN = "unknown"             # Unclassified errors


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class StructuredError(Exception):
    """Base class for all structured errors.

    Attributes:
        message: Human-readable error message
        category: ErrorCategory classification
        severity: ErrorSeverity level
        retryable: Whether the operation can be retried
        details: Additional context (dict)
        timestamp: When the error occurred

    Example:
        >>> error = StructuredError(
        ...     "Something went wrong",
        ...     category=ErrorCategory.EXECUTION,
        ...     retryable=True,
        ...     details={"alias": "monthly_revenue"}
        ... )
        >>> error.to_dict()["retryable"]
        True
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.retryable = retryable
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to structured dictionary.

        Returns:
            Dictionary with error details in predictable schema:
            {
                "error_type": "ErrorClassName",
                "message": "Human-readable message",
                "category": "planning|validation|execution|...",
                "severity": "info|warning|error|critical",
                "retryable": true|false,
                "details": {...},
                "timestamp": "2024-01-01T12:00:00.000000+00:00"
            }
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class PlannerError(StructuredError):
    """The model failed to produce a usable plan or answer."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PLANNING,
            severity=ErrorSeverity.ERROR,
            retryable=retryable,
            details=details
        )


class ValidationError(StructuredError):
    """Input or model output violated a validation rule."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.ERROR,
            retryable=retryable,
            details=details
        )


class SqlSafetyError(ValidationError):
    """Raised when a statement fails the read-only safety rules.

    Rejected statements are dropped and never reach the executor.
    """


class ExecutionError(StructuredError):
    """Error while executing a statement or a business lookup."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.ERROR,
            retryable=retryable,
            details=details
        )


class SqlExecutionError(ExecutionError):
    """A validated statement failed against the relational store."""


class BusinessLookupError(ExecutionError):
    """An order/customer/invoice/catalog lookup failed."""


class TimeoutError(StructuredError):
    """Operation exceeded its configured timeout."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.WARNING,
            retryable=retryable,
            details=details
        )


class RateLimitError(StructuredError):
    """Provider refused the call because of rate or quota limits.

    Transient: the gateway retries these with exponential backoff.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.RATE_LIMIT,
            severity=ErrorSeverity.WARNING,
            retryable=retryable,
            details=details
        )


class QuotaExceededError(RateLimitError):
    """HTTP 429, or a 400 that mentions quota."""


class CredentialError(StructuredError):
    """API key is invalid or expired. Fatal: never retried."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            retryable=False,
            details=details
        )


class ProviderError(StructuredError):
    """Any other provider failure (transport errors, 5xx, rejected payloads)."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            retryable=retryable,
            details=details
        )


class ConfigurationError(StructuredError):
    """Required configuration is missing or invalid.

    The only error class that propagates to callers.

    Example:
        >>> raise ConfigurationError(
        ...     "Missing required environment variable: DATABASE_URL",
        ...     details={"variable": "DATABASE_URL"}
        ... )
    """

    code = "configuration_error"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            retryable=retryable,
            details=details
        )
