"""Custom exceptions for the flow engine with detailed error information."""

import traceback
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all flow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()
        self.traceback_info = traceback.format_stack()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class DefinitionNotFound(WorkflowEngineError):
    """Raised when a flow definition id does not resolve."""

    def __init__(self, message: str, definition_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        if definition_id:
            self.add_context(definition_id=definition_id)


class DefinitionInactive(WorkflowEngineError):
    """Raised when an instance is requested for a definition that is not active."""

    def __init__(
        self,
        message: str,
        definition_id: Optional[str] = None,
        status: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        if definition_id:
            self.add_context(definition_id=definition_id)
        if status:
            self.add_details(status=status)


class DefinitionInUseError(WorkflowEngineError):
    """Raised when deleting a definition that flow instances still reference."""

    def __init__(self, message: str, definition_id: Optional[str] = None, instance_count: int = 0, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        if definition_id:
            self.add_context(definition_id=definition_id)
        self.add_details(instance_count=instance_count)


class InstanceNotFound(WorkflowEngineError):
    """Raised when a flow instance id does not resolve."""

    def __init__(self, message: str, instance_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)


class GraphValidationError(WorkflowEngineError):
    """Raised when flow definition validation fails."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        flow_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if flow_name:
            self.add_context(flow_name=flow_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class GraphIntegrityError(WorkflowEngineError):
    """Raised at run time when the graph references a node that does not exist."""

    def __init__(self, message: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)


class UnknownNodeType(WorkflowEngineError):
    """Raised when no executor is registered for a node type."""

    def __init__(self, message: str, node_type: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if node_type:
            self.add_context(node_type=node_type)


class NodeExecutionError(WorkflowEngineError):
    """Raised when node execution fails.

    Node failures are retryable unless created with ``recoverable=False``.
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        execution_time: Optional[float] = None,
        recoverable: bool = True,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=recoverable,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if instance_id:
            self.add_context(instance_id=instance_id)
        if execution_time:
            self.add_details(execution_time=execution_time)


class InstanceTimeout(WorkflowEngineError):
    """Raised when a flow instance exceeds its whole-run time budget."""

    def __init__(
        self,
        message: str = "instance timeout",
        instance_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if timeout_ms is not None:
            self.add_details(timeout_ms=timeout_ms)


class ConcurrentActivationConflict(WorkflowEngineError):
    """Raised when another activation for the same flow name is in progress."""

    def __init__(self, message: str, flow_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONCURRENCY,
            recoverable=True,
            retry_after=1,
            **kwargs
        )
        if flow_name:
            self.add_context(flow_name=flow_name)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when flow engine operations fail."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        definition_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if definition_id:
            self.add_context(definition_id=definition_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=kwargs.pop("category", ErrorCategory.NETWORK),
            recoverable=True,
            retry_after=5,
            **kwargs
        )


class ExternalServiceError(WorkflowEngineError):
    """Raised when an AI, bot or notification provider call fails.

    Transport failures, throttling and 5xx answers are recoverable; any other
    rejection is not.
    """

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        recoverable: Optional[bool] = None,
        **kwargs
    ):
        if recoverable is None:
            recoverable = status_code is None or status_code >= 500 or status_code == 429
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            recoverable=recoverable,
            **kwargs
        )
        self.status_code = status_code
        if service:
            self.add_context(service=service)
        if status_code is not None:
            self.add_details(status_code=status_code)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
