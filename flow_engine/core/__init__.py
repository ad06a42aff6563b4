"""Core flow engine components."""

from .exceptions import (
    WorkflowEngineError,
    DefinitionNotFound,
    DefinitionInactive,
    DefinitionInUseError,
    InstanceNotFound,
    GraphValidationError,
    GraphIntegrityError,
    UnknownNodeType,
    NodeExecutionError,
    InstanceTimeout,
    ConcurrentActivationConflict,
    ExecutionEngineError,
    StorageError,
    TransientError,
    ExternalServiceError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .definition_manager import FlowDefinitionManager
from .instance_manager import FlowInstanceManager
from .version_manager import VersionManager
from .monitor import FlowMonitor

__all__ = [
    "WorkflowEngineError",
    "DefinitionNotFound",
    "DefinitionInactive",
    "DefinitionInUseError",
    "InstanceNotFound",
    "GraphValidationError",
    "GraphIntegrityError",
    "UnknownNodeType",
    "NodeExecutionError",
    "InstanceTimeout",
    "ConcurrentActivationConflict",
    "ExecutionEngineError",
    "StorageError",
    "TransientError",
    "ExternalServiceError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "FlowDefinitionManager",
    "FlowInstanceManager",
    "VersionManager",
    "FlowMonitor",
]
