"""Data models for the flow engine."""

from .core import (
    FlowStatus,
    TriggerType,
    InstanceStatus,
    TERMINAL_STATUSES,
    LogStatus,
    ValidationResult,
    RetryPolicy,
    FlowNode,
    FlowEdge,
    FlowDefinitionCreate,
    FlowDefinition,
    FlowDefinitionUpdate,
    FlowSummary,
    FlowInstance,
    ExecutionLog,
    StatusStat,
    TrendPoint,
    FlowStat,
    MonitorOverview,
)

__all__ = [
    "FlowStatus",
    "TriggerType",
    "InstanceStatus",
    "TERMINAL_STATUSES",
    "LogStatus",
    "ValidationResult",
    "RetryPolicy",
    "FlowNode",
    "FlowEdge",
    "FlowDefinitionCreate",
    "FlowDefinition",
    "FlowDefinitionUpdate",
    "FlowSummary",
    "FlowInstance",
    "ExecutionLog",
    "StatusStat",
    "TrendPoint",
    "FlowStat",
    "MonitorOverview",
]
