"""Database models and storage layer."""

from .database import Base, get_db, create_tables, drop_tables
from .models import (
    FlowDefinitionModel,
    FlowInstanceModel,
    ExecutionLogModel,
    MessageModel,
    RobotCommandModel,
    AlertModel,
)

__all__ = [
    "Base",
    "get_db",
    "create_tables",
    "drop_tables",
    "FlowDefinitionModel",
    "FlowInstanceModel",
    "ExecutionLogModel",
    "MessageModel",
    "RobotCommandModel",
    "AlertModel",
]
