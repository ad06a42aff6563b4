"""SQLAlchemy database models for the flow engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship
from .database import Base


class FlowDefinitionModel(Base):
    """Database model for versioned flow definitions."""
    __tablename__ = "flow_definitions"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, index=True)
    description = Column(Text)
    version = Column(String, nullable=False, default="1.0")
    status = Column(String, nullable=False, default="draft")  # draft, active, inactive
    trigger_type = Column(String, nullable=False)
    trigger_config = Column(JSON)
    nodes = Column(JSON, nullable=False)
    edges = Column(JSON, nullable=False)
    variables = Column(JSON)
    start_node_id = Column(String)
    timeout = Column(Integer, nullable=False, default=30000)  # ms
    retry_config = Column(JSON)
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    instances = relationship("FlowInstanceModel", back_populates="definition")

    __table_args__ = (
        Index("idx_flow_definitions_name_version", "name", "version", unique=True),
        Index("idx_flow_definitions_trigger_status", "trigger_type", "status"),
    )


class FlowInstanceModel(Base):
    """Database model for one execution of a flow definition."""
    __tablename__ = "flow_instances"

    id = Column(String, primary_key=True)
    flow_definition_id = Column(String, ForeignKey("flow_definitions.id"), nullable=False)
    flow_definition_version = Column(String, nullable=False)
    flow_name = Column(String, nullable=False)
    status = Column(String, nullable=False)  # pending, running, completed, failed, cancelled, timeout
    trigger_type = Column(String)
    trigger_data = Column(JSON)
    definition_snapshot = Column(JSON, nullable=False)
    current_node_id = Column(String)
    context = Column(JSON)
    execution_path = Column(JSON)
    total_nodes = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    processing_time = Column(Integer)  # ms

    definition = relationship("FlowDefinitionModel", back_populates="instances")
    logs = relationship("ExecutionLogModel", back_populates="instance")


class ExecutionLogModel(Base):
    """Database model for one node attempt within a flow instance."""
    __tablename__ = "flow_execution_logs"

    id = Column(String, primary_key=True)
    flow_instance_id = Column(String, ForeignKey("flow_instances.id"), nullable=False)
    flow_definition_id = Column(String)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    node_name = Column(String)
    status = Column(String, nullable=False)  # running, completed, failed, skipped
    input_data = Column(JSON)
    output_data = Column(JSON)
    error_message = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    processing_time = Column(Integer)  # ms
    retry_count = Column(Integer, default=0)
    sequence = Column(Integer, nullable=False, default=0)

    instance = relationship("FlowInstanceModel", back_populates="logs")


class MessageModel(Base):
    """Inbound bot messages persisted by message_receive nodes."""
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    message_id = Column(String, index=True)
    robot_id = Column(String)
    sender_id = Column(String)
    sender_name = Column(String)
    group_name = Column(String)
    content = Column(Text)
    business_role = Column(String)
    priority = Column(String)
    flow_instance_id = Column(String, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class RobotCommandModel(Base):
    """Robot commands and their delivery outcome."""
    __tablename__ = "robot_commands"

    id = Column(String, primary_key=True)
    command_id = Column(String, nullable=False, unique=True)
    robot_id = Column(String)
    command_type = Column(String)
    payload = Column(JSON)
    status = Column(String)
    result = Column(JSON)
    flow_instance_id = Column(String, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AlertModel(Base):
    """Alerts raised by flows, for staff follow-up."""
    __tablename__ = "alerts"

    id = Column(String, primary_key=True)
    alert_type = Column(String, nullable=False)
    alert_level = Column(String, nullable=False, index=True)  # low, medium, high, critical
    title = Column(String)
    content = Column(Text)
    source = Column(String)
    tags = Column(JSON)
    assignee = Column(String)
    intent = Column(String)
    robot_id = Column(String)
    sender_id = Column(String)
    sender_name = Column(String)
    group_name = Column(String)
    status = Column(String, nullable=False, default="pending")  # pending, handled, ignored
    escalation_level = Column(Integer, default=0)
    flow_instance_id = Column(String, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
