"""Core Pydantic models for the flow engine."""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FlowStatus(str, Enum):
    """Lifecycle status of a flow definition version."""
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class TriggerType(str, Enum):
    """Events that can start a flow."""
    WEBHOOK = "webhook"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"
    MESSAGE = "message"


class InstanceStatus(str, Enum):
    """Enumeration of flow instance statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.FAILED,
    InstanceStatus.CANCELLED,
    InstanceStatus.TIMEOUT,
})


class LogStatus(str, Enum):
    """Status of a single node attempt."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ValidationResult(BaseModel):
    """Result of flow definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class RetryPolicy(BaseModel):
    """Node retry settings shared by every node of a definition."""
    model_config = ConfigDict(populate_by_name=True)

    max_retries: int = Field(3, alias="maxRetries", ge=0, description="Retries after the first attempt")
    retry_interval: int = Field(1000, alias="retryInterval", ge=0, description="Fixed delay between attempts in ms")


class FlowNode(BaseModel):
    """A typed node embedded in a flow definition."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Key into the node executor registry")
    name: str = Field("", description="Display name")
    description: Optional[str] = Field(None, description="Node description")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    position: Optional[Dict[str, float]] = Field(None, description="Canvas position for the editor")

    @model_validator(mode='before')
    @classmethod
    def lift_editor_data(cls, values):
        """Accept the canvas editor shape ``{"data": {"name", "config"}}``."""
        if isinstance(values, dict) and isinstance(values.get("data"), dict):
            data = values["data"]
            values = dict(values)
            values.setdefault("config", data.get("config", {}))
            if not values.get("name") and data.get("name"):
                values["name"] = data["name"]
            if not values.get("description") and data.get("description"):
                values["description"] = data["description"]
        return values

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")

        if not re.match(r'^[a-zA-Z0-9_-]+$', id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")

        return id_value.strip()

    @field_validator('type')
    @classmethod
    def validate_type(cls, node_type):
        """Ensure node type is present."""
        if not node_type or not node_type.strip():
            raise ValueError("Node type cannot be empty")
        return node_type.strip()


class FlowEdge(BaseModel):
    """Directed edge between two nodes."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: f"edge_{uuid.uuid4().hex[:8]}", description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    label: Optional[str] = Field(None, description="Display label")
    condition: Optional[str] = Field(None, description="Expression that must hold for the edge to be taken")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @model_validator(mode='after')
    def validate_edge(self):
        """Validate edge definition."""
        if self.source == self.target:
            raise ValueError("Self-referencing edges are not allowed")
        return self


class FlowDefinitionCreate(BaseModel):
    """Payload for creating a flow definition."""
    name: str = Field(..., description="Flow family name shared by all versions")
    description: Optional[str] = Field(None, description="Description of the flow")
    version: str = Field("1.0", description="Version label, major.minor")
    status: FlowStatus = Field(FlowStatus.DRAFT, description="Lifecycle status")
    trigger_type: TriggerType = Field(..., description="Event type that starts the flow")
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="Trigger-specific settings")
    nodes: List[FlowNode] = Field(..., description="Nodes in declaration order")
    edges: List[FlowEdge] = Field(default_factory=list, description="Edges in declaration order")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Default context seed")
    start_node_id: Optional[str] = Field(None, description="Explicit start node, defaults to the first root")
    timeout: int = Field(30000, gt=0, description="Whole-instance budget in ms")
    retry_config: RetryPolicy = Field(default_factory=RetryPolicy, description="Node retry policy")
    created_by: Optional[str] = Field(None, description="Author")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        if not nodes:
            raise ValueError("Flow must contain at least one node")
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure flow name is not empty."""
        if not name.strip():
            raise ValueError("Flow name cannot be empty")
        return name.strip()

    @field_validator('version')
    @classmethod
    def validate_version(cls, version):
        """Versions are dotted integers."""
        if not re.match(r'^\d+(\.\d+)*$', version.strip()):
            raise ValueError("Version must look like '1.0'")
        return version.strip()

    def find_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[FlowEdge]:
        """Outgoing edges of ``node_id`` in declared order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def resolve_start_node(self) -> Optional[str]:
        """Explicit start node, else the first declared node nothing points at."""
        if self.start_node_id:
            return self.start_node_id
        targets = {edge.target for edge in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node.id
        return None

    def validate_structure(self) -> ValidationResult:
        """Check references, start node and reachability."""
        errors = []
        warnings = []
        node_ids = {node.id for node in self.nodes}

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge '{edge.id}' references non-existent source node: '{edge.source}'")
            if edge.target not in node_ids:
                errors.append(f"Edge '{edge.id}' references non-existent target node: '{edge.target}'")

        edge_ids = [edge.id for edge in self.edges]
        if len(edge_ids) != len(set(edge_ids)):
            errors.append("All edge IDs must be unique")

        start = self.resolve_start_node()
        if start is None:
            errors.append("Flow has no start node: every node has an incoming edge")
        elif start not in node_ids:
            errors.append(f"Start node '{start}' does not exist in nodes")
        elif not errors:
            unreachable = node_ids - self._find_reachable_nodes(start)
            if unreachable:
                warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")

        if self._has_cycles():
            warnings.append("Flow contains cycles; the per-instance step limit bounds them")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _adjacency(self) -> Dict[str, List[str]]:
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)
        for node in self.nodes:
            if node.type == "decision":
                for condition in node.config.get("conditions", []) or []:
                    target = condition.get("targetNodeId") if isinstance(condition, dict) else None
                    if target:
                        graph.setdefault(node.id, []).append(target)
                if node.config.get("defaultTarget"):
                    graph.setdefault(node.id, []).append(node.config["defaultTarget"])
            elif node.type == "condition":
                for key in ("trueTargetNodeId", "falseTargetNodeId"):
                    if node.config.get(key):
                        graph.setdefault(node.id, []).append(node.config[key])
        return graph

    def _find_reachable_nodes(self, entry_point: str) -> Set[str]:
        """Find all nodes reachable from the entry point."""
        reachable = {entry_point}
        edge_map = self._adjacency()

        queue = [entry_point]
        while queue:
            current = queue.pop(0)
            for neighbor in edge_map.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)

        return reachable

    def _has_cycles(self) -> bool:
        """Check if the flow graph contains cycles using DFS."""
        graph = self._adjacency()
        visited = set()
        rec_stack = set()

        def has_cycle_util(node):
            visited.add(node)
            rec_stack.add(node)
            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True
            rec_stack.remove(node)
            return False

        for node in self.nodes:
            if node.id not in visited and has_cycle_util(node.id):
                return True
        return False


class FlowDefinition(FlowDefinitionCreate):
    """A stored flow definition version."""
    id: str = Field(..., description="Definition identifier")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class FlowDefinitionUpdate(BaseModel):
    """Partial update of a flow definition. Status changes go through the version manager."""
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    nodes: Optional[List[FlowNode]] = None
    edges: Optional[List[FlowEdge]] = None
    variables: Optional[Dict[str, Any]] = None
    start_node_id: Optional[str] = None
    timeout: Optional[int] = Field(None, gt=0)
    retry_config: Optional[RetryPolicy] = None


class FlowSummary(BaseModel):
    """Summary information about a flow definition version."""
    id: str = Field(..., description="Definition ID")
    name: str = Field(..., description="Flow name")
    version: str = Field(..., description="Version label")
    status: FlowStatus = Field(..., description="Lifecycle status")
    trigger_type: TriggerType = Field(..., description="Trigger type")
    node_count: int = Field(..., description="Number of nodes")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class FlowInstance(BaseModel):
    """One execution run of a flow definition."""
    id: str = Field(..., description="Instance identifier")
    flow_definition_id: str = Field(..., description="Definition the instance was created from")
    flow_definition_version: str = Field(..., description="Definition version at creation time")
    flow_name: str = Field(..., description="Flow name")
    status: InstanceStatus = Field(..., description="Current status")
    trigger_type: Optional[str] = Field(None, description="Trigger that created the instance")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Raw trigger payload")
    current_node_id: Optional[str] = Field(None, description="Node about to run or last attempted")
    context: Dict[str, Any] = Field(default_factory=dict, description="Accumulated flow context")
    execution_path: List[str] = Field(default_factory=list, description="Executed node ids in order")
    total_nodes: int = Field(0, description="Node steps attempted")
    success_count: int = Field(0, description="Node steps that succeeded")
    failed_count: int = Field(0, description="Node steps that failed")
    error_message: Optional[str] = Field(None, description="Failure reason")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    started_at: Optional[datetime] = Field(None, description="Running transition timestamp")
    completed_at: Optional[datetime] = Field(None, description="Terminal transition timestamp")
    processing_time: Optional[int] = Field(None, description="Wall-clock run time in ms")
    definition_snapshot: Optional[Dict[str, Any]] = Field(None, exclude=True)

    def snapshot(self) -> FlowDefinition:
        """Definition as it was when the instance was created."""
        return FlowDefinition(**self.definition_snapshot)


class ExecutionLog(BaseModel):
    """Append-only record of one node attempt."""
    id: str = Field(..., description="Log identifier")
    flow_instance_id: str = Field(..., description="Owning instance")
    flow_definition_id: Optional[str] = Field(None, description="Definition id")
    node_id: str = Field(..., description="Node id")
    node_type: str = Field(..., description="Node type")
    node_name: Optional[str] = Field(None, description="Node display name")
    status: LogStatus = Field(..., description="Attempt status")
    input_data: Optional[Dict[str, Any]] = Field(None, description="Config and inputs of the attempt")
    output_data: Optional[Dict[str, Any]] = Field(None, description="Executor output")
    error_message: Optional[str] = Field(None, description="Attempt error")
    started_at: Optional[datetime] = Field(None, description="Attempt start")
    completed_at: Optional[datetime] = Field(None, description="Attempt end")
    processing_time: Optional[int] = Field(None, description="Attempt duration in ms")
    retry_count: int = Field(0, description="Zero-based attempt index")


class StatusStat(BaseModel):
    """Instance count and timing for one status."""
    status: str
    count: int
    avg_processing_time: Optional[float] = None
    min_processing_time: Optional[int] = None
    max_processing_time: Optional[int] = None


class TrendPoint(BaseModel):
    """Instance counts for one day."""
    date: str
    count: int
    completed: int
    failed: int


class FlowStat(BaseModel):
    """Aggregate outcome counts for one flow name."""
    flow_name: str
    total: int
    completed: int
    failed: int
    avg_processing_time: Optional[float] = None
    success_rate: float = 0.0


class MonitorOverview(BaseModel):
    """Everything the monitor dashboard polls for."""
    status_stats: List[StatusStat]
    trend: List[TrendPoint]
    flow_stats: List[FlowStat]
    running_instances: List[FlowInstance]
    generated_at: datetime
