"""Node executor contract shared by every node type."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import ValidationError

from ..core.exceptions import NodeExecutionError
from ..models.core import FlowNode
from ..models.node_configs import NodeConfig


class NodeServices:
    """External collaborators available to executors.

    Any collaborator may be ``None``; executors that need a missing one fail
    or fall back according to their own semantics.
    """

    def __init__(
        self,
        ai_client=None,
        bot_client=None,
        notifications=None,
        push_channel=None,
        message_store=None,
    ):
        self.ai_client = ai_client
        self.bot_client = bot_client
        self.notifications = notifications
        self.push_channel = push_channel
        self.message_store = message_store


class ExecutionContext:
    """What an executor sees of the instance it runs in."""

    def __init__(
        self,
        instance_id: str,
        definition_id: str,
        node: FlowNode,
        variables: Dict[str, Any],
        services: Optional[NodeServices] = None,
        attempt: int = 0,
        execution_path: Optional[List[str]] = None,
        started_at: Optional[datetime] = None,
    ):
        self.instance_id = instance_id
        self.definition_id = definition_id
        self.node = node
        self.variables = variables
        self.services = services or NodeServices()
        self.attempt = attempt
        self.execution_path = execution_path or []
        self.started_at = started_at

    @property
    def trigger_data(self) -> Dict[str, Any]:
        data = self.variables.get("triggerData")
        return data if isinstance(data, dict) else {}


class NodeResult:
    """Outcome of one successful node execution.

    Attributes:
        output: Recorded as the attempt's log output and under ``nodeOutputs``
        context_patch: Keys merged into the instance context
        next_node_id: Routing hint that overrides edge evaluation
    """

    def __init__(
        self,
        output: Optional[Dict[str, Any]] = None,
        context_patch: Optional[Dict[str, Any]] = None,
        next_node_id: Optional[str] = None,
    ):
        self.output = output or {}
        self.context_patch = context_patch or {}
        self.next_node_id = next_node_id

    def __repr__(self) -> str:
        return f"NodeResult(next_node_id={self.next_node_id!r}, patch_keys={sorted(self.context_patch)})"


class NodeExecutor:
    """Base class for node executors.

    Subclasses set ``node_type`` and ``config_model`` and implement
    ``execute``. Only executors marked ``idempotent`` are retried by the
    engine after a recoverable failure.
    """

    node_type: str = ""
    idempotent: bool = True
    config_model: Type[NodeConfig] = NodeConfig
    description: str = ""

    def parse_config(self, raw: Optional[Dict[str, Any]]) -> NodeConfig:
        """Decode a node's raw config into ``config_model``.

        Raises:
            NodeExecutionError: Non-recoverable, if the config does not validate
        """
        try:
            return self.config_model.model_validate(raw or {})
        except ValidationError as e:
            raise NodeExecutionError(
                f"Invalid {self.node_type} config: {_format_validation_error(e)}",
                recoverable=False,
            )

    def validate_config(self, raw: Optional[Dict[str, Any]]) -> List[str]:
        """Return config problems without raising."""
        try:
            self.config_model.model_validate(raw or {})
            return []
        except ValidationError as e:
            return [_format_validation_error(e)]

    async def execute(self, config: Any, context: ExecutionContext) -> NodeResult:
        raise NotImplementedError(f"{type(self).__name__} must implement execute()")


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "config"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)
