"""Node executor registry keyed by node type."""

import asyncio
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .exceptions import ConfigurationError
from .logging import get_logger

if TYPE_CHECKING:
    from ..executors.base import NodeExecutor

logger = get_logger(__name__)


class NodeExecutorRegistry:
    """Maps node-type strings to executor instances.

    ``initialize`` populates the built-in set once, however many callers race
    to it; later calls are no-ops.
    """

    def __init__(self, loader: Optional[Callable[[], List["NodeExecutor"]]] = None):
        """Initialize the registry.

        Args:
            loader: Returns the executors registered by ``initialize``. Defaults
                to the built-in executor set.
        """
        self._executors: Dict[str, "NodeExecutor"] = {}
        self._loader = loader
        self._init_lock: Optional[asyncio.Lock] = None
        self._initialized = False
        self.initialization_count = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Register the built-in executors. Safe to call concurrently."""
        if self._initialized:
            return

        if self._init_lock is None:
            self._init_lock = asyncio.Lock()

        async with self._init_lock:
            if self._initialized:
                return

            loader = self._loader
            if loader is None:
                from ..executors import builtin_executors
                loader = builtin_executors

            for executor in loader():
                # Executors registered explicitly before initialization win.
                if executor.node_type not in self._executors:
                    self.register(executor.node_type, executor)

            self.initialization_count += 1
            self._initialized = True
            logger.info(f"Node executor registry initialized with {len(self._executors)} types")

    def register(self, node_type: str, executor: "NodeExecutor") -> None:
        """
        Register an executor for a node type, replacing any existing one.

        Raises:
            ConfigurationError: If the node type is empty or the executor lacks ``execute``
        """
        if not node_type or not node_type.strip():
            raise ConfigurationError("Node type cannot be empty", config_key="node_type")
        if not callable(getattr(executor, "execute", None)):
            raise ConfigurationError(f"Executor for '{node_type}' has no execute method", config_key=node_type)

        node_type = node_type.strip()
        if node_type in self._executors:
            logger.warning(f"Replacing executor for node type '{node_type}'")
        self._executors[node_type] = executor
        logger.debug(f"Registered executor {type(executor).__name__} for '{node_type}'")

    def resolve(self, node_type: str) -> Optional["NodeExecutor"]:
        return self._executors.get(node_type)

    def unregister(self, node_type: str) -> bool:
        return self._executors.pop(node_type, None) is not None

    def list_types(self) -> List[str]:
        return sorted(self._executors)

    def describe(self) -> List[Dict[str, object]]:
        """Registered types with their retry eligibility, for the editor palette."""
        return [
            {
                "type": node_type,
                "description": executor.description,
                "idempotent": executor.idempotent,
            }
            for node_type, executor in sorted(self._executors.items())
        ]

    def validate_config(self, node_type: str, config: Optional[dict]) -> List[str]:
        """
        Validate a node config against the executor's config model.

        Returns:
            List of problems; empty when valid or when the type is unknown
        """
        executor = self.resolve(node_type)
        if executor is None:
            return []
        return executor.validate_config(config)
