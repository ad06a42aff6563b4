"""Flow engine: resolves a trigger to a definition and drives instances node by node."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ..executors.base import ExecutionContext, NodeExecutor, NodeResult, NodeServices
from ..models.core import FlowDefinition, FlowInstance, FlowNode, FlowStatus, InstanceStatus, ExecutionLog
from .definition_manager import FlowDefinitionManager
from .error_recovery import RetryConfig
from .exceptions import (
    DefinitionInactive,
    ExecutionEngineError,
    GraphIntegrityError,
    InstanceTimeout,
    NodeExecutionError,
    UnknownNodeType,
    WorkflowEngineError,
)
from .executor_registry import NodeExecutorRegistry
from .expressions import evaluate_expression
from .instance_manager import FlowInstanceManager
from .logging import ErrorRecoveryLogger, get_logger, log_with_context

logger = get_logger(__name__)


def describe_error(error: BaseException) -> str:
    """``<ErrorKind>: <message>``, as stored in an instance's error_message."""
    if isinstance(error, WorkflowEngineError):
        return f"{error.error_code}: {error.message}"
    return f"{type(error).__name__}: {error}"


class InstanceRun:
    """Mutable bookkeeping for one instance while its loop runs."""

    def __init__(self, instance: FlowInstance, definition: FlowDefinition, timeout_ms: int):
        self.instance_id = instance.id
        self.definition = definition
        self.context: Dict[str, Any] = dict(instance.context)
        self.context.setdefault("nodeOutputs", {})
        self.execution_path: List[str] = list(instance.execution_path)
        self.total_nodes = instance.total_nodes
        self.success_count = instance.success_count
        self.failed_count = instance.failed_count
        self.started_at = instance.started_at or datetime.utcnow()
        self.deadline = time.monotonic() + timeout_ms / 1000.0
        self.timeout_ms = timeout_ms
        self.steps = 0
        self.sequence = 0

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence

    def timed_out(self) -> bool:
        return time.monotonic() > self.deadline

    def progress(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "execution_path": self.execution_path,
            "total_nodes": self.total_nodes,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
        }


class FlowEngine:
    """Orchestrates flow instances.

    Execution is asynchronous and decoupled from whoever triggered it:
    ``start_flow_instance`` spawns a task and returns at once, while
    ``execute_flow_instance`` can be awaited directly. Either way only the
    caller that wins the pending → running transition drives the loop.
    """

    def __init__(
        self,
        definitions: FlowDefinitionManager,
        instances: FlowInstanceManager,
        registry: NodeExecutorRegistry,
        services: Optional[NodeServices] = None,
        max_steps: int = 100,
        shutdown_grace_seconds: float = 10.0,
    ):
        """Initialize the flow engine.

        Args:
            definitions: Flow definition store
            instances: Flow instance and execution log store
            registry: Node executor registry
            services: External collaborators handed to node executors
            max_steps: Node executions allowed per instance before it is failed
            shutdown_grace_seconds: How long ``shutdown`` waits for in-flight instances
        """
        self.definitions = definitions
        self.instances = instances
        self.registry = registry
        self.services = services or NodeServices()
        self.max_steps = max_steps
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._tasks: Set[asyncio.Task] = set()
        self._recovery_logger = ErrorRecoveryLogger("flow_engine")
        logger.info("FlowEngine initialized")

    async def _store(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous store call in a worker thread so other instances keep running."""
        return await asyncio.to_thread(method, *args, **kwargs)

    def get_default_flow_by_trigger_type(self, trigger_type: str) -> Optional[FlowDefinition]:
        """The active definition for ``trigger_type``. None means no flow is configured, not an error."""
        return self.definitions.get_active_by_trigger_type(trigger_type)

    def create_flow_instance(
        self,
        flow_definition_id: str,
        trigger_type: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        allow_inactive: bool = False,
    ) -> FlowInstance:
        """
        Create a pending instance without starting it.

        Args:
            flow_definition_id: Definition to instantiate
            trigger_type: Trigger that caused the instance, defaults to the definition's
            trigger_data: Raw trigger payload, exposed as ``context.triggerData``
            initial_context: Caller-supplied context merged over the definition variables
            allow_inactive: Permit draft or inactive definitions, used by test runs

        Returns:
            FlowInstance: The stored instance with status pending

        Raises:
            DefinitionNotFound: If the definition does not exist
            DefinitionInactive: If the definition is not active and ``allow_inactive`` is False
        """
        definition = self.definitions.get_definition(flow_definition_id)
        if definition.status != FlowStatus.ACTIVE and not allow_inactive:
            raise DefinitionInactive(
                f"Flow definition '{flow_definition_id}' is {definition.status.value}, not active",
                definition_id=flow_definition_id,
                status=definition.status.value,
            )

        return self.instances.create_instance(
            definition,
            trigger_type or definition.trigger_type.value,
            trigger_data or {},
            initial_context or {},
        )

    async def trigger(
        self,
        trigger_type: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[FlowInstance]:
        """
        Resolve the default flow, create an instance and start it in the background.

        Returns:
            The pending instance, or None when no flow is configured for ``trigger_type``
        """
        definition = await self._store(self.get_default_flow_by_trigger_type, trigger_type)
        if definition is None:
            logger.info(f"No active flow for trigger type '{trigger_type}', ignoring trigger")
            return None

        instance = await self._store(self.create_flow_instance, definition.id, trigger_type, trigger_data,
                                     initial_context)
        self.start_flow_instance(instance.id)
        return instance

    def start_flow_instance(self, instance_id: str) -> asyncio.Task:
        """Spawn execution as a background task and return immediately."""
        task = asyncio.create_task(self._run_detached(instance_id), name=f"flow-instance-{instance_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_detached(self, instance_id: str) -> None:
        """Error boundary for background execution: failures end up on the instance, never escape."""
        try:
            await self.execute_flow_instance(instance_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background execution of instance {instance_id} failed: {describe_error(e)}")
            try:
                await self._store(self.instances.abort, instance_id, describe_error(e))
            except Exception as abort_error:
                logger.error(f"Could not record failure of instance {instance_id}: {abort_error}")

    async def execute_flow_instance(self, instance_id: str) -> FlowInstance:
        """
        Drive an instance from pending to a terminal status.

        Safe to call concurrently: callers that lose the pending → running
        transition get the current record back without executing anything.

        Raises:
            InstanceNotFound: If the instance does not exist
        """
        await self.registry.initialize()

        instance = await self._store(self.instances.get_instance, instance_id)
        if not await self._store(self.instances.mark_running, instance_id):
            logger.debug(f"Instance {instance_id} is already {instance.status.value}; not executing again")
            return await self._store(self.instances.get_instance, instance_id)

        instance = await self._store(self.instances.get_instance, instance_id)
        try:
            definition = instance.snapshot()
        except Exception as e:
            await self._store(self.instances.finalize, instance_id, InstanceStatus.FAILED, instance.started_at,
                              error_message=f"Invalid definition snapshot: {e}")
            return await self._store(self.instances.get_instance, instance_id)

        run = InstanceRun(instance, definition, definition.timeout)
        log_with_context(logger, logging.INFO, f"Executing flow instance {instance_id}",
                         instance_id=instance_id, flow_name=definition.name, version=definition.version)

        try:
            await self._execute_loop(run, instance.current_node_id)
        except asyncio.CancelledError:
            await self._finish(run, InstanceStatus.FAILED,
                               "ExecutionEngineError: engine shutdown interrupted the instance")
            raise
        except InstanceTimeout as e:
            await self._finish(run, InstanceStatus.TIMEOUT, e.message)
        except WorkflowEngineError as e:
            await self._finish(run, InstanceStatus.FAILED, describe_error(e))
        except Exception as e:
            logger.exception(f"Unexpected error in flow instance {instance_id}")
            await self._finish(run, InstanceStatus.FAILED, describe_error(e))

        return await self._store(self.instances.get_instance, instance_id)

    async def _execute_loop(self, run: InstanceRun, start_node_id: Optional[str]) -> None:
        definition = run.definition
        current_node_id = start_node_id

        while current_node_id:
            if await self._store(self.instances.get_status, run.instance_id) != InstanceStatus.RUNNING:
                logger.info(f"Instance {run.instance_id} is no longer running; stopping before {current_node_id}")
                return

            if run.timed_out():
                raise InstanceTimeout(instance_id=run.instance_id, timeout_ms=run.timeout_ms)

            if run.steps >= self.max_steps:
                raise ExecutionEngineError(
                    f"Instance exceeded {self.max_steps} node executions",
                    instance_id=run.instance_id,
                    definition_id=definition.id,
                )

            node = definition.find_node(current_node_id)
            if node is None:
                raise GraphIntegrityError(f"Node '{current_node_id}' does not exist in the definition",
                                          node_id=current_node_id)

            run.steps += 1
            run.total_nodes += 1
            run.execution_path.append(node.id)
            if not await self._store(self.instances.update_progress, run.instance_id, node.id, **run.progress()):
                return

            executor = self.registry.resolve(node.type)
            if executor is None:
                run.failed_count += 1
                raise UnknownNodeType(f"No executor registered for node type '{node.type}'", node_type=node.type)

            try:
                result = await self._execute_node(run, node, executor)
            except WorkflowEngineError:
                run.failed_count += 1
                raise

            if result is None:
                return

            run.success_count += 1
            run.context.update(result.context_patch)
            run.context["nodeOutputs"][node.id] = result.output

            next_node_id = self._get_next_node(definition, node, result, run.context)
            if next_node_id is None:
                await self._finish(run, InstanceStatus.COMPLETED, current_node_id=None)
                return
            if definition.find_node(next_node_id) is None:
                raise GraphIntegrityError(
                    f"Node '{node.id}' routes to non-existent node '{next_node_id}'",
                    node_id=next_node_id,
                )

            if not await self._store(self.instances.update_progress, run.instance_id, next_node_id,
                                     **run.progress()):
                logger.info(f"Instance {run.instance_id} stopped while node {node.id} was running")
                return
            current_node_id = next_node_id

        await self._finish(run, InstanceStatus.COMPLETED, current_node_id=None)

    async def _execute_node(self, run: InstanceRun, node: FlowNode, executor: NodeExecutor) -> Optional[NodeResult]:
        """
        Execute one node step, retrying recoverable failures of idempotent executors.

        Every attempt writes its own log row.

        Returns:
            The node result, or None if the instance stopped running during a retry wait

        Raises:
            NodeExecutionError: When the step fails for good
            InstanceTimeout: When the next retry would start past the instance budget
        """
        policy = run.definition.retry_config
        retry = RetryConfig.fixed(policy.max_retries, policy.retry_interval)
        attempt = 0

        while True:
            log_id = await self._store(
                self.instances.append_log,
                run.instance_id,
                run.definition.id,
                node.id,
                node.type,
                node.name,
                input_data={"config": node.config, "contextKeys": sorted(run.context)},
                retry_count=attempt,
                sequence=run.next_sequence(),
            )

            try:
                config = executor.parse_config(node.config)
                context = ExecutionContext(
                    instance_id=run.instance_id,
                    definition_id=run.definition.id,
                    node=node,
                    variables=run.context,
                    services=self.services,
                    attempt=attempt,
                    execution_path=run.execution_path,
                    started_at=run.started_at,
                )
                result = await executor.execute(config, context)
            except asyncio.CancelledError:
                await self._store(self.instances.fail_log, log_id, "cancelled")
                raise
            except Exception as e:
                error = e if isinstance(e, WorkflowEngineError) else NodeExecutionError(
                    f"{type(e).__name__}: {e}", node_id=node.id, instance_id=run.instance_id)
                await self._store(self.instances.fail_log, log_id, error.message)

                attempts_made = attempt + 1
                if not executor.idempotent or not retry.should_retry(error, attempts_made):
                    self._recovery_logger.log_recovery_failure(
                        f"node {node.id}", error, attempts_made, instance_id=run.instance_id)
                    raise NodeExecutionError(
                        error.message,
                        node_id=node.id,
                        instance_id=run.instance_id,
                        recoverable=False,
                    )

                delay = retry.get_delay(attempts_made)
                if time.monotonic() + delay > run.deadline:
                    raise InstanceTimeout(instance_id=run.instance_id, timeout_ms=run.timeout_ms)

                self._recovery_logger.log_recovery_attempt(
                    f"node {node.id}", error, attempts_made, retry.max_attempts, delay=delay,
                    instance_id=run.instance_id)
                await asyncio.sleep(delay)

                if await self._store(self.instances.get_status, run.instance_id) != InstanceStatus.RUNNING:
                    return None
                attempt += 1
                continue

            if result is None:
                result = NodeResult()
            await self._store(self.instances.complete_log, log_id, result.output)
            if attempt:
                self._recovery_logger.log_recovery_success(f"node {node.id}", attempt + 1,
                                                           instance_id=run.instance_id)
            return result

    def _get_next_node(
        self,
        definition: FlowDefinition,
        node: FlowNode,
        result: NodeResult,
        context: Dict[str, Any],
    ) -> Optional[str]:
        """
        Determine the next node.

        ``end`` nodes terminate. An executor-supplied target wins. Otherwise the
        first outgoing edge, in declared order, whose condition is absent or
        true is taken; None completes the instance.
        """
        if node.type == "end":
            return None
        if result.next_node_id:
            return result.next_node_id

        for edge in definition.outgoing_edges(node.id):
            if not edge.condition or evaluate_expression(edge.condition, context):
                return edge.target
        return None

    async def _finish(
        self,
        run: InstanceRun,
        status: InstanceStatus,
        error_message: Optional[str] = None,
        **extra: Any,
    ) -> None:
        finished = await self._store(
            self.instances.finalize,
            run.instance_id,
            status,
            run.started_at,
            error_message=error_message,
            **run.progress(),
            **extra,
        )
        if not finished:
            return

        level = logging.INFO if status == InstanceStatus.COMPLETED else logging.WARNING
        log_with_context(logger, level, f"Flow instance {run.instance_id} {status.value}",
                         instance_id=run.instance_id, status=status.value, error=error_message,
                         steps=run.steps)

        push_channel = self.services.push_channel
        if push_channel is not None:
            self._publish(push_channel, {
                "instanceId": run.instance_id,
                "flowName": run.definition.name,
                "status": status.value,
                "errorMessage": error_message,
            })

    def _publish(self, push_channel, payload: Dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(push_channel.publish("instance_finished", payload))
        except RuntimeError:
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel_flow_instance(self, instance_id: str) -> bool:
        """
        Request cooperative cancellation.

        The loop stops before starting its next node. A node already running
        completes and is logged, but does not advance the instance.

        Returns:
            bool: False if the instance had already finished

        Raises:
            InstanceNotFound: If the instance does not exist
        """
        return self.instances.request_cancel(instance_id)

    def get_instance(self, instance_id: str) -> FlowInstance:
        return self.instances.get_instance(instance_id)

    def list_instances(
        self,
        status: Optional[str] = None,
        flow_definition_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FlowInstance]:
        return self.instances.list_instances(status, flow_definition_id, limit, offset)

    def get_execution_logs(self, instance_id: str) -> List[ExecutionLog]:
        self.instances.get_instance(instance_id)
        return self.instances.get_logs(instance_id)

    def get_active_task_count(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def shutdown(self) -> None:
        """Wait for in-flight instances up to the grace period, then cancel the rest."""
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return

        logger.info(f"Waiting up to {self.shutdown_grace_seconds}s for {len(pending)} flow instance(s)")
        done, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} flow instance(s) at shutdown")
