"""FastAPI REST endpoints for the flow engine."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from ..config import get_config
from ..core.definition_manager import FlowDefinitionManager
from ..core.exceptions import DefinitionNotFound, WorkflowEngineError, create_error_response
from ..core.executor_registry import NodeExecutorRegistry
from ..core.flow_engine import FlowEngine
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.monitor import FlowMonitor
from ..core.push_channel import LivePushChannel
from ..core.version_manager import VersionManager
from ..models.core import (
    ExecutionLog,
    FlowDefinition,
    FlowDefinitionCreate,
    FlowDefinitionUpdate,
    FlowInstance,
    FlowStat,
    FlowSummary,
    MonitorOverview,
    StatusStat,
    TrendPoint,
    ValidationResult,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["flows"])

# Global instances (initialized by the application factory)
_definitions: Optional[FlowDefinitionManager] = None
_engine: Optional[FlowEngine] = None
_registry: Optional[NodeExecutorRegistry] = None
_versions: Optional[VersionManager] = None
_monitor: Optional[FlowMonitor] = None
_push_channel: Optional[LivePushChannel] = None


def init_dependencies(
    definitions: FlowDefinitionManager,
    engine: FlowEngine,
    registry: NodeExecutorRegistry,
    versions: VersionManager,
    monitor: FlowMonitor,
    push_channel: Optional[LivePushChannel] = None,
):
    """Initialize the global dependencies."""
    global _definitions, _engine, _registry, _versions, _monitor, _push_channel
    _definitions = definitions
    _engine = engine
    _registry = registry
    _versions = versions
    _monitor = monitor
    _push_channel = push_channel


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_definition_manager() -> FlowDefinitionManager:
    """Dependency to get the definition manager."""
    return _require(_definitions, "Definition manager")


def get_flow_engine() -> FlowEngine:
    """Dependency to get the flow engine."""
    return _require(_engine, "Flow engine")


def get_registry() -> NodeExecutorRegistry:
    """Dependency to get the node executor registry."""
    return _require(_registry, "Executor registry")


def get_version_manager() -> VersionManager:
    """Dependency to get the version manager."""
    return _require(_versions, "Version manager")


def get_monitor() -> FlowMonitor:
    """Dependency to get the monitor."""
    return _require(_monitor, "Monitor")


def _http_error(error: WorkflowEngineError) -> HTTPException:
    """Translate an engine error into an HTTPException with the standard error body."""
    status_code = status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Flow engine error: {error}")
    else:
        logger.warning(f"Request rejected: {error}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models
class CreateFlowResponse(BaseModel):
    """Response model for flow creation."""
    flow: FlowDefinition = Field(..., description="The stored definition")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class CreateInstanceRequest(BaseModel):
    """Request model for creating a flow instance."""
    flow_definition_id: str = Field(..., description="Definition to instantiate")
    trigger_type: Optional[str] = Field(None, description="Defaults to the definition's trigger type")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Raw trigger payload")
    initial_context: Dict[str, Any] = Field(default_factory=dict, description="Context seed")
    start: bool = Field(False, description="Start execution in the background right away")


class ExecuteResponse(BaseModel):
    """Response model for a fire-and-forget execution request."""
    instance_id: str = Field(..., description="Instance being executed")
    message: str = Field(..., description="Status message")
    status: str = Field(..., description="Status at the time of the response")


class CancelResponse(BaseModel):
    """Response model for a cancel request."""
    instance_id: str
    cancelled: bool
    message: str


class TriggerResponse(BaseModel):
    """Response model for bot callbacks. ``instance`` is null when no flow is configured."""
    trigger_type: str
    instance: Optional[FlowInstance] = None
    message: str


class TestTriggerRequest(BaseModel):
    """Request model for the test panel."""
    flow_id: Optional[str] = Field(None, description="Definition id to run")
    flow_name: Optional[str] = Field(None, description="Flow name; runs the active version, else the newest")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Arbitrary trigger payload")
    initial_context: Dict[str, Any] = Field(default_factory=dict, description="Context seed")


class TestTriggerResponse(BaseModel):
    """Instance, its logs so far, and how the client should poll for the rest."""
    instance: FlowInstance
    logs: List[ExecutionLog]
    poll_url: str
    logs_url: str
    poll_interval_seconds: float
    poll_max_seconds: float


class CreateVersionRequest(BaseModel):
    """Fields to change in the copied version."""
    changes: Dict[str, Any] = Field(default_factory=dict, description="nodes/edges/variables/... overrides")


# Flow definitions

@router.post(
    "/flows",
    response_model=CreateFlowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a flow definition version"
)
async def create_flow(
    definition: FlowDefinitionCreate,
    definitions: FlowDefinitionManager = Depends(get_definition_manager)
) -> CreateFlowResponse:
    """
    Create a flow definition.

    Raises:
        HTTPException: 400 if validation fails or the (name, version) pair exists
    """
    try:
        validation = definitions.validate_definition(definition)
        flow = await run_in_threadpool(definitions.create_definition, definition)
        return CreateFlowResponse(
            flow=flow,
            message=f"Flow '{flow.name}' v{flow.version} created successfully",
            validation_warnings=validation.warnings
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/flows", response_model=List[FlowSummary], summary="List flow definitions")
async def list_flows(
    status_filter: Optional[str] = Query(None, alias="status"),
    trigger_type: Optional[str] = None,
    name: Optional[str] = None,
    definitions: FlowDefinitionManager = Depends(get_definition_manager)
) -> List[FlowSummary]:
    try:
        return await run_in_threadpool(definitions.list_definitions, status=status_filter,
                                       trigger_type=trigger_type, name=name)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/flows/validate", response_model=ValidationResult, summary="Validate a flow without saving")
async def validate_flow(
    definition: FlowDefinitionCreate,
    definitions: FlowDefinitionManager = Depends(get_definition_manager)
) -> ValidationResult:
    return definitions.validate_definition(definition)


@router.get("/flows/{flow_id}", response_model=FlowDefinition, summary="Get a flow definition")
async def get_flow(
    flow_id: str,
    definitions: FlowDefinitionManager = Depends(get_definition_manager)
) -> FlowDefinition:
    try:
        return await run_in_threadpool(definitions.get_definition, flow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put("/flows/{flow_id}", response_model=FlowDefinition, summary="Update a flow definition")
async def update_flow(
    flow_id: str,
    update: FlowDefinitionUpdate,
    definitions: FlowDefinitionManager = Depends(get_definition_manager)
) -> FlowDefinition:
    try:
        return await run_in_threadpool(definitions.update_definition, flow_id, update)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/flows/{flow_id}", summary="Delete a flow definition")
async def delete_flow(
    flow_id: str,
    definitions: FlowDefinitionManager = Depends(get_definition_manager)
) -> Dict[str, Any]:
    """
    Delete a definition no instance references.

    Raises:
        HTTPException: 404 if not found, 409 if instances reference it
    """
    try:
        deleted = await run_in_threadpool(definitions.delete_definition, flow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    if not deleted:
        raise _http_error(DefinitionNotFound(f"Flow definition '{flow_id}' not found", definition_id=flow_id))
    return {"message": f"Flow definition '{flow_id}' deleted successfully", "flow_id": flow_id}


# Instances

@router.post(
    "/instances",
    response_model=FlowInstance,
    status_code=status.HTTP_201_CREATED,
    summary="Create a flow instance"
)
async def create_instance(
    request: CreateInstanceRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        instance = await run_in_threadpool(
            engine.create_flow_instance,
            request.flow_definition_id,
            request.trigger_type,
            request.trigger_data,
            request.initial_context,
        )
    except WorkflowEngineError as e:
        raise _http_error(e)

    if request.start:
        engine.start_flow_instance(instance.id)
    return instance


@router.get("/instances", response_model=List[FlowInstance], summary="List flow instances")
async def list_instances(
    status_filter: Optional[str] = Query(None, alias="status"),
    flow_definition_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: FlowEngine = Depends(get_flow_engine)
) -> List[FlowInstance]:
    try:
        return await run_in_threadpool(engine.list_instances, status_filter, flow_definition_id, limit, offset)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/instances/{instance_id}", response_model=FlowInstance, summary="Get a flow instance")
async def get_instance(
    instance_id: str,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        return await run_in_threadpool(engine.get_instance, instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/instances/{instance_id}/logs",
    response_model=List[ExecutionLog],
    summary="Get the execution logs of an instance"
)
async def get_instance_logs(
    instance_id: str,
    engine: FlowEngine = Depends(get_flow_engine)
) -> List[ExecutionLog]:
    try:
        return await run_in_threadpool(engine.get_execution_logs, instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/instances/{instance_id}/execute", summary="Execute a flow instance")
async def execute_instance(
    instance_id: str,
    response: Response,
    wait: bool = False,
    engine: FlowEngine = Depends(get_flow_engine)
):
    """
    Execute a pending instance.

    By default execution is started in the background and 202 is returned at
    once. With ``wait=true`` the call returns the terminal instance.
    """
    try:
        instance = await run_in_threadpool(engine.get_instance, instance_id)
        if wait:
            return await engine.execute_flow_instance(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    engine.start_flow_instance(instance_id)
    response.status_code = status.HTTP_202_ACCEPTED
    return ExecuteResponse(
        instance_id=instance_id,
        message="Flow instance execution started",
        status=instance.status.value
    )


@router.post("/instances/{instance_id}/cancel", response_model=CancelResponse, summary="Cancel a flow instance")
async def cancel_instance(
    instance_id: str,
    engine: FlowEngine = Depends(get_flow_engine)
) -> CancelResponse:
    try:
        cancelled = await run_in_threadpool(engine.cancel_flow_instance, instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return CancelResponse(
        instance_id=instance_id,
        cancelled=cancelled,
        message="Cancellation requested" if cancelled else "Instance had already finished"
    )


# Triggers

@router.post(
    "/triggers/{trigger_type}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start the default flow for a trigger type"
)
async def fire_trigger(
    trigger_type: str,
    payload: Dict[str, Any],
    engine: FlowEngine = Depends(get_flow_engine)
) -> TriggerResponse:
    """
    Bot callback entry point.

    Responds as soon as the instance exists; execution continues in the
    background and its failures are recorded on the instance.
    """
    try:
        instance = await engine.trigger(trigger_type, payload)
    except WorkflowEngineError as e:
        raise _http_error(e)

    if instance is None:
        return TriggerResponse(trigger_type=trigger_type, instance=None,
                               message=f"No active flow configured for '{trigger_type}'")
    return TriggerResponse(trigger_type=trigger_type, instance=instance, message="Flow instance started")


@router.post("/test-trigger", response_model=TestTriggerResponse, summary="Run a flow from the test panel")
async def test_trigger(
    request: TestTriggerRequest,
    wait: bool = False,
    engine: FlowEngine = Depends(get_flow_engine),
    versions: VersionManager = Depends(get_version_manager)
) -> TestTriggerResponse:
    """
    Run any version of a flow, including drafts, with an arbitrary payload.

    The response carries the instance and the logs written so far, plus the
    URLs and cadence a test panel should poll.
    """
    if not request.flow_id and not request.flow_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "BadRequest", "message": "Either flow_id or flow_name is required"}
        )

    try:
        flow_id = request.flow_id
        if not flow_id:
            active = await run_in_threadpool(versions.get_active_version, request.flow_name)
            if active is None:
                candidates = await run_in_threadpool(versions.list_versions, request.flow_name)
                if not candidates:
                    raise DefinitionNotFound(f"Flow '{request.flow_name}' has no versions")
                flow_id = candidates[0].id
            else:
                flow_id = active.id

        instance = await run_in_threadpool(
            engine.create_flow_instance,
            flow_id,
            trigger_data=request.payload,
            initial_context=request.initial_context,
            allow_inactive=True,
        )
        if wait:
            instance = await engine.execute_flow_instance(instance.id)
        else:
            engine.start_flow_instance(instance.id)
        logs = await run_in_threadpool(engine.get_execution_logs, instance.id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    config = get_config()
    return TestTriggerResponse(
        instance=instance,
        logs=logs,
        poll_url=f"{router.prefix}/instances/{instance.id}",
        logs_url=f"{router.prefix}/instances/{instance.id}/logs",
        poll_interval_seconds=config.test_poll_interval_seconds,
        poll_max_seconds=config.test_poll_max_seconds,
    )


# Versions

@router.post(
    "/versions/activate/{version_id}",
    response_model=FlowDefinition,
    summary="Activate a flow version"
)
async def activate_version(
    version_id: str,
    versions: VersionManager = Depends(get_version_manager)
) -> FlowDefinition:
    try:
        return await run_in_threadpool(versions.activate_version, version_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/versions/rollback/{version_id}",
    response_model=FlowDefinition,
    summary="Roll back to an earlier flow version"
)
async def rollback_version(
    version_id: str,
    versions: VersionManager = Depends(get_version_manager)
) -> FlowDefinition:
    try:
        return await run_in_threadpool(versions.rollback_version, version_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/versions/{flow_name}",
    response_model=FlowDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft version of a flow"
)
async def create_version(
    flow_name: str,
    request: Optional[CreateVersionRequest] = None,
    versions: VersionManager = Depends(get_version_manager)
) -> FlowDefinition:
    try:
        return await run_in_threadpool(versions.create_version, flow_name, request.changes if request else None)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/versions/{flow_name}", response_model=List[FlowSummary], summary="List versions of a flow")
async def list_versions(
    flow_name: str,
    versions: VersionManager = Depends(get_version_manager)
) -> List[FlowSummary]:
    try:
        return await run_in_threadpool(versions.list_versions, flow_name)
    except WorkflowEngineError as e:
        raise _http_error(e)


# Monitor

@router.get("/monitor/overview", response_model=MonitorOverview, summary="Dashboard overview")
async def monitor_overview(monitor: FlowMonitor = Depends(get_monitor)) -> MonitorOverview:
    try:
        return await run_in_threadpool(monitor.get_overview)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/monitor/status", response_model=List[StatusStat], summary="Instance counts by status")
async def monitor_status(monitor: FlowMonitor = Depends(get_monitor)) -> List[StatusStat]:
    try:
        return await run_in_threadpool(monitor.get_status_stats)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/monitor/trend", response_model=List[TrendPoint], summary="Daily instance trend")
async def monitor_trend(
    days: int = Query(7, ge=1, le=90),
    monitor: FlowMonitor = Depends(get_monitor)
) -> List[TrendPoint]:
    try:
        return await run_in_threadpool(monitor.get_trend, days)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/monitor/flows", response_model=List[FlowStat], summary="Per-flow outcome counts")
async def monitor_flows(
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(10, ge=1, le=100),
    monitor: FlowMonitor = Depends(get_monitor)
) -> List[FlowStat]:
    try:
        return await run_in_threadpool(monitor.get_flow_stats, days, limit)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/monitor/instances", response_model=List[FlowInstance], summary="Instances for the dashboard")
async def monitor_instances(
    status_filter: Optional[str] = Query("running", alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    monitor: FlowMonitor = Depends(get_monitor)
) -> List[FlowInstance]:
    try:
        return await run_in_threadpool(monitor.list_instances, status_filter or None, limit, offset)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/node-types", summary="Registered node types")
async def list_node_types(registry: NodeExecutorRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    await registry.initialize()
    return registry.describe()


# WebSocket push channel

@router.websocket("/ws/messages")
async def websocket_messages(websocket: WebSocket):
    """
    Live feed of inbound messages and finished instances.

    Server messages look like
    ``{"event_type": "new_message" | "instance_finished", "timestamp": ..., "data": {...}}``.
    Clients may send ``{"action": "ping"}`` to keep the connection alive.
    """
    if _push_channel is None:
        await websocket.close(code=1011, reason="Push channel not available")
        return

    connection_id = None
    try:
        connection_id = await _push_channel.connect(websocket)
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"event_type": "error", "message": "Invalid JSON message"})
                continue

            if isinstance(message, dict) and message.get("action") == "ping":
                await websocket.send_json({"event_type": "pong", "timestamp": datetime.utcnow().isoformat()})
            else:
                await websocket.send_json({"event_type": "error", "message": "Unknown action"})
    except WebSocketDisconnect:
        logger.info(f"Push client disconnected: {connection_id}")
    finally:
        if connection_id:
            await _push_channel.disconnect(connection_id)
