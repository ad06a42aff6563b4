"""Flow instance and execution log store."""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    ExecutionLog,
    FlowDefinition,
    FlowInstance,
    InstanceStatus,
    LogStatus,
    TERMINAL_STATUSES,
)
from ..storage.database import get_db
from ..storage.models import ExecutionLogModel, FlowInstanceModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import InstanceNotFound, StorageError, TransientError
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

_ACTIVE_STATUSES = (InstanceStatus.PENDING.value, InstanceStatus.RUNNING.value)


def jsonable(value: Any) -> Any:
    """Round-trip through JSON so stored context never holds non-serializable values."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str, ensure_ascii=False))


def instance_from_model(model: FlowInstanceModel) -> FlowInstance:
    return FlowInstance(
        id=model.id,
        flow_definition_id=model.flow_definition_id,
        flow_definition_version=model.flow_definition_version,
        flow_name=model.flow_name,
        status=model.status,
        trigger_type=model.trigger_type,
        trigger_data=model.trigger_data or {},
        current_node_id=model.current_node_id,
        context=model.context or {},
        execution_path=model.execution_path or [],
        total_nodes=model.total_nodes or 0,
        success_count=model.success_count or 0,
        failed_count=model.failed_count or 0,
        error_message=model.error_message,
        created_at=model.created_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
        processing_time=model.processing_time,
        definition_snapshot=model.definition_snapshot,
    )


def log_from_model(model: ExecutionLogModel) -> ExecutionLog:
    return ExecutionLog(
        id=model.id,
        flow_instance_id=model.flow_instance_id,
        flow_definition_id=model.flow_definition_id,
        node_id=model.node_id,
        node_type=model.node_type,
        node_name=model.node_name,
        status=model.status,
        input_data=model.input_data,
        output_data=model.output_data,
        error_message=model.error_message,
        started_at=model.started_at,
        completed_at=model.completed_at,
        processing_time=model.processing_time,
        retry_count=model.retry_count or 0,
    )


def _elapsed_ms(started_at: Optional[datetime], finished_at: datetime) -> Optional[int]:
    if started_at is None:
        return None
    return int((finished_at - started_at).total_seconds() * 1000)


class FlowInstanceManager:
    """Persists instances and their append-only execution logs.

    Status transitions are compare-and-set updates: a write only lands when
    the row is still in the expected status, so the engine loop, cancel
    requests and duplicate execute calls never overwrite each other.
    """

    def __init__(self, db_session: Optional[Session] = None):
        self._db_session = db_session

    def _get_db_session(self) -> Session:
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, db: Session) -> None:
        if not self._db_session:
            db.close()

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.1, retryable_exceptions=[StorageError, TransientError]))
    def create_instance(
        self,
        definition: FlowDefinition,
        trigger_type: Optional[str],
        trigger_data: Optional[Dict[str, Any]] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> FlowInstance:
        """
        Persist a pending instance positioned on the definition's start node.

        Args:
            definition: Definition to snapshot into the instance
            trigger_type: Trigger that caused the instance
            trigger_data: Raw trigger payload
            initial_context: Caller-supplied context, merged over the definition variables

        Returns:
            FlowInstance: The stored instance

        Raises:
            StorageError: If the database write fails
        """
        instance_id = str(uuid.uuid4())
        set_logging_context(instance_id=instance_id, definition_id=definition.id, operation="create_instance")

        try:
            trigger_data = trigger_data or {}
            context = {**(definition.variables or {}), **(initial_context or {}), "triggerData": trigger_data}

            model = FlowInstanceModel(
                id=instance_id,
                flow_definition_id=definition.id,
                flow_definition_version=definition.version,
                flow_name=definition.name,
                status=InstanceStatus.PENDING.value,
                trigger_type=trigger_type,
                trigger_data=jsonable(trigger_data),
                definition_snapshot=definition.model_dump(mode="json", by_alias=False),
                current_node_id=definition.resolve_start_node(),
                context=jsonable(context),
                execution_path=[],
                total_nodes=0,
                success_count=0,
                failed_count=0,
                created_at=datetime.utcnow(),
            )

            db = self._get_db_session()
            try:
                db.add(model)
                db.commit()
                db.refresh(model)
                logger.info(f"Created flow instance {instance_id} for '{definition.name}' v{definition.version}")
                return instance_from_model(model)
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to create flow instance: {str(e)}", operation="create_instance",
                                   table="flow_instances")
            finally:
                self._release(db)
        finally:
            clear_logging_context()

    def get_instance(self, instance_id: str) -> FlowInstance:
        """
        Raises:
            InstanceNotFound: If no instance has ``instance_id``
        """
        db = self._get_db_session()
        try:
            model = db.query(FlowInstanceModel).filter(FlowInstanceModel.id == instance_id).first()
            if not model:
                raise InstanceNotFound(f"Flow instance '{instance_id}' not found", instance_id=instance_id)
            return instance_from_model(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to retrieve flow instance: {str(e)}", operation="get_instance",
                               table="flow_instances")
        finally:
            self._release(db)

    def get_status(self, instance_id: str) -> Optional[InstanceStatus]:
        """Current status only; the engine polls this between nodes."""
        db = self._get_db_session()
        try:
            row = db.query(FlowInstanceModel.status).filter(FlowInstanceModel.id == instance_id).first()
            return InstanceStatus(row[0]) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read flow instance status: {str(e)}", operation="get_status",
                               table="flow_instances")
        finally:
            self._release(db)

    def list_instances(
        self,
        status: Optional[str] = None,
        flow_definition_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FlowInstance]:
        db = self._get_db_session()
        try:
            query = db.query(FlowInstanceModel)
            if status:
                query = query.filter(FlowInstanceModel.status == status)
            if flow_definition_id:
                query = query.filter(FlowInstanceModel.flow_definition_id == flow_definition_id)
            models = query.order_by(FlowInstanceModel.created_at.desc()).offset(offset).limit(limit).all()
            return [instance_from_model(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list flow instances: {str(e)}", operation="list_instances",
                               table="flow_instances")
        finally:
            self._release(db)

    def count_by_definition(self, flow_definition_id: str) -> int:
        db = self._get_db_session()
        try:
            return db.query(FlowInstanceModel).filter(
                FlowInstanceModel.flow_definition_id == flow_definition_id
            ).count()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count flow instances: {str(e)}", operation="count_by_definition",
                               table="flow_instances")
        finally:
            self._release(db)

    def _compare_and_set(self, instance_id: str, expected: tuple, values: Dict[str, Any], operation: str) -> bool:
        db = self._get_db_session()
        try:
            updated = db.query(FlowInstanceModel).filter(
                FlowInstanceModel.id == instance_id,
                FlowInstanceModel.status.in_(expected),
            ).update(values, synchronize_session=False)
            db.commit()
            return updated == 1
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to update flow instance: {str(e)}", operation=operation,
                               table="flow_instances")
        finally:
            self._release(db)

    def mark_running(self, instance_id: str) -> bool:
        """pending → running. False if another caller already moved the instance."""
        return self._compare_and_set(
            instance_id,
            (InstanceStatus.PENDING.value,),
            {"status": InstanceStatus.RUNNING.value, "started_at": datetime.utcnow()},
            "mark_running",
        )

    def update_progress(
        self,
        instance_id: str,
        current_node_id: Optional[str],
        context: Dict[str, Any],
        execution_path: List[str],
        total_nodes: int,
        success_count: int,
        failed_count: int,
    ) -> bool:
        """Persist loop progress while the instance is still running."""
        return self._compare_and_set(
            instance_id,
            (InstanceStatus.RUNNING.value,),
            {
                "current_node_id": current_node_id,
                "context": jsonable(context),
                "execution_path": list(execution_path),
                "total_nodes": total_nodes,
                "success_count": success_count,
                "failed_count": failed_count,
            },
            "update_progress",
        )

    def finalize(
        self,
        instance_id: str,
        status: InstanceStatus,
        started_at: Optional[datetime],
        error_message: Optional[str] = None,
        **progress: Any,
    ) -> bool:
        """
        running → terminal status.

        Args:
            instance_id: Instance to finalize
            status: Terminal status to set
            started_at: Running transition time, for ``processing_time``
            error_message: Failure reason
            **progress: Optional current_node_id, context, execution_path and counters

        Returns:
            bool: False if the instance was no longer running (e.g. cancelled)
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")

        now = datetime.utcnow()
        values: Dict[str, Any] = {
            "status": status.value,
            "completed_at": now,
            "processing_time": _elapsed_ms(started_at, now),
            "error_message": error_message,
        }
        for key, value in progress.items():
            values[key] = jsonable(value) if key == "context" else value

        finalized = self._compare_and_set(instance_id, (InstanceStatus.RUNNING.value,), values, "finalize")
        if finalized:
            logger.info(f"Flow instance {instance_id} finished with status {status.value}")
        return finalized

    def abort(self, instance_id: str, error_message: str) -> bool:
        """pending/running → failed, for errors raised outside the node loop."""
        now = datetime.utcnow()
        return self._compare_and_set(
            instance_id,
            _ACTIVE_STATUSES,
            {"status": InstanceStatus.FAILED.value, "completed_at": now, "error_message": error_message},
            "abort",
        )

    def request_cancel(self, instance_id: str) -> bool:
        """
        pending/running → cancelled.

        Raises:
            InstanceNotFound: If no instance has ``instance_id``

        Returns:
            bool: False if the instance had already finished
        """
        instance = self.get_instance(instance_id)
        if instance.status in TERMINAL_STATUSES:
            return False

        now = datetime.utcnow()
        cancelled = self._compare_and_set(
            instance_id,
            _ACTIVE_STATUSES,
            {
                "status": InstanceStatus.CANCELLED.value,
                "completed_at": now,
                "processing_time": _elapsed_ms(instance.started_at, now),
                "error_message": "cancelled",
            },
            "request_cancel",
        )
        if cancelled:
            logger.info(f"Flow instance {instance_id} cancelled")
        return cancelled

    def append_log(
        self,
        instance_id: str,
        definition_id: Optional[str],
        node_id: str,
        node_type: str,
        node_name: Optional[str],
        input_data: Optional[Dict[str, Any]] = None,
        retry_count: int = 0,
        sequence: int = 0,
    ) -> str:
        """Insert a running log row for one node attempt and return its id."""
        log_id = str(uuid.uuid4())
        db = self._get_db_session()
        try:
            db.add(ExecutionLogModel(
                id=log_id,
                flow_instance_id=instance_id,
                flow_definition_id=definition_id,
                node_id=node_id,
                node_type=node_type,
                node_name=node_name,
                status=LogStatus.RUNNING.value,
                input_data=jsonable(input_data),
                started_at=datetime.utcnow(),
                retry_count=retry_count,
                sequence=sequence,
            ))
            db.commit()
            return log_id
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to append execution log: {str(e)}", operation="append_log",
                               table="flow_execution_logs")
        finally:
            self._release(db)

    def _close_log(self, log_id: str, values: Dict[str, Any]) -> None:
        db = self._get_db_session()
        try:
            model = db.query(ExecutionLogModel).filter(ExecutionLogModel.id == log_id).first()
            if model is None:
                logger.warning(f"Execution log {log_id} vanished before it was closed")
                return
            now = datetime.utcnow()
            model.completed_at = now
            model.processing_time = _elapsed_ms(model.started_at, now)
            for key, value in values.items():
                setattr(model, key, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to close execution log: {str(e)}", operation="close_log",
                               table="flow_execution_logs")
        finally:
            self._release(db)

    def complete_log(self, log_id: str, output_data: Optional[Dict[str, Any]] = None) -> None:
        self._close_log(log_id, {"status": LogStatus.COMPLETED.value, "output_data": jsonable(output_data)})

    def fail_log(self, log_id: str, error_message: str) -> None:
        self._close_log(log_id, {"status": LogStatus.FAILED.value, "error_message": error_message})

    def get_logs(self, instance_id: str) -> List[ExecutionLog]:
        """Execution logs of an instance in attempt order."""
        db = self._get_db_session()
        try:
            models = db.query(ExecutionLogModel).filter(
                ExecutionLogModel.flow_instance_id == instance_id
            ).order_by(ExecutionLogModel.sequence, ExecutionLogModel.started_at).all()
            return [log_from_model(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read execution logs: {str(e)}", operation="get_logs",
                               table="flow_execution_logs")
        finally:
            self._release(db)
