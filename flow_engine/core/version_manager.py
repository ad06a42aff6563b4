"""Version lifecycle for flow definitions: draft, activate, rollback."""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import FlowDefinition, FlowDefinitionCreate, FlowStatus, FlowSummary
from ..storage.database import get_db
from ..storage.models import FlowDefinitionModel
from .definition_manager import FlowDefinitionManager, definition_from_model
from .exceptions import ConcurrentActivationConflict, DefinitionNotFound, GraphValidationError, StorageError
from .logging import get_logger

logger = get_logger(__name__)

_CHANGEABLE_FIELDS = {
    "description": "description",
    "nodes": "nodes",
    "edges": "edges",
    "variables": "variables",
    "trigger_config": "trigger_config",
    "triggerConfig": "trigger_config",
    "timeout": "timeout",
    "retry_config": "retry_config",
    "retryConfig": "retry_config",
    "start_node_id": "start_node_id",
    "startNodeId": "start_node_id",
}


def version_key(version: str) -> Tuple[int, ...]:
    """Numeric sort key, so that "1.10" sorts after "1.9"."""
    try:
        return tuple(int(part) for part in version.split("."))
    except (AttributeError, ValueError):
        return (0,)


def next_version(versions: List[str]) -> str:
    """Increment the highest version: "1.0" → "1.1", "1.9" → "1.10", "3" → "4"."""
    if not versions:
        return "1.0"
    highest = max(versions, key=version_key)
    parts = list(version_key(highest))
    if len(parts) == 1:
        return str(parts[0] + 1)
    parts[-1] += 1
    return ".".join(str(part) for part in parts)


class VersionManager:
    """Creates and switches flow versions.

    Activation holds a per-name lock for its whole transaction. A second
    activation of the same name while one is in progress is rejected with
    ``ConcurrentActivationConflict`` rather than queued, so the caller decides
    whether to retry.
    """

    def __init__(self, definitions: FlowDefinitionManager, db_session: Optional[Session] = None):
        self.definitions = definitions
        self._db_session = db_session
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _get_db_session(self) -> Session:
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, db: Session) -> None:
        if not self._db_session:
            db.close()

    def _name_lock(self, flow_name: str) -> threading.Lock:
        with self._locks_guard:
            if flow_name not in self._locks:
                self._locks[flow_name] = threading.Lock()
            return self._locks[flow_name]

    def _load_rows(self, db: Session, flow_name: str) -> List[FlowDefinitionModel]:
        return db.query(FlowDefinitionModel).filter(FlowDefinitionModel.name == flow_name).all()

    def create_version(self, flow_name: str, changes: Optional[Dict[str, Any]] = None) -> FlowDefinition:
        """
        Create a draft copy of the active version (or the newest one if none is active).

        Args:
            flow_name: Flow family name
            changes: Optional nodes/edges/variables/description/triggerConfig/timeout/retryConfig
                applied on top of the copy

        Returns:
            FlowDefinition: The new draft version

        Raises:
            DefinitionNotFound: If the flow name has no versions
            GraphValidationError: If the resulting definition is invalid
        """
        db = self._get_db_session()
        try:
            rows = self._load_rows(db, flow_name)
            if not rows:
                raise DefinitionNotFound(f"Flow '{flow_name}' has no versions")

            active = [row for row in rows if row.status == FlowStatus.ACTIVE.value]
            source_row = active[0] if active else max(rows, key=lambda row: version_key(row.version))
            source = definition_from_model(source_row)
            new_version = next_version([row.version for row in rows])
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read versions of '{flow_name}': {str(e)}", operation="create_version",
                               table="flow_definitions")
        finally:
            self._release(db)

        payload = source.model_dump(exclude={"id", "created_at", "updated_at"})
        for key, value in (changes or {}).items():
            field = _CHANGEABLE_FIELDS.get(key)
            if field is None:
                raise GraphValidationError(f"Field '{key}' cannot be changed when creating a version",
                                           flow_name=flow_name)
            payload[field] = value
        payload["version"] = new_version
        payload["status"] = FlowStatus.DRAFT

        draft = self.definitions.create_definition(FlowDefinitionCreate(**payload))
        logger.info(f"Created draft version {new_version} of '{flow_name}' from v{source.version}")
        return draft

    def activate_version(self, version_id: str) -> FlowDefinition:
        """
        Make ``version_id`` the only active version of its flow.

        Siblings are deactivated and the target activated in one transaction.

        Raises:
            DefinitionNotFound: If the version does not exist
            GraphValidationError: If the version does not validate
            ConcurrentActivationConflict: If another activation of the same flow is in progress
        """
        target = self.definitions.get_definition(version_id)
        self.definitions.ensure_valid(FlowDefinitionCreate(**target.model_dump(
            exclude={"id", "created_at", "updated_at"})))

        lock = self._name_lock(target.name)
        if not lock.acquire(blocking=False):
            raise ConcurrentActivationConflict(
                f"Another activation of flow '{target.name}' is in progress; retry",
                flow_name=target.name,
            )

        try:
            db = self._get_db_session()
            try:
                now = datetime.utcnow()
                db.query(FlowDefinitionModel).filter(
                    FlowDefinitionModel.name == target.name,
                    FlowDefinitionModel.id != version_id,
                    FlowDefinitionModel.status == FlowStatus.ACTIVE.value,
                ).update({"status": FlowStatus.INACTIVE.value, "updated_at": now}, synchronize_session=False)

                updated = db.query(FlowDefinitionModel).filter(
                    FlowDefinitionModel.id == version_id
                ).update({"status": FlowStatus.ACTIVE.value, "updated_at": now}, synchronize_session=False)
                if updated != 1:
                    db.rollback()
                    raise DefinitionNotFound(f"Flow definition '{version_id}' not found", definition_id=version_id)

                db.commit()
                model = db.query(FlowDefinitionModel).filter(FlowDefinitionModel.id == version_id).first()
                logger.info(f"Activated '{target.name}' v{target.version} ({version_id})")
                return definition_from_model(model)
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to activate version: {str(e)}", operation="activate_version",
                                   table="flow_definitions")
            finally:
                self._release(db)
        finally:
            lock.release()

    def rollback_version(self, version_id: str) -> FlowDefinition:
        """Re-activate an earlier version. The version being replaced is kept as inactive."""
        target = self.definitions.get_definition(version_id)
        current = self.get_active_version(target.name)
        if current and current.id == version_id:
            logger.info(f"'{target.name}' v{target.version} is already active; nothing to roll back")
            return current

        activated = self.activate_version(version_id)
        logger.info(
            f"Rolled back '{target.name}' to v{target.version}"
            + (f" from v{current.version}" if current else "")
        )
        return activated

    def get_active_version(self, flow_name: str) -> Optional[FlowDefinition]:
        db = self._get_db_session()
        try:
            model = db.query(FlowDefinitionModel).filter(
                FlowDefinitionModel.name == flow_name,
                FlowDefinitionModel.status == FlowStatus.ACTIVE.value,
            ).first()
            return definition_from_model(model) if model else None
        finally:
            self._release(db)

    def list_versions(self, flow_name: str) -> List[FlowSummary]:
        """All versions of a flow, newest first."""
        versions = self.definitions.list_definitions(name=flow_name)
        return sorted(versions, key=lambda summary: version_key(summary.version), reverse=True)
