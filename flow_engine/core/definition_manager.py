"""Flow definition store: versioned graphs of typed nodes."""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..models.core import (
    FlowDefinition,
    FlowDefinitionCreate,
    FlowDefinitionUpdate,
    FlowStatus,
    FlowSummary,
    RetryPolicy,
    ValidationResult,
)
from ..storage.database import get_db
from ..storage.models import FlowDefinitionModel, FlowInstanceModel
from .exceptions import DefinitionInUseError, DefinitionNotFound, GraphValidationError, StorageError
from .logging import get_logger

logger = get_logger(__name__)


def definition_from_model(model: FlowDefinitionModel) -> FlowDefinition:
    """Convert a stored row into a FlowDefinition."""
    return FlowDefinition(
        id=model.id,
        name=model.name,
        description=model.description,
        version=model.version,
        status=model.status,
        trigger_type=model.trigger_type,
        trigger_config=model.trigger_config or {},
        nodes=model.nodes or [],
        edges=model.edges or [],
        variables=model.variables or {},
        start_node_id=model.start_node_id,
        timeout=model.timeout,
        retry_config=model.retry_config or {},
        created_by=model.created_by,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def definition_to_model(definition: FlowDefinitionCreate, definition_id: str) -> FlowDefinitionModel:
    """Build a row from a definition payload. Edge order is stored as declared."""
    now = datetime.utcnow()
    return FlowDefinitionModel(
        id=definition_id,
        name=definition.name,
        description=definition.description,
        version=definition.version,
        status=definition.status.value,
        trigger_type=definition.trigger_type.value,
        trigger_config=definition.trigger_config,
        nodes=[node.model_dump() for node in definition.nodes],
        edges=[edge.model_dump() for edge in definition.edges],
        variables=definition.variables,
        start_node_id=definition.start_node_id,
        timeout=definition.timeout,
        retry_config=definition.retry_config.model_dump(by_alias=True),
        created_by=definition.created_by,
        created_at=now,
        updated_at=now,
    )


class FlowDefinitionManager:
    """Creates, validates, reads and deletes flow definitions."""

    def __init__(self, registry=None, db_session: Optional[Session] = None, config=None):
        """
        Args:
            registry: Executor registry used to validate node configs and flag
                unregistered node types. Validation is structural only without it.
            db_session: Optional session shared by every call
            config: Optional AppConfig whose default timeout and retry settings
                fill the fields a new definition leaves unset
        """
        self.registry = registry
        self._db_session = db_session
        self.config = config

    def _get_db_session(self) -> Session:
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, db: Session) -> None:
        if not self._db_session:
            db.close()

    def validate_definition(self, definition: FlowDefinitionCreate) -> ValidationResult:
        """
        Validate a definition for structural and config correctness.

        Unregistered node types are reported as warnings: the definition can
        be saved, and instances of it fail at the offending node.

        Args:
            definition: The definition to validate

        Returns:
            ValidationResult: Validation result with errors and warnings
        """
        result = definition.validate_structure()
        errors = list(result.errors)
        warnings = list(result.warnings)
        node_ids = {node.id for node in definition.nodes}

        for node in definition.nodes:
            for target in _routing_targets(node.type, node.config):
                if target not in node_ids:
                    errors.append(f"Node '{node.id}' routes to non-existent node: '{target}'")

            if self.registry is None:
                continue
            if self.registry.resolve(node.type) is None:
                warnings.append(f"Node '{node.id}' has unregistered type '{node.type}'")
                continue
            for problem in self.registry.validate_config(node.type, node.config):
                errors.append(f"Node '{node.id}' config invalid: {problem}")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def ensure_valid(self, definition: FlowDefinitionCreate) -> None:
        validation = self.validate_definition(definition)
        if not validation.is_valid:
            error_msg = f"Flow validation failed: {'; '.join(validation.errors)}"
            logger.error(error_msg)
            raise GraphValidationError(error_msg, validation_errors=validation.errors, flow_name=definition.name)
        if validation.warnings:
            logger.warning(f"Flow validation warnings: {'; '.join(validation.warnings)}")

    def apply_defaults(self, definition: FlowDefinitionCreate) -> FlowDefinitionCreate:
        """Fill an unset timeout or retry policy from the configured engine defaults."""
        if self.config is None:
            return definition
        updates = {}
        if "timeout" not in definition.model_fields_set:
            updates["timeout"] = self.config.default_flow_timeout_ms
        if "retry_config" not in definition.model_fields_set:
            updates["retry_config"] = RetryPolicy(
                max_retries=self.config.default_max_retries,
                retry_interval=self.config.default_retry_interval_ms,
            )
        if not updates:
            return definition
        return definition.model_copy(update=updates)

    def create_definition(self, definition: FlowDefinitionCreate) -> FlowDefinition:
        """
        Validate and store a new definition version.

        A definition created as active deactivates the other versions of the
        same name in the same transaction.

        Raises:
            GraphValidationError: If validation fails or (name, version) exists
            StorageError: If the database write fails
        """
        logger.info(f"Creating flow definition '{definition.name}' v{definition.version}")
        definition = self.apply_defaults(definition)
        self.ensure_valid(definition)

        definition_id = str(uuid.uuid4())
        db = self._get_db_session()
        try:
            existing = db.query(FlowDefinitionModel).filter(
                FlowDefinitionModel.name == definition.name,
                FlowDefinitionModel.version == definition.version,
            ).first()
            if existing:
                raise GraphValidationError(
                    f"Flow '{definition.name}' already has version {definition.version}",
                    flow_name=definition.name,
                )

            if definition.status == FlowStatus.ACTIVE:
                db.query(FlowDefinitionModel).filter(
                    FlowDefinitionModel.name == definition.name,
                    FlowDefinitionModel.status == FlowStatus.ACTIVE.value,
                ).update({"status": FlowStatus.INACTIVE.value}, synchronize_session=False)

            model = definition_to_model(definition, definition_id)
            db.add(model)
            db.commit()
            db.refresh(model)
            logger.info(f"Created flow definition {definition_id}")
            return definition_from_model(model)

        except GraphValidationError:
            db.rollback()
            raise
        except IntegrityError:
            db.rollback()
            raise GraphValidationError(
                f"Flow '{definition.name}' already has version {definition.version}",
                flow_name=definition.name,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating flow definition: {str(e)}")
            raise StorageError(f"Failed to store flow definition: {str(e)}", operation="create",
                               table="flow_definitions")
        finally:
            self._release(db)

    def get_definition(self, definition_id: str) -> FlowDefinition:
        """
        Raises:
            DefinitionNotFound: If no definition has ``definition_id``
        """
        db = self._get_db_session()
        try:
            model = db.query(FlowDefinitionModel).filter(FlowDefinitionModel.id == definition_id).first()
            if not model:
                raise DefinitionNotFound(f"Flow definition '{definition_id}' not found", definition_id=definition_id)
            return definition_from_model(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to retrieve flow definition: {str(e)}", operation="get",
                               table="flow_definitions")
        finally:
            self._release(db)

    def update_definition(self, definition_id: str, update: FlowDefinitionUpdate) -> FlowDefinition:
        """
        Apply a partial update and revalidate.

        Running instances keep the snapshot they were created with.
        """
        current = self.get_definition(definition_id)
        changes = update.model_dump(exclude_unset=True)
        merged = FlowDefinitionCreate(**{
            **current.model_dump(exclude={"id", "created_at", "updated_at"}),
            **{key: getattr(update, key) for key in changes},
        })
        self.ensure_valid(merged)

        db = self._get_db_session()
        try:
            model = db.query(FlowDefinitionModel).filter(FlowDefinitionModel.id == definition_id).first()
            if not model:
                raise DefinitionNotFound(f"Flow definition '{definition_id}' not found", definition_id=definition_id)

            stored = definition_to_model(merged, definition_id)
            for column in ("description", "trigger_type", "trigger_config", "nodes", "edges",
                           "variables", "start_node_id", "timeout", "retry_config"):
                setattr(model, column, getattr(stored, column))
            model.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(model)
            logger.info(f"Updated flow definition {definition_id}: {sorted(changes)}")
            return definition_from_model(model)
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to update flow definition: {str(e)}", operation="update",
                               table="flow_definitions")
        finally:
            self._release(db)

    def delete_definition(self, definition_id: str) -> bool:
        """
        Delete a definition that no instance references.

        Returns:
            bool: True if deleted, False if not found

        Raises:
            DefinitionInUseError: If instances reference the definition
        """
        db = self._get_db_session()
        try:
            model = db.query(FlowDefinitionModel).filter(FlowDefinitionModel.id == definition_id).first()
            if not model:
                logger.warning(f"Flow definition '{definition_id}' not found for deletion")
                return False

            instance_count = db.query(FlowInstanceModel).filter(
                FlowInstanceModel.flow_definition_id == definition_id
            ).count()
            if instance_count:
                raise DefinitionInUseError(
                    f"Flow definition '{definition_id}' is referenced by {instance_count} instance(s)",
                    definition_id=definition_id,
                    instance_count=instance_count,
                )

            db.delete(model)
            db.commit()
            logger.info(f"Deleted flow definition {definition_id}")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to delete flow definition: {str(e)}", operation="delete",
                               table="flow_definitions")
        finally:
            self._release(db)

    def list_definitions(
        self,
        status: Optional[str] = None,
        trigger_type: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[FlowSummary]:
        db = self._get_db_session()
        try:
            query = db.query(FlowDefinitionModel)
            if status:
                query = query.filter(FlowDefinitionModel.status == status)
            if trigger_type:
                query = query.filter(FlowDefinitionModel.trigger_type == trigger_type)
            if name:
                query = query.filter(FlowDefinitionModel.name == name)

            models = query.order_by(FlowDefinitionModel.name, FlowDefinitionModel.created_at).all()
            return [
                FlowSummary(
                    id=model.id,
                    name=model.name,
                    version=model.version,
                    status=model.status,
                    trigger_type=model.trigger_type,
                    node_count=len(model.nodes or []),
                    created_at=model.created_at,
                    updated_at=model.updated_at,
                )
                for model in models
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list flow definitions: {str(e)}", operation="list",
                               table="flow_definitions")
        finally:
            self._release(db)

    def get_active_by_trigger_type(self, trigger_type: str) -> Optional[FlowDefinition]:
        """The active definition for ``trigger_type``, most recently updated first; None if unconfigured."""
        db = self._get_db_session()
        try:
            model = db.query(FlowDefinitionModel).filter(
                FlowDefinitionModel.trigger_type == trigger_type,
                FlowDefinitionModel.status == FlowStatus.ACTIVE.value,
            ).order_by(FlowDefinitionModel.updated_at.desc()).first()
            return definition_from_model(model) if model else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up active flow: {str(e)}", operation="get_active",
                               table="flow_definitions")
        finally:
            self._release(db)


def _routing_targets(node_type: str, config: dict) -> List[str]:
    """Node ids a decision or condition node can route to from its config."""
    targets = []
    if node_type == "decision":
        for condition in config.get("conditions") or []:
            if isinstance(condition, dict) and condition.get("targetNodeId"):
                targets.append(condition["targetNodeId"])
        if config.get("defaultTarget"):
            targets.append(config["defaultTarget"])
    elif node_type == "condition":
        for key in ("trueTargetNodeId", "falseTargetNodeId"):
            if config.get(key):
                targets.append(config[key])
    return targets
