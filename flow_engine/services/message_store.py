"""Persistence of inbound messages, robot command outcomes and flow alerts."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..storage.database import get_db
from ..storage.models import AlertModel, MessageModel, RobotCommandModel

logger = get_logger(__name__)


class MessageStore:
    """Writes the ``messages``, ``robot_commands`` and ``alerts`` tables for node executors.

    Every method is synchronous. Executors call them through ``asyncio.to_thread``.
    """

    def save_message(self, message: Dict[str, Any], flow_instance_id: Optional[str] = None) -> str:
        """
        Persist an inbound bot message.

        Args:
            message: Message fields (messageId, robotId, senderId, senderName,
                groupName, content, businessRole, priority)
            flow_instance_id: Instance that received the message

        Returns:
            str: Row identifier
        """
        row_id = str(uuid.uuid4())
        db = next(get_db())
        try:
            db.add(MessageModel(
                id=row_id,
                message_id=message.get("messageId"),
                robot_id=message.get("robotId"),
                sender_id=message.get("senderId"),
                sender_name=message.get("senderName"),
                group_name=message.get("groupName"),
                content=message.get("content"),
                business_role=message.get("businessRole"),
                priority=message.get("priority"),
                flow_instance_id=flow_instance_id,
                created_at=datetime.utcnow(),
            ))
            db.commit()
            logger.debug(f"Saved message {row_id} for instance {flow_instance_id}")
            return row_id
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to save message: {str(e)}", operation="save_message", table="messages")
        finally:
            db.close()

    def upsert_robot_command(
        self,
        command_id: str,
        status: Optional[str],
        result: Optional[Dict[str, Any]] = None,
        robot_id: Optional[str] = None,
        command_type: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        flow_instance_id: Optional[str] = None,
    ) -> None:
        """Insert or update the robot command row keyed by ``command_id``."""
        db = next(get_db())
        try:
            row = db.query(RobotCommandModel).filter(RobotCommandModel.command_id == command_id).first()
            if row is None:
                row = RobotCommandModel(
                    id=str(uuid.uuid4()),
                    command_id=command_id,
                    robot_id=robot_id,
                    command_type=command_type,
                    payload=payload,
                    flow_instance_id=flow_instance_id,
                    created_at=datetime.utcnow(),
                )
                db.add(row)
            row.status = status
            row.result = result
            row.updated_at = datetime.utcnow()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to record robot command: {str(e)}",
                operation="upsert_robot_command",
                table="robot_commands",
            )
        finally:
            db.close()

    def get_robot_command(self, command_id: str) -> Optional[Dict[str, Any]]:
        db = next(get_db())
        try:
            row = db.query(RobotCommandModel).filter(RobotCommandModel.command_id == command_id).first()
            if row is None:
                return None
            return {
                "commandId": row.command_id,
                "robotId": row.robot_id,
                "commandType": row.command_type,
                "status": row.status,
                "result": row.result,
                "flowInstanceId": row.flow_instance_id,
            }
        finally:
            db.close()

    def save_alert(self, alert: Dict[str, Any], flow_instance_id: Optional[str] = None) -> str:
        """Persist an alert raised by a flow and return its id."""
        alert_id = str(uuid.uuid4())
        db = next(get_db())
        try:
            db.add(AlertModel(
                id=alert_id,
                alert_type=alert.get("alertType") or "risk",
                alert_level=alert.get("alertLevel") or "medium",
                title=alert.get("title"),
                content=alert.get("content"),
                source=alert.get("source"),
                tags=alert.get("tags") or [],
                assignee=alert.get("assignee"),
                intent=alert.get("intent"),
                robot_id=alert.get("robotId"),
                sender_id=alert.get("senderId"),
                sender_name=alert.get("senderName"),
                group_name=alert.get("groupName"),
                status="pending",
                escalation_level=alert.get("escalationLevel") or 0,
                flow_instance_id=flow_instance_id,
                created_at=datetime.utcnow(),
            ))
            db.commit()
            logger.info(f"Saved {alert.get('alertLevel')} alert {alert_id} for instance {flow_instance_id}")
            return alert_id
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to save alert: {str(e)}", operation="save_alert", table="alerts")
        finally:
            db.close()

    def list_alerts(self, flow_instance_id: Optional[str] = None) -> List[Dict[str, Any]]:
        db = next(get_db())
        try:
            query = db.query(AlertModel)
            if flow_instance_id:
                query = query.filter(AlertModel.flow_instance_id == flow_instance_id)
            return [
                {
                    "id": row.id,
                    "alertType": row.alert_type,
                    "alertLevel": row.alert_level,
                    "title": row.title,
                    "content": row.content,
                    "status": row.status,
                    "escalationLevel": row.escalation_level,
                    "flowInstanceId": row.flow_instance_id,
                }
                for row in query.order_by(AlertModel.created_at).all()
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list alerts: {str(e)}", operation="list_alerts", table="alerts")
        finally:
            db.close()
