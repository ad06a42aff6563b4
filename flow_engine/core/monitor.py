"""Read-only aggregation over flow instances for the monitor dashboard."""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import FlowInstance, FlowStat, InstanceStatus, MonitorOverview, StatusStat, TrendPoint
from ..storage.database import get_db
from ..storage.models import FlowInstanceModel
from .exceptions import StorageError
from .instance_manager import instance_from_model
from .logging import get_logger

logger = get_logger(__name__)


class FlowMonitor:
    """Aggregates instance counts and timings.

    Every query is a plain read in its own short session, so frequent
    dashboard polling never holds a transaction open against writers.
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

    def get_status_stats(self) -> List[StatusStat]:
        """Instance count and processing time (avg/min/max) per status."""
        db = self._get_db_session()
        try:
            rows = db.query(
                FlowInstanceModel.status,
                func.count(FlowInstanceModel.id).label("count"),
                func.avg(FlowInstanceModel.processing_time).label("avg_time"),
                func.min(FlowInstanceModel.processing_time).label("min_time"),
                func.max(FlowInstanceModel.processing_time).label("max_time"),
            ).group_by(FlowInstanceModel.status).all()

            return [
                StatusStat(
                    status=row.status,
                    count=row.count,
                    avg_processing_time=float(row.avg_time) if row.avg_time is not None else None,
                    min_processing_time=row.min_time,
                    max_processing_time=row.max_time,
                )
                for row in sorted(rows, key=lambda row: row.status)
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to aggregate status stats: {str(e)}", operation="status_stats",
                               table="flow_instances")
        finally:
            self._release(db)

    def get_trend(self, days: int = 7) -> List[TrendPoint]:
        """
        Daily instance counts for the last ``days`` days, oldest first.

        Days without instances are included with zero counts.
        """
        days = max(1, days)
        today = datetime.utcnow().date()
        first_day = today - timedelta(days=days - 1)
        since = datetime.combine(first_day, datetime.min.time())

        db = self._get_db_session()
        try:
            day = func.date(FlowInstanceModel.created_at)
            rows = db.query(
                day.label("day"),
                func.count(FlowInstanceModel.id).label("count"),
                func.sum(case((FlowInstanceModel.status == InstanceStatus.COMPLETED.value, 1), else_=0)).label(
                    "completed"),
                func.sum(case((FlowInstanceModel.status == InstanceStatus.FAILED.value, 1), else_=0)).label(
                    "failed"),
            ).filter(FlowInstanceModel.created_at >= since).group_by(day).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to aggregate trend: {str(e)}", operation="trend", table="flow_instances")
        finally:
            self._release(db)

        by_day = {str(row.day): row for row in rows}
        trend = []
        for offset in range(days):
            label = (first_day + timedelta(days=offset)).isoformat()
            row = by_day.get(label)
            trend.append(TrendPoint(
                date=label,
                count=row.count if row else 0,
                completed=int(row.completed or 0) if row else 0,
                failed=int(row.failed or 0) if row else 0,
            ))
        return trend

    def get_flow_stats(self, days: int = 30, limit: int = 10) -> List[FlowStat]:
        """Per-flow outcome counts over the last ``days`` days, busiest flows first."""
        since = datetime.utcnow() - timedelta(days=max(1, days))
        db = self._get_db_session()
        try:
            total = func.count(FlowInstanceModel.id)
            rows = db.query(
                FlowInstanceModel.flow_name,
                total.label("total"),
                func.sum(case((FlowInstanceModel.status == InstanceStatus.COMPLETED.value, 1), else_=0)).label(
                    "completed"),
                func.sum(case((FlowInstanceModel.status == InstanceStatus.FAILED.value, 1), else_=0)).label(
                    "failed"),
                func.avg(FlowInstanceModel.processing_time).label("avg_time"),
            ).filter(
                FlowInstanceModel.created_at >= since
            ).group_by(FlowInstanceModel.flow_name).order_by(total.desc()).limit(limit).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to aggregate flow stats: {str(e)}", operation="flow_stats",
                               table="flow_instances")
        finally:
            self._release(db)

        stats = []
        for row in rows:
            completed = int(row.completed or 0)
            stats.append(FlowStat(
                flow_name=row.flow_name,
                total=row.total,
                completed=completed,
                failed=int(row.failed or 0),
                avg_processing_time=float(row.avg_time) if row.avg_time is not None else None,
                success_rate=round(completed / row.total * 100, 2) if row.total else 0.0,
            ))
        return stats

    def list_instances(self, status: Optional[str] = "running", limit: int = 50, offset: int = 0) -> List[FlowInstance]:
        db = self._get_db_session()
        try:
            query = db.query(FlowInstanceModel)
            if status:
                query = query.filter(FlowInstanceModel.status == status)
            models = query.order_by(FlowInstanceModel.created_at.desc()).offset(offset).limit(min(limit, 200)).all()
            return [instance_from_model(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list instances: {str(e)}", operation="list_instances",
                               table="flow_instances")
        finally:
            self._release(db)

    def get_overview(self, trend_days: int = 7, flow_days: int = 30) -> MonitorOverview:
        return MonitorOverview(
            status_stats=self.get_status_stats(),
            trend=self.get_trend(trend_days),
            flow_stats=self.get_flow_stats(flow_days),
            running_instances=self.list_instances("running"),
            generated_at=datetime.utcnow(),
        )
