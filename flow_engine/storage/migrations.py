"""Index migrations for the monitoring and version queries."""

from sqlalchemy import text

from . import database
from ..core.logging import get_logger

logger = get_logger(__name__)


MONITOR_INDEXES = [
    # Status summary and the running-instance listing
    "CREATE INDEX IF NOT EXISTS idx_flow_instances_status_started "
    "ON flow_instances(status, started_at)",
    # Daily trend window
    "CREATE INDEX IF NOT EXISTS idx_flow_instances_created_at "
    "ON flow_instances(created_at)",
    # Per-flow aggregation
    "CREATE INDEX IF NOT EXISTS idx_flow_instances_flow_name_created "
    "ON flow_instances(flow_name, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_flow_instances_definition "
    "ON flow_instances(flow_definition_id)",
    # Log retrieval in attempt order
    "CREATE INDEX IF NOT EXISTS idx_flow_execution_logs_instance_sequence "
    "ON flow_execution_logs(flow_instance_id, sequence)",
]


def create_monitoring_indexes():
    """Create indexes backing the monitor and instance listing queries."""
    try:
        with database.engine.connect() as connection:
            for statement in MONITOR_INDEXES:
                connection.execute(text(statement))
            connection.commit()
            logger.info(f"Ensured {len(MONITOR_INDEXES)} monitoring indexes")
    except Exception as e:
        logger.error(f"Failed to create monitoring indexes: {str(e)}")
        raise


def optimize_sqlite_for_polling():
    """Enable WAL on SQLite so dashboard polling does not block writers."""
    if "sqlite" not in str(database.engine.url) or ":memory:" in str(database.engine.url):
        return
    try:
        with database.engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA optimize"))
            connection.commit()
            logger.info("Applied SQLite WAL mode")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations():
    """Run all index and pragma migrations."""
    logger.info("Starting flow engine migrations")
    create_monitoring_indexes()
    optimize_sqlite_for_polling()
    logger.info("Flow engine migrations completed")
