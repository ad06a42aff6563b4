"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.definition_manager import FlowDefinitionManager
from .core.executor_registry import NodeExecutorRegistry
from .core.flow_engine import FlowEngine
from .core.instance_manager import FlowInstanceManager
from .core.logging import get_logger, setup_logging
from .core.monitor import FlowMonitor
from .core.push_channel import LivePushChannel
from .core.version_manager import VersionManager
from .executors.base import NodeServices
from .services import AIClient, BotApiClient, MessageStore, NotificationGateway
from .storage import database


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.registry: Optional[NodeExecutorRegistry] = None
        self.definitions: Optional[FlowDefinitionManager] = None
        self.instances: Optional[FlowInstanceManager] = None
        self.versions: Optional[VersionManager] = None
        self.monitor: Optional[FlowMonitor] = None
        self.push_channel: Optional[LivePushChannel] = None
        self.engine: Optional[FlowEngine] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def build_services(config: AppConfig, push_channel: Optional[LivePushChannel] = None) -> NodeServices:
    """External collaborators for node executors, configured from ``config``."""
    return NodeServices(
        ai_client=AIClient(
            config.ai_base_url,
            api_key=config.ai_api_key,
            default_model=config.ai_default_model,
            timeout=config.ai_timeout,
        ),
        bot_client=BotApiClient(
            config.bot_api_base_url,
            token=config.bot_api_token,
            timeout=config.bot_api_timeout,
        ),
        notifications=NotificationGateway(
            sms_gateway_url=config.sms_gateway_url,
            sms_gateway_key=config.sms_gateway_key,
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            smtp_user=config.smtp_user,
            smtp_password=config.smtp_password,
            smtp_sender=config.smtp_sender,
        ),
        push_channel=push_channel,
        message_store=MessageStore(),
    )


def setup_health_checks(engine: FlowEngine, registry: NodeExecutorRegistry,
                        push_channel: LivePushChannel, logger) -> None:
    """Register the database, engine and registry health checks."""
    from .core.error_recovery import health_checker

    def check_database():
        db = next(database.get_db())
        try:
            db.execute(text("SELECT 1"))
        except Exception as e:
            raise Exception(f"Database connection failed: {str(e)}")
        finally:
            db.close()
        return {"status": "healthy", "message": "Database connection successful"}

    def check_flow_engine():
        return {
            "status": "healthy",
            "message": "Flow engine operational",
            "active_instances": engine.get_active_task_count(),
            "max_steps_per_instance": engine.max_steps,
        }

    def check_registry():
        if not registry.is_initialized:
            raise Exception("Executor registry not initialized")
        return {
            "status": "healthy",
            "message": "Executor registry operational",
            "registered_types": len(registry.list_types()),
        }

    def check_push_channel():
        return {
            "status": "healthy",
            "message": "Push channel operational",
            "connections": push_channel.get_connection_count(),
        }

    health_checker.clear()
    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("flow_engine", check_flow_engine, timeout=3.0)
    health_checker.register_check("executor_registry", check_registry, timeout=2.0)
    health_checker.register_check("push_channel", check_push_channel, timeout=2.0)
    logger.info("Health checks registered")


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the configured database, create tables and apply migrations."""
    try:
        database.configure_database(config.database_url, echo=config.database_echo)
        database.create_tables()
        logger.info("Database tables created")

        try:
            from .storage.migrations import run_migrations
            run_migrations()
        except Exception as e:
            logger.warning(f"Database migrations failed: {str(e)}")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_core_components(config: AppConfig, logger) -> ApplicationState:
    """Wire the stores, registry, engine and push channel together."""
    state = ApplicationState()
    state.config = config
    state.logger = logger
    state.registry = NodeExecutorRegistry()
    state.definitions = FlowDefinitionManager(registry=state.registry, config=config)
    state.instances = FlowInstanceManager()
    state.versions = VersionManager(state.definitions)
    state.monitor = FlowMonitor()
    state.push_channel = LivePushChannel()
    state.engine = FlowEngine(
        definitions=state.definitions,
        instances=state.instances,
        registry=state.registry,
        services=build_services(config, state.push_channel),
        max_steps=config.max_steps_per_instance,
        shutdown_grace_seconds=config.shutdown_grace_seconds,
    )
    logger.info("Core components initialized")
    return state


async def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Let in-flight instances finish within the grace period, then close push clients."""
    logger.info(f"Shutting down {state.config.app_name}")

    try:
        await state.engine.shutdown()
        logger.info("Flow engine shutdown completed")
    except Exception as e:
        logger.error(f"Error during flow engine shutdown: {str(e)}")

    try:
        await state.push_channel.close_all()
    except Exception as e:
        logger.error(f"Error closing push connections: {str(e)}")


def create_lifespan_handler(config: AppConfig):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config, logger)
            state = initialize_core_components(config, logger)
            await state.registry.initialize()

            for name, value in vars(state).items():
                setattr(app_state, name, value)

            init_dependencies(
                definitions=state.definitions,
                engine=state.engine,
                registry=state.registry,
                versions=state.versions,
                monitor=state.monitor,
                push_channel=state.push_channel,
            )
            setup_health_checks(state.engine, state.registry, state.push_channel, logger)
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        try:
            await graceful_shutdown(state, logger)
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Flow engine for WeWork customer-service bots: versioned flows of typed nodes, "
                    "executed asynchronously and monitored live",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_performance_monitoring:
        from .core.middleware import (
            ErrorHandlingMiddleware,
            PerformanceMonitoringMiddleware,
            RequestLoggingMiddleware,
        )

        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": service_name, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        from .core.error_recovery import health_checker

        try:
            results = await health_checker.run_all_checks()
            return JSONResponse(
                status_code=200 if results["overall_status"] == "healthy" else 503,
                content={"service": service_name, "version": config.app_version, **results}
            )
        except Exception as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check: the database answers and the registry is populated."""
        from .core.error_recovery import health_checker

        results = {}
        for check_name in ("database", "executor_registry"):
            if check_name in health_checker.checks:
                results[check_name] = await health_checker.run_check(check_name)

        ready = bool(results) and all(result.get("status") == "healthy" for result in results.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ready": ready, "checks": results, "timestamp": datetime.utcnow().isoformat()}
        )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {"alive": True, "timestamp": datetime.utcnow().isoformat()}


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
