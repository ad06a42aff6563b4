"""Configuration management for the flow engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


ENV_PREFIX = "FLOW_ENGINE_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="WeWork Flow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./flow_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Flow engine settings
    default_flow_timeout_ms: int = Field(
        default=30000,
        description="Whole-instance time budget for definitions that do not set one"
    )
    default_max_retries: int = Field(default=3, description="Default node retry count")
    default_retry_interval_ms: int = Field(default=1000, description="Default fixed delay between node retries")
    max_steps_per_instance: int = Field(
        default=100,
        description="Maximum node executions per instance before it is failed"
    )
    shutdown_grace_seconds: float = Field(
        default=10.0,
        description="How long shutdown waits for in-flight instances"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")

    # HTTP settings
    slow_request_threshold: float = Field(default=5.0, description="Slow request threshold in seconds")
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    # AI provider (OpenAI-compatible chat completions)
    ai_base_url: Optional[str] = Field(default=None, description="AI provider base URL")
    ai_api_key: Optional[str] = Field(default=None, description="AI provider API key")
    ai_default_model: str = Field(default="gpt-4o-mini", description="Model used when a node sets none")
    ai_timeout: float = Field(default=30.0, description="AI request timeout in seconds")

    # WeWork bot API
    bot_api_base_url: Optional[str] = Field(default=None, description="Bot command API base URL")
    bot_api_token: Optional[str] = Field(default=None, description="Bot command API token")
    bot_api_timeout: float = Field(default=10.0, description="Bot API request timeout in seconds")

    # Notification gateways
    sms_gateway_url: Optional[str] = Field(default=None, description="SMS gateway endpoint")
    sms_gateway_key: Optional[str] = Field(default=None, description="SMS gateway API key")
    smtp_host: Optional[str] = Field(default=None, description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port")
    smtp_user: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[str] = Field(default=None, description="SMTP password")
    smtp_sender: Optional[str] = Field(default=None, description="From address for email nodes")

    # Test trigger polling hints
    test_poll_interval_seconds: float = Field(default=2.0, description="Suggested status poll interval")
    test_poll_max_seconds: float = Field(default=300.0, description="Suggested status poll cap")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port', 'smtp_port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('default_flow_timeout_ms')
    @classmethod
    def validate_flow_timeout(cls, v):
        """Validate the default instance budget."""
        if v < 1:
            raise ValueError("Flow timeout must be at least 1 ms")
        return v

    @field_validator('default_max_retries', 'default_retry_interval_ms')
    @classmethod
    def validate_retry_settings(cls, v):
        """Validate retry settings."""
        if v < 0:
            raise ValueError("Retry settings cannot be negative")
        return v

    @field_validator('max_steps_per_instance')
    @classmethod
    def validate_max_steps(cls, v):
        """Validate the per-instance step limit."""
        if v < 1:
            raise ValueError("Maximum steps per instance must be at least 1")
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "WeWork Flow Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./flow_engine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            default_flow_timeout_ms=get_env("DEFAULT_FLOW_TIMEOUT_MS", 30000, int),
            default_max_retries=get_env("DEFAULT_MAX_RETRIES", 3, int),
            default_retry_interval_ms=get_env("DEFAULT_RETRY_INTERVAL_MS", 1000, int),
            max_steps_per_instance=get_env("MAX_STEPS_PER_INSTANCE", 100, int),
            shutdown_grace_seconds=get_env("SHUTDOWN_GRACE_SECONDS", 10.0, float),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
            ai_base_url=get_env("AI_BASE_URL", None),
            ai_api_key=get_env("AI_API_KEY", None),
            ai_default_model=get_env("AI_DEFAULT_MODEL", "gpt-4o-mini"),
            ai_timeout=get_env("AI_TIMEOUT", 30.0, float),
            bot_api_base_url=get_env("BOT_API_BASE_URL", None),
            bot_api_token=get_env("BOT_API_TOKEN", None),
            bot_api_timeout=get_env("BOT_API_TIMEOUT", 10.0, float),
            sms_gateway_url=get_env("SMS_GATEWAY_URL", None),
            sms_gateway_key=get_env("SMS_GATEWAY_KEY", None),
            smtp_host=get_env("SMTP_HOST", None),
            smtp_port=get_env("SMTP_PORT", 587, int),
            smtp_user=get_env("SMTP_USER", None),
            smtp_password=get_env("SMTP_PASSWORD", None),
            smtp_sender=get_env("SMTP_SENDER", None),
            test_poll_interval_seconds=get_env("TEST_POLL_INTERVAL_SECONDS", 2.0, float),
            test_poll_max_seconds=get_env("TEST_POLL_MAX_SECONDS", 300.0, float),
        )


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    if config.is_sqlite:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and db_path != ":memory:" and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.smtp_host and not config.smtp_sender:
        errors.append("SMTP host is set but no sender address is configured")

    if config.default_retry_interval_ms * config.default_max_retries > config.default_flow_timeout_ms:
        errors.append("Default retry budget exceeds the default flow timeout")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        log_structured=True,
        database_echo=False,
        enable_performance_monitoring=True,
        cors_origins=[]
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        default_flow_timeout_ms=5000,
        default_retry_interval_ms=10,
        max_steps_per_instance=50
    )
