"""Configuration management for stepflow."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="stepflow", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./stepflow.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Orchestrator settings
    max_concurrent_steps: int = Field(
        default=16,
        description="Maximum number of concurrently running steps per run"
    )
    step_timeout: float = Field(
        default=300.0,
        description="Default per-invocation step deadline in seconds"
    )
    default_max_retries: int = Field(
        default=3,
        description="Default total attempt budget for a step"
    )
    retry_base_delay: float = Field(default=1.0, description="Base retry backoff in seconds")
    retry_max_delay: float = Field(default=30.0, description="Maximum retry backoff in seconds")
    retry_jitter: bool = Field(default=True, description="Randomize retry backoff")
    max_wait_seconds: float = Field(
        default=3600.0,
        description="Upper bound for a wait step's suspension"
    )
    max_loop_iterations: int = Field(default=100, description="Default loop iteration cap")
    map_max_workers: int = Field(default=10, description="Default map/foreach parallelism")

    # Secrets
    secret_key: Optional[str] = Field(default=None, description="Fernet key for the bundled secret store")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log records")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_steps', 'map_max_workers', 'max_loop_iterations')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('step_timeout', 'max_wait_seconds')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator('default_max_retries')
    @classmethod
    def validate_retries(cls, v):
        if v < 0:
            raise ValueError("default_max_retries cannot be negative")
        return v

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")

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
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"STEPFLOW_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "stepflow"),
            app_version=get_env("APP_VERSION", "0.1.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            database_url=get_env("DATABASE_URL", "sqlite:///./stepflow.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_steps=get_env("MAX_CONCURRENT_STEPS", 16, int),
            step_timeout=get_env("STEP_TIMEOUT", 300.0, float),
            default_max_retries=get_env("DEFAULT_MAX_RETRIES", 3, int),
            retry_base_delay=get_env("RETRY_BASE_DELAY", 1.0, float),
            retry_max_delay=get_env("RETRY_MAX_DELAY", 30.0, float),
            retry_jitter=get_env("RETRY_JITTER", True, bool),
            max_wait_seconds=get_env("MAX_WAIT_SECONDS", 3600.0, float),
            max_loop_iterations=get_env("MAX_LOOP_ITERATIONS", 100, int),
            map_max_workers=get_env("MAP_MAX_WORKERS", 10, int),
            secret_key=get_env("SECRET_KEY", None),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
        )


# Global configuration instance
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


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        step_timeout=5.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=False,
        max_wait_seconds=5.0,
    )
