"""
Configuration system for fieldsync using Pydantic.
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from .exceptions import ConfigurationError


class DatabaseConnection(BaseModel):
    """Database connection configuration."""

    host: str = Field(..., description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: str = Field(..., description="Database password")
    ssl_mode: str = Field("prefer", description="SSL mode")
    connect_timeout: int = Field(30, description="Connection timeout in seconds")
    command_timeout: int = Field(60, description="Command timeout in seconds")

    def to_dsn(self) -> str:
        """Convert to PostgreSQL DSN string."""
        return (
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/"
            f"{self.database}?sslmode={self.ssl_mode}"
        )


class PoolConfig(BaseModel):
    """Connection pool sizing."""

    min_size: int = Field(2, description="Minimum pool connections")
    max_size: int = Field(10, description="Maximum pool connections")


class StoreConfig(BaseModel):
    """Where canonical schemas are persisted."""

    backend: Literal["memory", "postgres"] = Field(
        "memory", description="Schema store backend"
    )
    database: Optional[DatabaseConnection] = Field(
        None, description="Connection details for the postgres backend"
    )
    pool: PoolConfig = Field(default_factory=PoolConfig, description="Pool sizing")

    @model_validator(mode="after")
    def _database_for_postgres(self) -> "StoreConfig":
        if self.backend == "postgres" and self.database is None:
            raise ValueError("postgres store backend requires a database connection")
        return self


class SourceConfig(BaseModel):
    """Configuration for a tabular source provider."""

    provider: Literal["sheets", "csv"] = Field(..., description="Source provider type")
    endpoint: Optional[str] = Field(None, description="Values API base URL")
    access_token: Optional[str] = Field(None, description="OAuth access token")
    api_key: Optional[str] = Field(None, description="API key for the provider")
    sample_rows: int = Field(5, description="Data rows read for samples")
    max_columns: int = Field(26, description="Widest header row read")
    timeout: int = Field(30, description="Request timeout in seconds")
    max_retries: int = Field(3, description="Maximum number of retries")
    retry_delay: float = Field(1.0, description="Base retry delay in seconds")

    @field_validator("sample_rows", "max_columns")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class SourceConnectionConfig(BaseModel):
    """A connection binding a stored schema to a source document."""

    connection_id: str = Field(..., description="Connection identifier")
    source: str = Field(..., description="Name of the source configuration")
    source_id: str = Field(..., description="Spreadsheet id or file path")
    sheet_name: Optional[str] = Field(None, description="Sheet/tab to read")


class EventsConfig(BaseModel):
    """Schema change fan-out configuration."""

    backend: Literal["none", "redis", "postgres"] = Field(
        "none", description="Event publisher backend"
    )
    connection: Dict[str, Any] = Field(
        default_factory=dict, description="Redis connection parameters"
    )
    channel: str = Field("fieldsync_schema_events", description="Channel name")


class ReconciliationConfig(BaseModel):
    """Behaviour of the diff and merge."""

    case_sensitive_names: bool = Field(
        False, description="Compare column names exactly instead of trimmed/lowercased"
    )
    infer_types_on_bootstrap: bool = Field(
        True, description="Use inferred types for the first sync of a connection"
    )
    retain_removed: bool = Field(
        True, description="Keep removed columns with saved settings until purged"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")


class FieldSyncConfig(BaseSettings):
    """Main fieldsync configuration."""

    service_name: str = Field("fieldsync", description="Service name")
    debug: bool = Field(False, description="Enable debug mode")

    store: StoreConfig = Field(default_factory=StoreConfig, description="Schema store")
    sources: Dict[str, SourceConfig] = Field(
        default_factory=dict, description="Source provider configurations"
    )
    connections: List[SourceConnectionConfig] = Field(
        default_factory=list, description="Connections to reconcile"
    )
    events: EventsConfig = Field(default_factory=EventsConfig, description="Fan-out")
    reconciliation: ReconciliationConfig = Field(
        default_factory=ReconciliationConfig, description="Diff/merge behaviour"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = ConfigDict(
        env_file=".env",
        env_prefix="FIELDSYNC_",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "FieldSyncConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def get_source(self, name: str) -> SourceConfig:
        """Get source configuration by name."""
        if name not in self.sources:
            raise ConfigurationError(f"Source configuration '{name}' not found")
        return self.sources[name]

    def get_connection(self, connection_id: str) -> SourceConnectionConfig:
        """Get connection configuration by id."""
        for connection in self.connections:
            if connection.connection_id == connection_id:
                return connection
        raise ConfigurationError(f"Connection '{connection_id}' not found")

    def validate_config(self) -> None:
        """Validate the entire configuration for consistency."""
        seen = set()
        for connection in self.connections:
            if connection.connection_id in seen:
                raise ConfigurationError(
                    f"Connection '{connection.connection_id}' is defined more than once"
                )
            seen.add(connection.connection_id)

            if connection.source not in self.sources:
                raise ConfigurationError(
                    f"Connection {connection.connection_id} references unknown "
                    f"source '{connection.source}'"
                )

        for name, source in self.sources.items():
            if source.provider == "sheets" and not (source.access_token or source.api_key):
                raise ConfigurationError(
                    f"Source '{name}' needs an access_token or api_key"
                )

        if self.events.backend == "postgres" and self.store.backend != "postgres":
            raise ConfigurationError(
                "postgres events require the postgres store backend"
            )

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )


def setup_logging(config: LoggingConfig, debug: bool = False) -> None:
    """Configure root logging handlers from the logging section."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(config.format)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        handlers.append(
            logging.handlers.RotatingFileHandler(
                config.file,
                maxBytes=config.max_size,
                backupCount=config.backup_count,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(logging.DEBUG if debug else config.level)
