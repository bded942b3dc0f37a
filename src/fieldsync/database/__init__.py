"""
Database integration package for fieldsync.

This package provides:
- Async PostgreSQL connection pooling
- Metadata schema and table setup
- Versioned canonical schema stores
- Dependent registries
"""

from .connection import ConnectionConfig, ConnectionPool
from .metadata import METADATA_SCHEMA, MetadataManager
from .store import InMemorySchemaStore, PostgresSchemaStore, SchemaStore
from .registry import DependentRegistry, InMemoryDependentRegistry, PostgresDependentRegistry

__all__ = [
    "ConnectionConfig",
    "ConnectionPool",
    "METADATA_SCHEMA",
    "MetadataManager",
    "SchemaStore",
    "InMemorySchemaStore",
    "PostgresSchemaStore",
    "DependentRegistry",
    "InMemoryDependentRegistry",
    "PostgresDependentRegistry",
]
