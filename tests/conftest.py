"""
Pytest configuration and shared fixtures for fieldsync tests.

This module provides shared fixtures and utilities for testing all fieldsync components.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
import yaml

from fieldsync.config import FieldSyncConfig, ReconciliationConfig, SourceConfig
from fieldsync.database.registry import InMemoryDependentRegistry
from fieldsync.database.store import InMemorySchemaStore
from fieldsync.events import RecordingEventPublisher
from fieldsync.schema.fields import CanonicalSchema, FieldDefinition, FieldType, LiveColumn
from fieldsync.session import ReconciliationSession
from fieldsync.sources.base import ColumnScanner, infer_column_type


# ============================================================================
# Helpers
# ============================================================================

def make_columns(*names: str, samples: Optional[Dict[str, List[str]]] = None) -> List[LiveColumn]:
    """Live columns at consecutive positions."""
    samples = samples or {}
    return [
        LiveColumn(
            name=name,
            position=i,
            sample_data=list(samples.get(name, [])),
            inferred_type=infer_column_type(samples.get(name, [])),
        )
        for i, name in enumerate(names)
    ]


class FakeScanner(ColumnScanner):
    """Scanner returning whatever columns the test sets."""

    def __init__(self, columns: Optional[List[LiveColumn]] = None):
        super().__init__(SourceConfig(provider="csv", max_retries=0, retry_delay=0.01))
        self.columns = list(columns or [])
        self.error: Optional[Exception] = None
        self.calls = 0

    async def scan(self, source_id: str) -> List[LiveColumn]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [
            LiveColumn(c.name, c.position, list(c.sample_data), c.inferred_type)
            for c in self.columns
        ]


# ============================================================================
# Schema Fixtures
# ============================================================================

@pytest.fixture
def contact_fields() -> List[FieldDefinition]:
    """Stored schema of a three column contact sheet."""
    return [
        FieldDefinition(id="f-name", name="Name", type=FieldType.TEXT,
                        description="Full name", original_index=0),
        FieldDefinition(id="f-email", name="Email", type=FieldType.EMAIL,
                        description="Work email", original_index=1),
        FieldDefinition(id="f-phone", name="Phone", type=FieldType.PHONE,
                        original_index=2),
    ]


@pytest.fixture
def contact_columns() -> List[LiveColumn]:
    return make_columns(
        "Name", "Email", "Phone",
        samples={
            "Name": ["Ada", "Grace"],
            "Email": ["ada@example.com"],
            "Phone": ["+1 555 0100"],
        },
    )


# ============================================================================
# Session Fixtures
# ============================================================================

@pytest.fixture
def memory_store() -> InMemorySchemaStore:
    return InMemorySchemaStore()


@pytest.fixture
def dependent_registry() -> InMemoryDependentRegistry:
    return InMemoryDependentRegistry({"contacts": ["crm-app", "signup-form"]})


@pytest.fixture
def event_publisher() -> RecordingEventPublisher:
    return RecordingEventPublisher()


@pytest.fixture
def fake_scanner(contact_columns) -> FakeScanner:
    return FakeScanner(contact_columns)


@pytest.fixture
def make_session(memory_store, dependent_registry, event_publisher, fake_scanner):
    """Factory for sessions sharing the same store, registry and publisher."""

    def _make(
        scanner: Optional[ColumnScanner] = None,
        config: Optional[ReconciliationConfig] = None,
    ) -> ReconciliationSession:
        return ReconciliationSession(
            connection_id="contacts",
            source_id="sheet-123",
            scanner=scanner or fake_scanner,
            store=memory_store,
            registry=dependent_registry,
            publisher=event_publisher,
            config=config,
        )

    return _make


@pytest_asyncio.fixture
async def saved_contacts(memory_store, contact_fields) -> str:
    """Store holding the contact schema as version 1."""
    return await memory_store.put(
        "contacts",
        CanonicalSchema(connection_id="contacts", fields=contact_fields, source_id="sheet-123"),
        None,
    )


# ============================================================================
# Source Configuration Fixtures
# ============================================================================

@pytest.fixture
def sheets_source_config() -> SourceConfig:
    return SourceConfig(
        provider="sheets",
        endpoint="https://sheets.example.com",
        access_token="test-token",
        max_retries=2,
        retry_delay=0.01,
        timeout=5,
    )


@pytest.fixture
def csv_source_config() -> SourceConfig:
    return SourceConfig(provider="csv", max_retries=0, retry_delay=0.01)


# ============================================================================
# Configuration File Fixtures
# ============================================================================

@pytest.fixture
def sample_config_data(tmp_path) -> Dict[str, Any]:
    csv_path = tmp_path / "contacts.csv"
    csv_path.write_text(
        "Name,Email,Phone\nAda,ada@example.com,+1 555 0100\nGrace,grace@example.com,+1 555 0101\n",
        encoding="utf-8",
    )
    return {
        "service_name": "fieldsync-test",
        "sources": {
            "local_csv": {"provider": "csv"},
            "google_sheets": {
                "provider": "sheets",
                "access_token": "test-token",
            },
        },
        "connections": [
            {
                "connection_id": "contacts",
                "source": "local_csv",
                "source_id": str(csv_path),
            },
        ],
        "reconciliation": {"case_sensitive_names": False},
    }


@pytest.fixture
def config_file(tmp_path, sample_config_data) -> str:
    path = tmp_path / "fieldsync.yaml"
    path.write_text(yaml.safe_dump(sample_config_data), encoding="utf-8")
    return str(path)


@pytest.fixture
def sample_config(sample_config_data) -> FieldSyncConfig:
    return FieldSyncConfig(**sample_config_data)


# ============================================================================
# Database Mock Fixtures
# ============================================================================

@pytest.fixture
def mock_connection() -> AsyncMock:
    """Mock asyncpg connection with a working transaction() context."""
    conn = AsyncMock()

    @asynccontextmanager
    async def transaction():
        yield

    conn.transaction = MagicMock(side_effect=transaction)
    return conn


@pytest.fixture
def mock_pool(mock_connection) -> MagicMock:
    """Mock ConnectionPool whose acquire() and transaction() yield mock_connection."""
    pool = MagicMock()

    @asynccontextmanager
    async def acquire():
        yield mock_connection

    @asynccontextmanager
    async def transaction():
        async with mock_connection.transaction():
            yield mock_connection

    pool.acquire = MagicMock(side_effect=acquire)
    pool.transaction = MagicMock(side_effect=transaction)
    pool.execute = AsyncMock(return_value="OK")
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetchval = AsyncMock(return_value=None)
    return pool
