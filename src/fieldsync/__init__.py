"""
fieldsync: keeps a user-edited field schema in step with a tabular source.

fieldsync scans a spreadsheet-like source, compares its columns with the
stored schema, previews the result and saves it with optimistic
concurrency, notifying the schema's dependents afterwards.
"""

__version__ = "0.1.0"
__author__ = "fieldsync Contributors"

from .config import FieldSyncConfig
from .exceptions import ConfigurationError, FieldSyncError, SourceError, StoreError

__all__ = [
    "__version__",
    "FieldSyncConfig",
    "FieldSyncError",
    "ConfigurationError",
    "SourceError",
    "StoreError",
]
