"""
Schema reconciliation package for fieldsync.

This package provides:
- The field schema data model
- Stable field identity bookkeeping
- Column diffing against the stored schema
- Preview building from a diff and the working fields
"""

from .fields import (
    CanonicalSchema,
    ChangeType,
    ColumnChange,
    FieldDefinition,
    FieldType,
    LiveColumn,
    MergedColumn,
    PreviewSchema,
    normalize_name,
)
from .identity import column_id_for, find_duplicate_ids, next_custom_id
from .diff import ColumnDiff, diff_columns
from .merge import FieldMatcher, build_preview

__all__ = [
    "CanonicalSchema",
    "ChangeType",
    "ColumnChange",
    "FieldDefinition",
    "FieldType",
    "LiveColumn",
    "MergedColumn",
    "PreviewSchema",
    "normalize_name",
    "column_id_for",
    "find_duplicate_ids",
    "next_custom_id",
    "ColumnDiff",
    "diff_columns",
    "FieldMatcher",
    "build_preview",
]
