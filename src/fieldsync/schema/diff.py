"""
Column diffing for fieldsync.

Compares the columns a scan observed against the stored schema and
classifies every difference. Matching is purely by name and position:
there is nothing else linking a stored field to a source column.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence

from .fields import (
    ChangeType,
    ColumnChange,
    FieldDefinition,
    LiveColumn,
    MergedColumn,
    normalize_name,
)
from .identity import find_duplicate_names
from ..exceptions import ValidationError


logger = logging.getLogger(__name__)


@dataclass
class ColumnDiff:
    """Result of comparing a scan against the stored schema."""

    entries: List[ColumnChange]
    merged_columns: List[MergedColumn]
    rename_map: Dict[str, str] = field(default_factory=dict)
    bootstrap: bool = False
    ambiguous_names: List[str] = field(default_factory=list)

    @property
    def changes(self) -> List[ColumnChange]:
        """Classified differences, without the unchanged columns."""
        return [c for c in self.entries if c.type != ChangeType.UNCHANGED]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def count(self, change_type: ChangeType) -> int:
        return sum(1 for c in self.entries if c.type == change_type)

    def summary(self) -> Dict[str, int]:
        return {t.value: self.count(t) for t in ChangeType}


def order_canonical(fields: Sequence[FieldDefinition]) -> List[FieldDefinition]:
    """
    Source-backed fields in source order.

    Fields are ordered by their stored position; fields without one keep
    their relative place in the stored list.
    """
    indexed = [
        (f.original_index if f.original_index >= 0 else i, i, f)
        for i, f in enumerate(fields)
        if not f.is_custom
    ]
    indexed.sort(key=lambda item: (item[0], item[1]))
    return [f for _, _, f in indexed]


def diff_columns(
    canonical: Sequence[FieldDefinition],
    live: Sequence[LiveColumn],
    case_sensitive: bool = False,
) -> ColumnDiff:
    """
    Compare live columns against the stored schema.

    Args:
        canonical: Stored field definitions (custom fields are ignored)
        live: Columns from the latest scan, in source order
        case_sensitive: Compare names exactly instead of trimmed/lowercased

    Returns:
        ColumnDiff with the change list and the ordered merged view

    Raises:
        ValidationError: If either argument is None
    """
    if canonical is None or live is None:
        raise ValidationError("diff_columns requires both a canonical schema and live columns")

    def key(name: Optional[str]) -> str:
        return normalize_name(name, case_sensitive)

    stored = [
        item if item.original_index >= 0 else item.copy(original_index=position)
        for position, item in enumerate(order_canonical(canonical))
    ]
    ambiguous = find_duplicate_names([c.name for c in live], case_sensitive)
    if ambiguous:
        logger.warning(f"Source has duplicate column headers, pairing order is undefined: {ambiguous}")

    if not stored:
        # First sync: the scan seeds the schema as-is
        merged = [
            MergedColumn(
                name=col.name,
                position=col.position,
                status=ChangeType.ADDED,
                original_index=col.position,
                sample_data=list(col.sample_data),
                inferred_type=col.inferred_type,
            )
            for col in live
        ]
        return ColumnDiff(
            entries=[],
            merged_columns=merged,
            bootstrap=True,
            ambiguous_names=ambiguous,
        )

    stored_by_name: Dict[str, Deque[FieldDefinition]] = defaultdict(deque)
    for item in stored:
        stored_by_name[key(item.name)].append(item)

    # Exact name matches, in source order; keyed by index into live
    matched: Dict[int, FieldDefinition] = {}
    for i, col in enumerate(live):
        candidates = stored_by_name.get(key(col.name))
        if candidates:
            matched[i] = candidates.popleft()

    consumed_ids = {item.id for item in matched.values()}
    removed_candidates = [f for f in stored if f.id not in consumed_ids]
    added_candidates = [i for i in range(len(live)) if i not in matched]

    # Positional rename pairing: first unmatched removed <-> first unmatched added
    renamed: Dict[int, FieldDefinition] = dict(zip(added_candidates, removed_candidates))
    removed = removed_candidates[len(renamed):]

    entries: List[ColumnChange] = []
    merged: List[MergedColumn] = []
    rename_map: Dict[str, str] = {}

    for i, col in enumerate(live):
        if i in matched:
            item = matched[i]
            old_index = item.original_index
            status = ChangeType.UNCHANGED if old_index == col.position else ChangeType.REORDERED
            entries.append(
                ColumnChange(type=status, name=col.name, index=old_index, new_index=col.position)
            )
            merged.append(
                MergedColumn(
                    name=col.name,
                    position=col.position,
                    status=status,
                    field_id=item.id,
                    original_index=old_index,
                    sample_data=list(col.sample_data),
                    inferred_type=col.inferred_type,
                )
            )
        elif i in renamed:
            item = renamed[i]
            old_index = item.original_index
            rename_map[item.name] = col.name
            entries.append(
                ColumnChange(
                    type=ChangeType.RENAMED,
                    name=col.name,
                    old_name=item.name,
                    index=old_index,
                    new_index=col.position,
                )
            )
            merged.append(
                MergedColumn(
                    name=col.name,
                    position=col.position,
                    status=ChangeType.RENAMED,
                    field_id=item.id,
                    old_name=item.name,
                    original_index=old_index,
                    sample_data=list(col.sample_data),
                    inferred_type=col.inferred_type,
                )
            )
        else:
            entries.append(ColumnChange(type=ChangeType.ADDED, name=col.name, new_index=col.position))
            merged.append(
                MergedColumn(
                    name=col.name,
                    position=col.position,
                    status=ChangeType.ADDED,
                    original_index=col.position,
                    sample_data=list(col.sample_data),
                    inferred_type=col.inferred_type,
                )
            )

    for item in removed:
        old_index = item.original_index
        entries.append(ColumnChange(type=ChangeType.REMOVED, name=item.name, index=old_index))
        merged.append(
            MergedColumn(
                name=item.name,
                position=-1,
                status=ChangeType.REMOVED,
                field_id=item.id,
                original_index=old_index,
                is_removed=True,
            )
        )

    result = ColumnDiff(
        entries=entries,
        merged_columns=merged,
        rename_map=rename_map,
        ambiguous_names=ambiguous,
    )
    logger.debug(f"Column diff: {result.summary()}")
    return result
