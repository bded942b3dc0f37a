"""
Preview building for fieldsync.

Folds the merged column view of a diff together with the session's
working fields (which carry unsaved user edits and custom fields) into
the preview the user reviews before saving.
"""

import logging
from dataclasses import dataclass
from typing import Collection, Dict, List, Mapping, Optional, Sequence

from .fields import (
    FieldDefinition,
    FieldType,
    MergedColumn,
    PreviewSchema,
    normalize_name,
)
from .identity import column_id_for, disambiguate, find_duplicate_ids
from ..exceptions import InvariantViolationError, ValidationError


logger = logging.getLogger(__name__)


class MatchKind:
    """How a merged column found its working field."""

    ID = "id"
    NAME = "name"
    RENAME = "rename"
    NEW = "new"


@dataclass
class _Match:
    kind: str
    field: Optional[FieldDefinition]


class FieldMatcher:
    """
    Single-use matcher over a pool of working fields.

    A field leaves the pool the moment it is matched, so no working field
    can be attached to two columns. Custom fields never enter the pool.
    Reserved ids belong to the column the diff paired them with and are
    only handed out through that column's field_id.
    """

    def __init__(
        self,
        working_fields: Sequence[FieldDefinition],
        rename_map: Mapping[str, str],
        case_sensitive: bool = False,
        reserved_ids: Collection[str] = (),
    ):
        self.case_sensitive = case_sensitive
        self._reserved = set(reserved_ids)
        self._pool: Dict[str, FieldDefinition] = {}
        self._order: List[str] = []
        for item in working_fields:
            if item.is_custom or item.id in self._pool:
                continue
            self._pool[item.id] = item
            self._order.append(item.id)

        # new name -> old name
        self._renamed_from = {
            self._key(new): old for old, new in rename_map.items()
        }

    def _key(self, name: Optional[str]) -> str:
        return normalize_name(name, self.case_sensitive)

    def _take(self, field_id: str) -> FieldDefinition:
        self._order.remove(field_id)
        self._reserved.discard(field_id)
        return self._pool.pop(field_id)

    def _find_by_name(self, name: Optional[str]) -> Optional[str]:
        wanted = self._key(name)
        for field_id in self._order:
            if field_id in self._reserved:
                continue
            if self._key(self._pool[field_id].name) == wanted:
                return field_id
        return None

    def match(self, column: MergedColumn) -> _Match:
        """Find the working field for a column: diff id, then name, then rename map."""
        if column.field_id and column.field_id in self._pool:
            return _Match(MatchKind.ID, self._take(column.field_id))

        field_id = self._find_by_name(column.name)
        if field_id:
            return _Match(MatchKind.NAME, self._take(field_id))

        old_name = self._renamed_from.get(self._key(column.name))
        if old_name is not None:
            field_id = self._find_by_name(old_name)
            if field_id:
                return _Match(MatchKind.RENAME, self._take(field_id))

        return _Match(MatchKind.NEW, None)

    def remaining(self) -> List[FieldDefinition]:
        """Working fields nothing matched, in working order."""
        return [self._pool[field_id] for field_id in self._order]


def build_preview(
    merged_columns: Sequence[MergedColumn],
    working_fields: Sequence[FieldDefinition],
    rename_map: Optional[Mapping[str, str]] = None,
    retired_ids: Collection[str] = (),
    infer_types: bool = False,
    retain_removed: bool = True,
    case_sensitive: bool = False,
) -> PreviewSchema:
    """
    Build the preview schema.

    Pure and deterministic: identical inputs always give equal output,
    including the ids minted for new columns.

    Args:
        merged_columns: Ordered merged view from diff_columns
        working_fields: Current working fields, including user edits
        rename_map: old name -> new name pairs inferred by the diff
        retired_ids: Ids that must never be minted again
        infer_types: Use the scanner's suggested type for new columns
            (first sync only); otherwise new columns are text
        retain_removed: Keep removed columns that carry saved settings
            at the next save unless the user purges them
        case_sensitive: Compare names exactly

    Returns:
        PreviewSchema: live rows in source order, then custom fields, then
        removed rows
    """
    if merged_columns is None or working_fields is None:
        raise ValidationError("build_preview requires merged columns and working fields")

    matcher = FieldMatcher(
        working_fields,
        rename_map or {},
        case_sensitive,
        reserved_ids={c.field_id for c in merged_columns if c.field_id},
    )
    blocked = set(retired_ids) | {item.id for item in working_fields}
    taken: set = set()
    rows: List[FieldDefinition] = []

    def claim(field_id: str) -> str:
        unique = disambiguate(field_id, taken)
        if unique != field_id:
            logger.warning(f"Field id {field_id} already used in preview, using {unique}")
        taken.add(unique)
        return unique

    def mint(name: str) -> str:
        return claim(disambiguate(column_id_for(name, case_sensitive), blocked | taken))

    live_columns = [c for c in merged_columns if not c.is_removed]
    removed_columns = [c for c in merged_columns if c.is_removed]

    for column in live_columns:
        found = matcher.match(column)
        if found.field is not None:
            row = found.field.copy(
                id=claim(found.field.id),
                name=column.name,
                active=found.field.active or found.field.auto_deactivated,
                auto_deactivated=False,
                original_index=column.position,
                sample_data=list(column.sample_data),
                is_removed=False,
                keep=True,
            )
        else:
            column_type = FieldType.TEXT
            if infer_types and column.inferred_type is not None:
                column_type = column.inferred_type
            row = FieldDefinition(
                id=mint(column.name),
                name=column.name,
                type=column_type,
                active=True,
                original_index=column.position,
                sample_data=list(column.sample_data),
            )
        rows.append(row)

    for item in working_fields:
        if item.is_custom:
            rows.append(item.copy(id=claim(item.id), is_removed=False, keep=True, sample_data=[]))

    for column in removed_columns:
        found = matcher.match(column)
        if found.field is not None:
            row = found.field.copy(
                id=claim(found.field.id),
                active=False,
                auto_deactivated=found.field.active or found.field.auto_deactivated,
                original_index=column.original_index,
                sample_data=[],
                is_removed=True,
                keep=found.field.keep if found.field.is_removed else retain_removed,
            )
        else:
            # Nothing to carry forward; only tells the user the column went away
            row = FieldDefinition(
                id=claim(column.field_id) if column.field_id else mint(column.name),
                name=column.name,
                active=False,
                auto_deactivated=True,
                original_index=column.original_index,
                is_removed=True,
                keep=False,
            )
        rows.append(row)

    # Working rows whose column vanished before they were ever saved
    for item in matcher.remaining():
        rows.append(
            item.copy(
                id=claim(item.id),
                active=False,
                auto_deactivated=item.active or item.auto_deactivated,
                sample_data=[],
                is_removed=True,
                keep=False,
            )
        )

    duplicates = find_duplicate_ids(r.id for r in rows)
    if duplicates:
        raise InvariantViolationError(
            "Preview contains duplicate field ids",
            details={"ids": duplicates},
        )

    return PreviewSchema(fields=rows)
