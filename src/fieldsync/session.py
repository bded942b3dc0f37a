"""
Reconciliation session for fieldsync.

A session owns the working copy of one connection's schema while a user
reviews what changed in the source: it loads the canonical schema, scans
the source, builds the preview, applies the user's edits and finally saves
with an optimistic version check.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .config import ReconciliationConfig
from .database.registry import DependentRegistry
from .database.store import SchemaStore
from .events import SchemaChangedEvent, SchemaEventPublisher
from .exceptions import (
    ConflictError,
    InvariantViolationError,
    SchemaNotFoundError,
    SessionStateError,
    ValidationError,
)
from .schema.diff import ColumnDiff, diff_columns
from .schema.fields import (
    CanonicalSchema,
    ColumnChange,
    FieldDefinition,
    FieldType,
    LiveColumn,
    PreviewSchema,
)
from .schema.identity import find_duplicate_ids, next_custom_id
from .schema.merge import build_preview
from .sources.base import ColumnScanner


logger = logging.getLogger(__name__)

EDITABLE_ATTRIBUTES = ("name", "type", "description", "options", "active")


class SessionState(str, Enum):
    """Lifecycle of a reconciliation session."""

    IDLE = "idle"
    COMPARING = "comparing"
    PREVIEW_READY = "preview_ready"
    DIRTY = "dirty"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"
    DISCARDING = "discarding"


class SaveStatus(str, Enum):
    """Outcome of a save request."""

    SAVED = "saved"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    INVALID = "invalid"
    REJECTED = "rejected"


@dataclass
class SaveResult:
    """Result of a save request."""

    status: SaveStatus
    version: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)
    retired_ids: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (SaveStatus.SAVED, SaveStatus.UNCHANGED)

    @property
    def user_action(self) -> Optional[str]:
        """What the user should do next, if anything."""
        if self.status == SaveStatus.CONFLICT:
            return "reload"
        if self.status == SaveStatus.INVALID:
            return "fix_field"
        return None


def _clean_options(options: Optional[Sequence[Any]]) -> List[str]:
    cleaned = []
    for option in options or []:
        value = str(option).strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


class ReconciliationSession:
    """
    Headless state machine reconciling one connection's schema.

    All edits go to the working set; nothing is written until save(). A
    session serves a single user and keeps no locks while the user thinks.
    """

    def __init__(
        self,
        connection_id: str,
        source_id: str,
        scanner: ColumnScanner,
        store: SchemaStore,
        registry: Optional[DependentRegistry] = None,
        publisher: Optional[SchemaEventPublisher] = None,
        config: Optional[ReconciliationConfig] = None,
    ):
        self.connection_id = connection_id
        self.source_id = source_id
        self.scanner = scanner
        self.store = store
        self.registry = registry
        self.publisher = publisher
        self.config = config or ReconciliationConfig()

        self._state = SessionState.IDLE
        self._canonical: Optional[CanonicalSchema] = None
        self._working: List[FieldDefinition] = []
        self._live: Optional[List[LiveColumn]] = None
        self._diff: Optional[ColumnDiff] = None
        self._preview: Optional[PreviewSchema] = None
        self._display_order: Optional[List[str]] = None
        self._edited = False
        self.last_error: Optional[Exception] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def canonical(self) -> Optional[CanonicalSchema]:
        return self._canonical

    @property
    def working_fields(self) -> List[FieldDefinition]:
        return [f.copy() for f in self._working]

    @property
    def diff(self) -> Optional[ColumnDiff]:
        return self._diff

    @property
    def preview(self) -> Optional[PreviewSchema]:
        return self._preview

    @property
    def is_dirty(self) -> bool:
        """True when the working set holds edits that were not saved."""
        return self._edited

    # Loading and comparing

    async def load_canonical(self) -> CanonicalSchema:
        """
        Load the canonical schema from the store.

        A connection that was never saved yields an empty schema with no
        version; the next sync then seeds it from the source.
        """
        try:
            canonical = await self.store.get(self.connection_id)
        except SchemaNotFoundError:
            logger.info(f"No stored schema for {self.connection_id}, starting from the source")
            canonical = CanonicalSchema(connection_id=self.connection_id, source_id=self.source_id)

        self._canonical = canonical
        if not self._edited:
            self._working = canonical.copy_fields()
        return canonical

    async def sync(self) -> Optional[PreviewSchema]:
        """
        Scan the source and rebuild the preview against the stored schema.

        Returns the current preview unchanged when a comparison is already
        running.

        Raises:
            SourceUnavailableError: The source could not be read; the
                session is left in the state it was in
            SessionStateError: A save is in progress
        """
        if self._state == SessionState.COMPARING:
            logger.debug(f"Sync of {self.connection_id} already running, ignoring")
            return self._preview
        if self._state in (SessionState.SAVING, SessionState.DISCARDING):
            raise SessionStateError("sync", self._state.value)

        prior_state = self._state
        self._state = SessionState.COMPARING
        try:
            await self.load_canonical()
            live = await self.scanner.scan(self.source_id)
            diff = diff_columns(
                self._canonical.fields, live, self.config.case_sensitive_names
            )
            preview = self._build(diff)
        except Exception as e:
            self._state = prior_state
            self.last_error = e
            logger.warning(f"Sync of {self.connection_id} failed: {e}")
            raise

        self._live = live
        self._diff = diff
        self._preview = preview
        self._working = [f.copy() for f in preview.fields]
        self._state = SessionState.DIRTY if self._edited else SessionState.PREVIEW_READY

        if diff.bootstrap:
            logger.info(f"First sync of {self.connection_id}: {len(live)} columns found")
        else:
            logger.info(f"Synced {self.connection_id}: {diff.summary()}")
        return preview

    def _build(self, diff: Optional[ColumnDiff]) -> PreviewSchema:
        if diff is None:
            preview = PreviewSchema(fields=[f.copy() for f in self._working])
            duplicates = find_duplicate_ids(preview.ids)
            if duplicates:
                raise InvariantViolationError(
                    "Working set contains duplicate field ids", details={"ids": duplicates}
                )
        else:
            preview = build_preview(
                diff.merged_columns,
                self._working,
                diff.rename_map,
                retired_ids=self._canonical.retired_ids if self._canonical else (),
                infer_types=diff.bootstrap and self.config.infer_types_on_bootstrap,
                retain_removed=self.config.retain_removed,
                case_sensitive=self.config.case_sensitive_names,
            )

        if self._display_order:
            rank = {field_id: i for i, field_id in enumerate(self._display_order)}
            unranked = len(rank)
            indexed = list(enumerate(preview.fields))
            indexed.sort(key=lambda item: (rank.get(item[1].id, unranked + item[0]), item[0]))
            preview = PreviewSchema(fields=[f for _, f in indexed])

        return preview

    def compute_preview(self) -> PreviewSchema:
        """Recompute the preview from the working set and the last diff."""
        self._preview = self._build(self._diff)
        return self._preview

    def change_summary(self) -> List[ColumnChange]:
        """Changes found by the last sync; empty before the first one."""
        if self._diff is None:
            return []
        return list(self._diff.changes)

    # Edits

    def _require_editable(self, operation: str) -> None:
        if self._state in (SessionState.COMPARING, SessionState.SAVING, SessionState.DISCARDING):
            raise SessionStateError(operation, self._state.value)
        if self._canonical is None:
            raise SessionStateError(operation, "not loaded")

    def _index_of(self, field_id: str) -> int:
        for i, item in enumerate(self._working):
            if item.id == field_id:
                return i
        raise ValidationError(f"No field with id '{field_id}'", field_id=field_id)

    def _mark_edited(self) -> PreviewSchema:
        self._edited = True
        self._state = SessionState.DIRTY
        return self.compute_preview()

    def edit(self, field_id: str, patch: Optional[Mapping[str, Any]] = None, **changes: Any) -> FieldDefinition:
        """
        Change attributes of one working field.

        Source-backed fields take their name from the source header, so only
        custom fields can be renamed.

        Raises:
            ValidationError: Unknown field or attribute, or an invalid value
            SessionStateError: A sync or save is running
        """
        self._require_editable("edit fields")
        patch = dict(patch or {}, **changes)

        unknown = sorted(set(patch) - set(EDITABLE_ATTRIBUTES))
        if unknown:
            raise ValidationError(f"Attributes cannot be edited: {unknown}", field_id=field_id)

        index = self._index_of(field_id)
        current = self._working[index]
        updates: Dict[str, Any] = {}

        if "name" in patch:
            name = str(patch["name"] or "").strip()
            if name != current.name:
                if not current.is_custom:
                    raise ValidationError(
                        "Only custom fields can be renamed; rename the column in the source instead",
                        field_id=field_id,
                    )
                if not name:
                    raise ValidationError("Field name cannot be empty", field_id=field_id)
                updates["name"] = name

        if "description" in patch:
            updates["description"] = str(patch["description"] or "")

        field_type = FieldType.parse(patch.get("type", current.type))
        if "type" in patch:
            updates["type"] = field_type

        if "options" in patch:
            updates["options"] = _clean_options(patch["options"])
        if not field_type.is_select:
            updates["options"] = []

        if "active" in patch:
            active = patch["active"] is True
            if active and current.is_removed:
                raise ValidationError(
                    "A column that is no longer in the source cannot be activated",
                    field_id=field_id,
                )
            updates["active"] = active
            # An explicit choice outlives the column coming back
            updates["auto_deactivated"] = False

        self._working[index] = current.copy(**updates)
        self._mark_edited()
        return self._working[index].copy()

    def toggle_active(self, field_id: str) -> FieldDefinition:
        """Flip whether a field is included."""
        self._require_editable("toggle fields")
        current = self._working[self._index_of(field_id)]
        return self.edit(field_id, active=not current.active)

    def add_custom_field(
        self,
        definition: Union[FieldDefinition, Mapping[str, Any], None] = None,
        **attributes: Any,
    ) -> FieldDefinition:
        """
        Add a field that is not backed by a source column.

        Raises:
            ValidationError: A select type without options
        """
        self._require_editable("add fields")

        if isinstance(definition, FieldDefinition):
            data = definition.to_dict(persist=True)
        else:
            data = dict(definition or {})
        data.update(attributes)

        field_type = FieldType.parse(data.get("type"))
        options = _clean_options(data.get("options")) if field_type.is_select else []
        if field_type.is_select and not options:
            raise ValidationError(f"A {field_type.value} field needs at least one option")

        used = {f.id for f in self._working} | set(self._canonical.ids)
        field_id = next_custom_id(used, self._canonical.retired_ids)
        name = str(data.get("name") or "").strip() or f"field_{field_id.split('-', 1)[1]}"

        item = FieldDefinition(
            id=field_id,
            name=name,
            type=field_type,
            description=str(data.get("description") or ""),
            options=options,
            active=data.get("active", True) is True,
            original_index=len(self._working),
        )
        self._working.append(item)
        if self._display_order is not None:
            self._display_order.append(field_id)

        self._mark_edited()
        logger.debug(f"Added custom field {field_id} ({name}) to {self.connection_id}")
        return item.copy()

    def remove_custom_field(self, field_id: str) -> None:
        """
        Delete a custom field from the working set.

        Raises:
            ValidationError: The field is source-backed
        """
        self._require_editable("remove fields")
        index = self._index_of(field_id)
        if not self._working[index].is_custom:
            raise ValidationError(
                "Only custom fields can be removed; deactivate source columns instead",
                field_id=field_id,
            )

        del self._working[index]
        if self._display_order is not None and field_id in self._display_order:
            self._display_order.remove(field_id)
        self._mark_edited()

    def reorder(self, new_order: Sequence[str]) -> PreviewSchema:
        """
        Set the display order of the fields.

        Args:
            new_order: Every field id of the preview, each exactly once

        Raises:
            ValidationError: new_order is not a permutation of the preview ids
        """
        self._require_editable("reorder fields")
        current = self.compute_preview().ids
        order = list(new_order)

        duplicates = find_duplicate_ids(order)
        missing = [i for i in current if i not in order]
        unknown = [i for i in order if i not in current]
        if duplicates or missing or unknown:
            raise ValidationError(
                "New order must list every field exactly once",
                details={"duplicates": duplicates, "missing": missing, "unknown": unknown},
            )

        self._display_order = order
        rank = {field_id: i for i, field_id in enumerate(order)}
        self._working.sort(key=lambda item: rank.get(item.id, len(rank)))
        return self._mark_edited()

    def keep_removed(self, field_id: str, keep: bool = True) -> FieldDefinition:
        """
        Choose whether a removed column is retained at the next save.

        Raises:
            ValidationError: The field is not a removed column
        """
        self._require_editable("change removed fields")
        index = self._index_of(field_id)
        if not self._working[index].is_removed:
            raise ValidationError("Field is still present in the source", field_id=field_id)

        self._working[index] = self._working[index].copy(keep=keep is True)
        self._mark_edited()
        return self._working[index].copy()

    def purge_removed(self) -> List[str]:
        """Mark every removed column for deletion at the next save."""
        self._require_editable("purge removed fields")
        purged = []
        for i, item in enumerate(self._working):
            if item.is_removed and item.keep:
                self._working[i] = item.copy(keep=False)
                purged.append(item.id)
        if purged:
            self._mark_edited()
        return purged

    # Saving

    def _fields_to_persist(self, preview: PreviewSchema) -> List[FieldDefinition]:
        return [
            f.copy(sample_data=[], is_removed=False, keep=True)
            for f in preview.fields
            if not (f.is_removed and not f.keep)
        ]

    async def save(self) -> SaveResult:
        """
        Persist the working set as the new canonical schema.

        Removed columns the user did not keep are dropped and their ids
        retired. Dependents are notified after a successful save; a failed
        notification never fails the save.

        Raises:
            InvariantViolationError: The merged schema has duplicate ids;
                nothing is written
        """
        if self._state == SessionState.SAVING:
            logger.warning(f"Save of {self.connection_id} rejected: another save is in flight")
            return SaveResult(SaveStatus.REJECTED, errors=["A save is already in progress"])
        if self._state in (SessionState.COMPARING, SessionState.DISCARDING) or self._canonical is None:
            state = self._state.value if self._canonical is not None else "not loaded"
            return SaveResult(SaveStatus.REJECTED, errors=[f"Cannot save while session is {state}"])

        try:
            preview = self.compute_preview()
        except InvariantViolationError as e:
            logger.critical(f"Refusing to save {self.connection_id}: {e}")
            raise

        fields = self._fields_to_persist(preview)

        duplicates = find_duplicate_ids(f.id for f in fields)
        if duplicates:
            logger.critical(f"Refusing to save {self.connection_id}: duplicate ids {duplicates}")
            raise InvariantViolationError(
                "Schema to save contains duplicate field ids", details={"ids": duplicates}
            )

        errors = [problem for item in fields for problem in item.validate()]
        if errors:
            logger.info(f"Save of {self.connection_id} refused: {len(errors)} validation error(s)")
            return SaveResult(SaveStatus.INVALID, errors=errors)

        kept_ids = {f.id for f in fields}
        newly_retired = [i for i in self._canonical.ids if i not in kept_ids]
        retired = list(dict.fromkeys(self._canonical.retired_ids + newly_retired))

        candidate = CanonicalSchema(
            connection_id=self.connection_id,
            fields=fields,
            retired_ids=retired,
            source_id=self.source_id,
        )
        if (
            self._canonical.version is not None
            and candidate.to_dict()["fields"] == self._canonical.to_dict()["fields"]
            and retired == self._canonical.retired_ids
        ):
            self._edited = False
            if self._state == SessionState.DIRTY:
                self._state = SessionState.PREVIEW_READY
            return SaveResult(SaveStatus.UNCHANGED, version=self._canonical.version)

        snapshot = [f.copy() for f in self._working]
        self._state = SessionState.SAVING
        try:
            version = await self.store.put(self.connection_id, candidate, self._canonical.version)
        except ConflictError as e:
            logger.warning(f"Save of {self.connection_id} conflicted: {e}")
            self._working = snapshot
            self._state = SessionState.ERROR
            self.last_error = e
            return SaveResult(SaveStatus.CONFLICT, errors=[str(e)])
        except Exception as e:
            self._working = snapshot
            self._state = SessionState.ERROR
            self.last_error = e
            raise

        candidate.version = version
        self._canonical = candidate
        self._edited = False
        if self._display_order is not None:
            self._display_order = [f.id for f in fields]

        # Working and canonical converge; the diff is recomputed against the last scan
        self._working = candidate.copy_fields()
        if self._live is not None:
            self._diff = diff_columns(candidate.fields, self._live, self.config.case_sensitive_names)
        self._preview = self._build(self._diff)
        self._working = [f.copy() for f in self._preview.fields]
        self._state = SessionState.SAVED

        logger.info(
            f"Saved {self.connection_id} as version {version} "
            f"({len(fields)} fields, {len(newly_retired)} retired)"
        )

        dependents = await self._notify(version)
        return SaveResult(
            SaveStatus.SAVED,
            version=version,
            dependents=dependents,
            retired_ids=newly_retired,
        )

    async def _notify(self, version: str) -> List[str]:
        """Tell dependents about a new version; failures are only logged."""
        try:
            dependents = await self.affected_dependents()
        except Exception as e:
            logger.warning(f"Could not list dependents of {self.connection_id}: {e}")
            dependents = []

        if self.publisher is not None:
            event = SchemaChangedEvent(
                connection_id=self.connection_id,
                version=version,
                dependents=dependents,
            )
            try:
                await self.publisher.publish(event)
            except Exception as e:
                logger.warning(f"Schema change event for {self.connection_id} not delivered: {e}")

        return dependents

    async def affected_dependents(self) -> List[str]:
        """Dependents that read this connection's schema."""
        if self.registry is None:
            return []
        return await self.registry.list_dependents(self.connection_id)

    def discard(self) -> None:
        """Drop all unsaved edits and return to idle."""
        if self._state in (SessionState.COMPARING, SessionState.SAVING):
            raise SessionStateError("discard", self._state.value)

        self._state = SessionState.DISCARDING
        self._working = self._canonical.copy_fields() if self._canonical else []
        self._live = None
        self._diff = None
        self._preview = None
        self._display_order = None
        self._edited = False
        self._state = SessionState.IDLE
        logger.debug(f"Discarded working changes for {self.connection_id}")
