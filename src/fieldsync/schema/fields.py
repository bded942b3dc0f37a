"""
Field schema data model for fieldsync.

Defines the field definitions users edit, the live columns a scanner
observes, and the change records produced when the two are compared.
"""

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from ..exceptions import ValidationError


CUSTOM_ID_PREFIX = "custom-"
COLUMN_ID_PREFIX = "col-"


class FieldType(str, Enum):
    """Types a field can be exposed as."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    EMAIL = "email"
    URL = "url"
    PHONE = "phone"
    SINGLE_SELECT = "single-select"
    MULTI_SELECT = "multi-select"

    @property
    def is_select(self) -> bool:
        """Select types need a non-empty option list."""
        return self in (FieldType.SINGLE_SELECT, FieldType.MULTI_SELECT)

    @classmethod
    def parse(cls, value: Any) -> "FieldType":
        """Parse a type value, accepting the labels older schemas stored."""
        if isinstance(value, cls):
            return value
        if value is None or value == "":
            return cls.TEXT

        key = str(value).strip().lower()
        key = _TYPE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unknown field type: {value!r}") from None


_TYPE_ALIASES = {
    "tel": "phone",
    "dropdown": "single-select",
    "select": "single-select",
    "single_select": "single-select",
    "checkbox": "multi-select",
    "multi_select": "multi-select",
    "bool": "boolean",
    "string": "text",
}


class ChangeType(str, Enum):
    """Classification of one column between the stored schema and the source."""

    ADDED = "added"
    REMOVED = "removed"
    RENAMED = "renamed"
    REORDERED = "reordered"
    UNCHANGED = "unchanged"


def normalize_name(name: Optional[str], case_sensitive: bool = False) -> str:
    """Key used to compare column names."""
    key = (name or "").strip()
    return key if case_sensitive else key.lower()


@dataclass
class FieldDefinition:
    """A single field of a connection's schema."""

    id: str
    name: str
    type: FieldType = FieldType.TEXT
    description: str = ""
    options: List[str] = field(default_factory=list)
    active: bool = True
    original_index: int = -1
    sample_data: List[str] = field(default_factory=list)
    # Set when a sync deactivated the field because its column vanished
    auto_deactivated: bool = False

    # Preview-only markers, never persisted
    is_removed: bool = False
    keep: bool = True

    def __post_init__(self):
        self.type = FieldType.parse(self.type)
        self.options = [str(o) for o in (self.options or [])]
        self.sample_data = [str(s) for s in (self.sample_data or [])]
        self.active = self.active is True
        self.auto_deactivated = self.auto_deactivated is True
        if self.original_index is None:
            self.original_index = -1

    @property
    def is_custom(self) -> bool:
        """Check if this field was added by hand rather than scanned."""
        return self.id.startswith(CUSTOM_ID_PREFIX)

    def copy(self, **changes: Any) -> "FieldDefinition":
        """Return an independent copy, optionally with some attributes replaced."""
        duplicate = replace(
            self,
            options=list(self.options),
            sample_data=list(self.sample_data),
        )
        for key, value in changes.items():
            setattr(duplicate, key, value)
        duplicate.__post_init__()
        return duplicate

    def validate(self) -> List[str]:
        """Return the problems that would prevent this field from being saved."""
        problems = []
        if not self.id:
            problems.append("Field has no id")
        if not self.name or not self.name.strip():
            problems.append(f"Field '{self.id}' has an empty name")
        if self.type.is_select and not self.options:
            problems.append(
                f"Field '{self.name}' is {self.type.value} but has no options"
            )
        return problems

    def to_dict(self, persist: bool = True) -> Dict[str, Any]:
        """Serialize the field. Persisted form drops transient data."""
        data = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "options": list(self.options),
            "active": self.active,
            "original_index": self.original_index,
            "auto_deactivated": self.auto_deactivated,
        }
        if not persist:
            data["sample_data"] = list(self.sample_data)
            data["is_removed"] = self.is_removed
            data["keep"] = self.keep
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDefinition":
        """Build a field from a stored dict (snake_case or camelCase keys)."""
        if not isinstance(data, dict):
            raise ValidationError(f"Field definition must be a mapping, got {type(data).__name__}")
        if not data.get("id"):
            raise ValidationError(f"Field definition without id: {data!r}")

        original_index = data.get("original_index", data.get("originalIndex", -1))
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            type=FieldType.parse(data.get("type")),
            description=data.get("description") or "",
            options=list(data.get("options") or []),
            active=data.get("active", True) is True,
            original_index=original_index if isinstance(original_index, int) else -1,
            sample_data=list(data.get("sample_data", data.get("sampleData")) or []),
            auto_deactivated=data.get("auto_deactivated", data.get("autoDeactivated", False)) is True,
            is_removed=bool(data.get("is_removed", data.get("isRemoved", False))),
            keep=bool(data.get("keep", True)),
        )


@dataclass
class LiveColumn:
    """A column as observed in the source during a scan."""

    name: str
    position: int
    sample_data: List[str] = field(default_factory=list)
    inferred_type: Optional[FieldType] = None


@dataclass
class ColumnChange:
    """One classified difference between the stored schema and the source."""

    type: ChangeType
    name: str
    old_name: Optional[str] = None
    index: Optional[int] = None
    new_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value, "name": self.name}
        if self.old_name is not None:
            data["old_name"] = self.old_name
        if self.index is not None:
            data["index"] = self.index
        if self.new_index is not None:
            data["new_index"] = self.new_index
        return data

    def describe(self) -> str:
        """Human readable one-liner."""
        if self.type == ChangeType.RENAMED:
            return f"renamed '{self.old_name}' -> '{self.name}'"
        if self.type == ChangeType.REORDERED:
            return f"moved '{self.name}' from {self.index} to {self.new_index}"
        return f"{self.type.value} '{self.name}'"


@dataclass
class MergedColumn:
    """A row of the ordered merged view the diff hands to the merge."""

    name: str
    position: int
    status: ChangeType
    field_id: Optional[str] = None
    old_name: Optional[str] = None
    original_index: int = -1
    sample_data: List[str] = field(default_factory=list)
    inferred_type: Optional[FieldType] = None
    is_removed: bool = False


@dataclass
class CanonicalSchema:
    """The persisted, versioned field schema of one connection."""

    connection_id: str
    fields: List[FieldDefinition] = field(default_factory=list)
    version: Optional[str] = None
    retired_ids: List[str] = field(default_factory=list)
    source_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return not self.fields

    @property
    def ids(self) -> List[str]:
        return [f.id for f in self.fields]

    def get(self, field_id: str) -> Optional[FieldDefinition]:
        for item in self.fields:
            if item.id == field_id:
                return item
        return None

    def copy_fields(self) -> List[FieldDefinition]:
        return [f.copy() for f in self.fields]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "source_id": self.source_id,
            "version": self.version,
            "fields": [f.to_dict(persist=True) for f in self.fields],
            "retired_ids": list(self.retired_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalSchema":
        return cls(
            connection_id=data["connection_id"],
            fields=[FieldDefinition.from_dict(f) for f in data.get("fields") or []],
            version=data.get("version"),
            retired_ids=list(data.get("retired_ids") or []),
            source_id=data.get("source_id"),
        )

    def __deepcopy__(self, memo):
        return CanonicalSchema(
            connection_id=self.connection_id,
            fields=self.copy_fields(),
            version=self.version,
            retired_ids=list(self.retired_ids),
            source_id=self.source_id,
            updated_at=copy.copy(self.updated_at),
        )


@dataclass
class PreviewSchema:
    """Ephemeral result shown to the user before saving."""

    fields: List[FieldDefinition] = field(default_factory=list)

    def __iter__(self) -> Iterator[FieldDefinition]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    @property
    def ids(self) -> List[str]:
        return [f.id for f in self.fields]

    @property
    def active_fields(self) -> List[FieldDefinition]:
        return [f for f in self.fields if f.active and not f.is_removed]

    @property
    def removed_fields(self) -> List[FieldDefinition]:
        return [f for f in self.fields if f.is_removed]

    def get(self, field_id: str) -> Optional[FieldDefinition]:
        for item in self.fields:
            if item.id == field_id:
                return item
        return None

    def to_list(self, persist: bool = False) -> List[Dict[str, Any]]:
        return [f.to_dict(persist=persist) for f in self.fields]
