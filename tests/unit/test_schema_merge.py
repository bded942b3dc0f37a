"""
Unit tests for preview building and field matching.
"""

import pytest

from fieldsync.exceptions import ValidationError
from fieldsync.schema.diff import diff_columns
from fieldsync.schema.fields import (
    ChangeType,
    FieldDefinition,
    FieldType,
    MergedColumn,
)
from fieldsync.schema.identity import column_id_for
from fieldsync.schema.merge import FieldMatcher, MatchKind, build_preview

from tests.conftest import make_columns


def _preview(canonical, columns, working=None, **kwargs):
    diff = diff_columns(canonical, columns)
    return build_preview(
        diff.merged_columns,
        canonical if working is None else working,
        diff.rename_map,
        **kwargs,
    )


@pytest.fixture
def name_email():
    return [
        FieldDefinition(id="a", name="Name", type=FieldType.TEXT, description="Full name"),
        FieldDefinition(id="b", name="Email", type=FieldType.EMAIL, description="Work email"),
    ]


class TestPreviewScenarios:
    """Test previews for added, reordered and removed columns."""

    def test_added_column(self, name_email):
        """Test that a new column is appended as an active text field."""
        preview = _preview(name_email, make_columns("Name", "Email", "Phone"))

        assert [f.name for f in preview] == ["Name", "Email", "Phone"]
        assert all(f.active for f in preview)
        phone = preview.fields[2]
        assert phone.type is FieldType.TEXT
        assert phone.id == column_id_for("Phone")

    def test_reordered_columns(self, name_email):
        """Test that stored settings follow their columns to new positions."""
        preview = _preview(name_email, make_columns("Email", "Name"))

        assert [f.id for f in preview] == ["b", "a"]
        assert preview.fields[0].type is FieldType.EMAIL
        assert preview.fields[0].description == "Work email"
        assert preview.fields[0].original_index == 0
        assert preview.fields[1].original_index == 1

    def test_removed_column(self, contact_fields):
        """Test that a missing column becomes an inactive removed row at the end."""
        preview = _preview(contact_fields, make_columns("Name", "Phone"))

        assert [f.id for f in preview] == ["f-name", "f-phone", "f-email"]
        removed = preview.fields[-1]
        assert removed.is_removed
        assert removed.active is False
        assert removed.keep is True
        assert removed.type is FieldType.EMAIL
        assert removed.description == "Work email"
        assert [f.id for f in preview.active_fields] == ["f-name", "f-phone"]

    def test_removed_column_not_retained(self, contact_fields):
        """Test that retain_removed=False marks removed rows for dropping."""
        preview = _preview(contact_fields, make_columns("Name", "Phone"), retain_removed=False)

        assert preview.fields[-1].keep is False

    def test_renamed_column_keeps_settings(self, name_email):
        """Test that a renamed column keeps its id, type and description."""
        preview = _preview(name_email, make_columns("Name", "E-mail"))

        renamed = preview.get("b")
        assert renamed.name == "E-mail"
        assert renamed.type is FieldType.EMAIL
        assert renamed.description == "Work email"
        assert len(preview) == 2

    def test_samples_attached(self, name_email):
        """Test that live rows carry the scan's sample values."""
        columns = make_columns("Name", "Email", samples={"Name": ["Ada"]})
        preview = _preview(name_email, columns)

        assert preview.get("a").sample_data == ["Ada"]


class TestPreviewIdentity:
    """Test id guarantees of the preview."""

    def test_deterministic(self, contact_fields):
        """Test that identical inputs give identical previews, minted ids included."""
        columns = make_columns("Name", "Mobile", "Notes")

        first = _preview(contact_fields, columns)
        second = _preview(contact_fields, columns)

        assert first.to_list() == second.to_list()

    def test_ids_unique(self, contact_fields):
        """Test that ids in a busy preview are unique."""
        working = contact_fields + [FieldDefinition(id="custom-1", name="Notes")]
        preview = _preview(contact_fields, make_columns("Phone", "Fax", "Name", "Name"), working=working)

        assert len(set(preview.ids)) == len(preview.ids)

    def test_retired_ids_not_minted(self, name_email):
        """Test that a retired id is never given to a new column."""
        retired = column_id_for("Phone")
        preview = _preview(name_email, make_columns("Name", "Email", "Phone"), retired_ids=[retired])

        assert preview.fields[2].id != retired
        assert retired not in preview.ids

    def test_new_column_does_not_take_existing_id(self):
        """Test that a minted id avoids ids of working fields."""
        working = [FieldDefinition(id=column_id_for("Phone"), name="Mobile", original_index=0)]
        diff = diff_columns(working, make_columns("Mobile", "Phone"))
        preview = build_preview(diff.merged_columns, working, diff.rename_map)

        assert preview.get(column_id_for("Phone")).name == "Mobile"
        assert len(set(preview.ids)) == 2

    def test_old_name_does_not_steal_renamed_field(self):
        """Test that a new column named like a field's old header gets its own field."""
        stored = [
            FieldDefinition(
                id=column_id_for("Phone"),
                name="Mobile",
                type=FieldType.PHONE,
                description="cell",
                original_index=0,
            )
        ]
        preview = _preview(stored, make_columns("Phone", "Mobile"))

        mobile = [f for f in preview if f.name == "Mobile"][0]
        phone = [f for f in preview if f.name == "Phone"][0]
        assert mobile.id == stored[0].id
        assert mobile.type is FieldType.PHONE
        assert mobile.description == "cell"
        assert phone.id != stored[0].id
        assert phone.type is FieldType.TEXT
        assert phone.description == ""


class TestPreviewReturningColumns:
    """Test columns that leave the source and come back."""

    def test_returning_column_is_reactivated(self, contact_fields):
        """Test that a field switched off by a sync is switched back on."""
        gone = _preview(contact_fields, make_columns("Name", "Phone")).get("f-email")
        assert gone.active is False
        assert gone.auto_deactivated is True

        saved = [f.copy(is_removed=False, keep=True) for f in contact_fields if f.id != "f-email"]
        saved.append(gone.copy(is_removed=False, keep=True))
        back = _preview(saved, make_columns("Name", "Email", "Phone")).get("f-email")

        assert back.active is True
        assert back.auto_deactivated is False
        assert back.description == "Work email"

    def test_user_deactivated_field_stays_off(self, contact_fields):
        """Test that a field the user switched off stays off when its column returns."""
        fields = [f.copy(active=f.id != "f-email") for f in contact_fields]

        gone = _preview(fields, make_columns("Name", "Phone")).get("f-email")
        assert gone.auto_deactivated is False

        saved = [f for f in fields if f.id != "f-email"] + [gone.copy(is_removed=False, keep=True)]
        back = _preview(saved, make_columns("Name", "Email", "Phone")).get("f-email")

        assert back.active is False


class TestPreviewCustomFields:
    """Test custom and unsaved rows."""

    def test_custom_fields_after_live_rows(self, name_email):
        """Test that custom fields sit between live and removed rows."""
        working = name_email + [FieldDefinition(id="custom-1", name="Notes")]
        preview = _preview(name_email, make_columns("Name"), working=working)

        assert [f.id for f in preview] == ["a", "custom-1", "b"]
        assert not preview.get("custom-1").is_removed

    def test_custom_field_never_matches_column(self, name_email):
        """Test that a custom field is not attached to a same-named column."""
        working = name_email + [FieldDefinition(id="custom-1", name="Notes")]
        preview = _preview(name_email, make_columns("Name", "Email", "Notes"), working=working)

        notes = [f for f in preview if f.name == "Notes"]
        assert len(notes) == 2
        assert {f.id for f in notes} == {"custom-1", column_id_for("Notes")}

    def test_removed_stub_without_settings(self, contact_fields):
        """Test that a removed column with no working field is dropped on save."""
        diff = diff_columns(contact_fields, make_columns("Name"))
        preview = build_preview(diff.merged_columns, [], diff.rename_map)

        stubs = preview.removed_fields
        assert {f.id for f in stubs} == {"f-email", "f-phone"}
        assert all(f.keep is False for f in stubs)

    def test_unsaved_field_whose_column_vanished(self):
        """Test that a working row no column matches is shown as removed and dropped."""
        working = [FieldDefinition(id=column_id_for("Temp"), name="Temp", original_index=0)]
        diff = diff_columns([], make_columns("Name"))
        preview = build_preview(diff.merged_columns, working, diff.rename_map)

        vanished = preview.get(column_id_for("Temp"))
        assert vanished.is_removed
        assert vanished.keep is False

    def test_bootstrap_infers_types(self):
        """Test that types are inferred only when asked to."""
        columns = make_columns("Email", samples={"Email": ["ada@example.com"]})
        diff = diff_columns([], columns)

        inferred = build_preview(diff.merged_columns, [], infer_types=True)
        plain = build_preview(diff.merged_columns, [], infer_types=False)

        assert inferred.fields[0].type is FieldType.EMAIL
        assert plain.fields[0].type is FieldType.TEXT

    def test_none_inputs_rejected(self):
        """Test that missing inputs are a validation error."""
        with pytest.raises(ValidationError):
            build_preview(None, [])


class TestFieldMatcher:
    """Test the single-use matcher."""

    def _column(self, name, field_id=None):
        return MergedColumn(name=name, position=0, status=ChangeType.UNCHANGED, field_id=field_id)

    def test_match_by_id_first(self):
        """Test that an id match wins over a name match."""
        working = [FieldDefinition(id="x", name="Email"), FieldDefinition(id="y", name="Other")]
        matcher = FieldMatcher(working, {})

        found = matcher.match(self._column("Email", field_id="y"))
        assert found.kind == MatchKind.ID
        assert found.field.id == "y"

    def test_match_by_name(self):
        """Test name matching when no id is known."""
        matcher = FieldMatcher([FieldDefinition(id="x", name="Email")], {})

        found = matcher.match(self._column(" email"))
        assert found.kind == MatchKind.NAME

    def test_match_by_rename(self):
        """Test matching through the rename map."""
        matcher = FieldMatcher([FieldDefinition(id="x", name="Email")], {"Email": "E-mail"})

        found = matcher.match(self._column("E-mail"))
        assert found.kind == MatchKind.RENAME
        assert found.field.id == "x"

    def test_field_used_once(self):
        """Test that a matched field leaves the pool."""
        matcher = FieldMatcher([FieldDefinition(id="x", name="Email")], {})

        assert matcher.match(self._column("Email")).kind == MatchKind.NAME
        assert matcher.match(self._column("Email")).kind == MatchKind.NEW
        assert matcher.remaining() == []

    def test_custom_fields_not_in_pool(self):
        """Test that custom fields are never matched."""
        matcher = FieldMatcher([FieldDefinition(id="custom-1", name="Notes")], {})

        assert matcher.match(self._column("Notes")).kind == MatchKind.NEW

    def test_reserved_field_not_matched_by_name(self):
        """Test that a field the diff gave to another column is not taken by name."""
        matcher = FieldMatcher([FieldDefinition(id="x", name="Email")], {}, reserved_ids={"x"})

        assert matcher.match(self._column("Email")).kind == MatchKind.NEW
        found = matcher.match(self._column("E-mail", field_id="x"))
        assert found.kind == MatchKind.ID
        assert found.field.id == "x"

    def test_hash_of_name_is_not_an_id_match(self):
        """Test that a field whose id hashes the column name is matched by name only."""
        matcher = FieldMatcher([FieldDefinition(id=column_id_for("Phone"), name="Mobile")], {})

        assert matcher.match(self._column("Phone")).kind == MatchKind.NEW
