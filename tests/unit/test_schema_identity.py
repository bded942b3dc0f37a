"""
Unit tests for field id bookkeeping.
"""

from fieldsync.schema.identity import (
    column_id_for,
    custom_index,
    disambiguate,
    find_duplicate_ids,
    find_duplicate_names,
    mint_column_id,
    next_custom_id,
)


class TestColumnIds:
    """Test deterministic column ids."""

    def test_deterministic(self):
        """Test that the same header always gives the same id."""
        assert column_id_for("Email") == column_id_for("Email")
        assert column_id_for("Email").startswith("col-")

    def test_normalized(self):
        """Test that case and padding do not change the id by default."""
        assert column_id_for(" EMAIL ") == column_id_for("email")

    def test_case_sensitive(self):
        """Test that case matters when names are compared exactly."""
        assert column_id_for("Email", case_sensitive=True) != column_id_for("email", case_sensitive=True)

    def test_disambiguate_free(self):
        """Test that a free candidate is returned unchanged."""
        assert disambiguate("col-a", {"col-b"}) == "col-a"

    def test_disambiguate_taken(self):
        """Test suffixing with the lowest free number."""
        assert disambiguate("col-a", {"col-a", "col-a-2"}) == "col-a-3"

    def test_mint_avoids_retired(self):
        """Test that a retired id is never handed out again."""
        retired = [column_id_for("Phone")]
        minted = mint_column_id("Phone", taken=[], retired=retired)

        assert minted != retired[0]
        assert minted == f"{retired[0]}-2"


class TestCustomIds:
    """Test custom field ids."""

    def test_custom_index(self):
        """Test extracting the number of a custom id."""
        assert custom_index("custom-12") == 12
        assert custom_index("col-12") is None
        assert custom_index("custom-x") is None

    def test_next_custom_id_starts_at_one(self):
        """Test the first custom id."""
        assert next_custom_id([]) == "custom-1"

    def test_next_custom_id_counts_up(self):
        """Test that numbering continues above the highest id in use."""
        assert next_custom_id(["custom-1", "custom-4", "col-x"]) == "custom-5"

    def test_next_custom_id_skips_retired(self):
        """Test that retired custom ids are not reused."""
        assert next_custom_id(["custom-1"], retired=["custom-2"]) == "custom-3"


class TestDuplicates:
    """Test duplicate detection."""

    def test_find_duplicate_ids(self):
        """Test duplicate ids in first-seen order."""
        assert find_duplicate_ids(["b", "a", "b", "c", "a"]) == ["b", "a"]

    def test_find_duplicate_ids_none(self):
        """Test a list without duplicates."""
        assert find_duplicate_ids(["a", "b"]) == []

    def test_find_duplicate_names_normalized(self):
        """Test that names differing only in case count as duplicates."""
        assert find_duplicate_names(["Email", "email ", "Phone"]) == ["email"]

    def test_find_duplicate_names_ignores_blanks(self):
        """Test that blank names are not reported."""
        assert find_duplicate_names(["", " ", "Name"]) == []
