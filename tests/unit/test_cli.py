"""
Unit tests for the fieldsync CLI interface.
"""

import logging

import pytest
import yaml
from click.testing import CliRunner

from fieldsync.cli import handle_errors, main
from fieldsync.config import FieldSyncConfig
from fieldsync.exceptions import SourceUnavailableError


@pytest.fixture
def runner():
    """Click test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Commands configure logging; undo it after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestCLIMain:
    """Test main CLI functionality."""

    def test_cli_help(self, runner):
        """Test CLI help output."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "keep field schemas in step with spreadsheet sources" in result.output
        for command in ("init", "validate-config", "scan", "diff", "sync", "show", "watch"):
            assert command in result.output

    def test_cli_version(self, runner):
        """Test CLI version output."""
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestInitCommand:
    """Test the init command."""

    def test_init_creates_config(self, runner, tmp_path):
        """Test that init writes a loadable configuration."""
        output = tmp_path / "fieldsync.yaml"
        result = runner.invoke(main, ["init", "-o", str(output)])

        assert result.exit_code == 0
        assert "Configuration file created" in result.output
        config = FieldSyncConfig.from_yaml(output)
        assert {c.connection_id for c in config.connections} == {"contacts", "contacts_local"}

    def test_init_keeps_existing_file(self, runner, tmp_path):
        """Test that an existing file is kept unless confirmed."""
        output = tmp_path / "fieldsync.yaml"
        output.write_text("service_name: mine\n")

        result = runner.invoke(main, ["init", "-o", str(output)], input="n\n")

        assert result.exit_code == 0
        assert output.read_text() == "service_name: mine\n"


class TestValidateConfigCommand:
    """Test the validate-config command."""

    def test_valid_config(self, runner, config_file):
        """Test validating a consistent configuration."""
        result = runner.invoke(main, ["validate-config", "-c", config_file])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert "local_csv" in result.output

    def test_invalid_config(self, runner, tmp_path, sample_config_data):
        """Test that inconsistent configuration fails."""
        sample_config_data["connections"][0]["source"] = "nope"
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(sample_config_data))

        result = runner.invoke(main, ["validate-config", "-c", str(path)])

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestSchemaCommands:
    """Test scan, diff, sync and show against a CSV source."""

    def test_scan(self, runner, config_file):
        """Test listing the source columns."""
        result = runner.invoke(main, ["scan", "-c", config_file, "--connection", "contacts"])

        assert result.exit_code == 0
        assert "Email" in result.output
        assert "phone" in result.output

    def test_scan_unknown_connection(self, runner, config_file):
        """Test scanning a connection that is not configured."""
        result = runner.invoke(main, ["scan", "-c", config_file, "--connection", "orders"])

        assert result.exit_code == 1
        assert "Connection 'orders' not found" in result.output

    def test_scan_missing_file(self, runner, tmp_path, sample_config_data):
        """Test that a missing CSV file is reported."""
        sample_config_data["connections"][0]["source_id"] = str(tmp_path / "gone.csv")
        path = tmp_path / "missing.yaml"
        path.write_text(yaml.safe_dump(sample_config_data))

        result = runner.invoke(main, ["scan", "-c", str(path), "--connection", "contacts"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_diff_first_sync(self, runner, config_file):
        """Test diffing a connection that was never saved."""
        result = runner.invoke(main, ["diff", "-c", config_file, "--connection", "contacts"])

        assert result.exit_code == 0
        assert "First sync" in result.output

    def test_sync_preview_only(self, runner, config_file):
        """Test syncing without saving."""
        result = runner.invoke(main, ["sync", "-c", config_file, "--connection", "contacts"])

        assert result.exit_code == 0
        assert "Preview of contacts" in result.output
        assert "Memory store" in result.output

    def test_sync_and_save(self, runner, config_file):
        """Test syncing and saving the seeded schema."""
        result = runner.invoke(
            main, ["sync", "-c", config_file, "--connection", "contacts", "--save"]
        )

        assert result.exit_code == 0
        assert "Schema saved (version 1)" in result.output

    def test_show_unsaved(self, runner, config_file):
        """Test that showing a never saved schema is an error."""
        result = runner.invoke(main, ["show", "-c", config_file, "--connection", "contacts"])

        assert result.exit_code == 1
        assert "No canonical schema stored" in result.output

    def test_setup_store_needs_postgres(self, runner, config_file):
        """Test that setup-store refuses the memory backend."""
        result = runner.invoke(main, ["setup-store", "-c", config_file])

        assert result.exit_code == 1
        assert "postgres store backend" in result.output

    def test_watch_needs_event_backend(self, runner, config_file):
        """Test that watch needs an event backend."""
        result = runner.invoke(main, ["watch", "-c", config_file])

        assert result.exit_code == 1
        assert "No event backend" in result.output


class TestHandleErrors:
    """Test the error handling decorator."""

    def test_hint_for_retryable_error(self, capsys):
        """Test that retryable errors print a hint and exit 1."""
        @handle_errors
        def failing():
            raise SourceUnavailableError("Source down", source_id="sheet-123", attempts=4)

        with pytest.raises(SystemExit) as exc_info:
            failing()

        assert exc_info.value.code == 1
        output = capsys.readouterr().out
        assert "Source down" in output
        assert "Try again" in output

    def test_success_passes_through(self):
        """Test that return values are passed through."""
        @handle_errors
        def ok():
            return 42

        assert ok() == 42
