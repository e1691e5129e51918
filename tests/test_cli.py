"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from decimal import Decimal
from unittest.mock import patch

from typer.testing import CliRunner

from conftest import ScriptedAdapter
from spend_gateway.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from spend_gateway.core.gateway import GatewayOrchestrator
from spend_gateway.providers.base import Done, ProviderErrorEvent, TokenChunk, UsageReport
from spend_gateway.storage.models import UsageEntry
from spend_gateway.storage.repository import (
    UsageRepository,
    initialize_schema,
    insert_usage_entry,
)

runner = CliRunner()


class TestCheckBudget:
    """Test the check-budget command."""

    def test_allow(self):
        result = runner.invoke(app, ["check-budget", "--spend", "2", "--limit", "10"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Verdict: ALLOW" in result.output

    def test_warn_is_non_failing(self):
        """WARN prints the remaining fraction and exits 0."""
        result = runner.invoke(app, ["check-budget", "--spend", "9", "--limit", "10"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Verdict: WARN" in result.output
        assert "Remaining: 10%" in result.output

    def test_deny_fails(self):
        result = runner.invoke(app, ["check-budget", "--spend", "10", "--limit", "10"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Verdict: DENY" in result.output

    def test_disabled_allows(self):
        result = runner.invoke(app, ["check-budget", "-s", "100", "-l", "10", "--disabled"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Verdict: ALLOW" in result.output

    def test_invalid_threshold(self):
        result = runner.invoke(app, ["check-budget", "-s", "1", "-l", "10", "-t", "2"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "alert_threshold" in result.output


class TestDatabaseCommands:
    """Test init, stats and validate-config."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_init(self):
        result = runner.invoke(app, ["init", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_stats_empty(self):
        result = runner.invoke(app, ["stats", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No AI usage recorded yet" in result.output

    def test_stats_with_usage(self):
        """Stats summarize the mirrored entries."""
        initialize_schema(self.db_path)
        for provider, model in [("grok", "grok-2-latest"), ("claude", "claude-3-haiku-20240307")]:
            insert_usage_entry(
                UsageEntry(provider=provider, model=model, tokens=700, cost=Decimal("0.003")),
                self.db_path,
            )

        result = runner.invoke(app, ["stats", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "AI Spend Summary" in result.output
        assert "Requests: 2" in result.output
        assert "$0.006000" in result.output

    def test_validate_config(self):
        path = os.path.join(self.temp_dir, "gateway.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("routing:\n  critique:\n    provider: claude\n    model: claude-3-haiku-20240307\n")

        result = runner.invoke(app, ["validate-config", path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Configuration is valid" in result.output
        assert "critique: claude/claude-3-haiku-20240307" in result.output

    def test_validate_config_invalid(self):
        path = os.path.join(self.temp_dir, "gateway.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("budgets: {}\n")

        result = runner.invoke(app, ["validate-config", path])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output


class TestRunCommand:
    """Test streaming a generation from the CLI."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def scripted_gateway(self, *scripts):
        def from_config(config, ledger=None, policies=None):
            return GatewayOrchestrator(ledger, {"grok": ScriptedAdapter(*scripts)}, config=config)
        return from_config

    @patch('spend_gateway.cli.main.configure_logging')
    def test_run_streams_and_mirrors_usage(self, mock_logging):
        """Text is printed and the entry reaches the SQLite mirror."""
        from_config = self.scripted_gateway(
            [TokenChunk("Bold "), TokenChunk("and bright"), UsageReport(500, 200), Done()]
        )
        with patch.object(GatewayOrchestrator, "from_config", side_effect=from_config):
            result = runner.invoke(app, [
                "run", "stream", "Write a tagline",
                "--project", "p1", "--model", "grok-2-latest", "--db", self.db_path,
            ])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Bold" in result.output
        assert "and bright" in result.output
        assert "Generation Summary" in result.output
        assert "Cost: $0.003000" in result.output

        entries = UsageRepository(self.db_path).get_entries_since()
        assert len(entries) == 1
        assert entries[0].project_id == "p1"
        assert entries[0].cost == Decimal("0.003")

    @patch('spend_gateway.cli.main.configure_logging')
    def test_run_provider_failure(self, mock_logging):
        from_config = self.scripted_gateway([ProviderErrorEvent("auth", "bad key", status=401)])
        with patch.object(GatewayOrchestrator, "from_config", side_effect=from_config):
            result = runner.invoke(app, [
                "run", "stream", "hello", "--project", "p1", "--db", self.db_path,
            ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "provider_error" in result.output

    @patch('spend_gateway.cli.main.configure_logging')
    def test_run_denied_by_persisted_spend(self, mock_logging):
        """Spend restored from the mirror counts toward the project budget."""
        initialize_schema(self.db_path)
        insert_usage_entry(
            UsageEntry(provider="grok", model="grok-2-latest", tokens=1, cost=Decimal("10.00"),
                       project_id="p1"),
            self.db_path,
        )

        result = runner.invoke(app, [
            "run", "research", "Brand brief", "--project", "p1", "--db", self.db_path,
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "budget_exceeded" in result.output
        assert len(UsageRepository(self.db_path).get_entries_since()) == 1

    @patch('spend_gateway.cli.main.configure_logging')
    def test_run_invalid_task_type(self, mock_logging):
        result = runner.invoke(app, [
            "run", "poetry", "hello", "--project", "p1", "--db", self.db_path,
        ])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "invalid_request" in result.output
