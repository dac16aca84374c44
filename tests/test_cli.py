"""Tests for CLI."""

import json

import pytest
from click.testing import CliRunner

from trustguard.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


class TestCLI:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "TrustGuard" in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_assess(self, runner):
        result = runner.invoke(cli, ["assess", "--trust", "0.2", "--verified-ago", "0",
                                     "--device", "untrusted", "--geo-anomalous"])
        assert result.exit_code == 0
        assert "Risk Assessment" in result.output
        assert "70.00" in result.output
        assert "MEDIUM" in result.output

    def test_assess_quarantine_json(self, runner):
        result = runner.invoke(cli, ["assess", "--trust", "1.0", "--verified-ago", "0",
                                     "--device", "quarantined", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["level"] == "high"

    def test_assess_rejects_bad_trust(self, runner):
        result = runner.invoke(cli, ["assess", "--trust", "1.5"])
        assert result.exit_code != 0

    def test_policy(self, runner):
        result = runner.invoke(cli, ["policy"])
        assert result.exit_code == 0
        assert "Policy Summary" in result.output
        assert "zero-trust-base@1" in result.output

    def test_policy_file_and_context(self, runner, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(
            "policies:\n"
            "  - policy_id: office-only\n"
            "    name: Office Only\n"
            "    rules:\n"
            "      - rule_id: allow-office\n"
            "        effect: allow\n"
            "        conditions:\n"
            "          - {field: network_segment, operator: eq, value: office}\n"
        )
        result = runner.invoke(cli, ["policy", "--file", str(path),
                                     "--context", '{"network_segment": "office"}', "--export"])
        assert result.exit_code == 0
        assert "Loaded 1 policies" in result.output
        assert "office-only@1: allow (rule: allow-office)" in result.output
        assert "Exported YAML" in result.output

    def test_demo(self, runner):
        result = runner.invoke(cli, ["demo"])
        assert result.exit_code == 0
        assert "Demo complete" in result.output
        assert "GRANTED" in result.output
        assert "DENIED" in result.output
