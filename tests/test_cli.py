"""Tests for the command-line interface."""

import json
from contextlib import contextmanager

import pytest
from click.testing import CliRunner

from infragraph import __version__
from infragraph.cli.main import cli
from infragraph.config import Settings
from infragraph.errors import StoreUnavailableError
from infragraph.store.memory import InMemoryGraphStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def plan(tmp_path):
    path = tmp_path / "plan.json"
    path.write_text(
        json.dumps(
            {
                "resource": {
                    "aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}},
                    "aws_subnet": {"a": {"vpc_id": "${aws_vpc.main.id}"}},
                    "aws_iam_role": {"app": {"name": "app-role"}},
                }
            }
        )
    )
    return path


@pytest.fixture
def dangling_plan(tmp_path):
    path = tmp_path / "dangling.yml"
    path.write_text("resources:\n  - type: aws_subnet\n    name: a\n    arguments:\n      vpc_id: aws_vpc.gone.id\n")
    return path


class TestCli:
    """Tests for the infragraph command group."""

    def test_version(self, runner):
        """Test --version."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_classify(self, runner):
        """Test classify prints provider and identity class."""
        result = runner.invoke(cli, ["classify", "aws_iam_role", "unknown_widget"])
        assert result.exit_code == 0
        assert "IDENTITY_RESOURCE" in result.output
        assert "UNKNOWN" in result.output

    def test_info(self, runner, plan):
        """Test info prints counts."""
        result = runner.invoke(cli, ["info", str(plan)])
        assert result.exit_code == 0
        assert "Nodes: 3" in result.output
        assert "REFERENCES" in result.output

    def test_info_resource_relationships(self, runner, plan):
        """Test info lists the relationships of one resource."""
        result = runner.invoke(cli, ["info", str(plan), "--resource", "aws_vpc.main"])
        assert result.exit_code == 0
        assert "Relationships of aws_vpc.main" in result.output
        assert "aws_subnet.a" in result.output

    def test_info_unknown_resource(self, runner, plan):
        """Test info with an unknown resource id is an error."""
        result = runner.invoke(cli, ["info", str(plan), "-r", "aws_vpc.nope"])
        assert result.exit_code != 0
        assert "Unknown resource" in result.output

    def test_missing_config(self, runner, plan, tmp_path):
        """Test a missing config file is an error."""
        result = runner.invoke(cli, ["--config", str(tmp_path / "nope.yml"), "info", str(plan)])
        assert result.exit_code != 0
        assert "Config not found" in result.output


class TestValidate:
    """Tests for validate."""

    def test_passes(self, runner, plan):
        """Test a clean plan validates."""
        result = runner.invoke(cli, ["validate", str(plan)])
        assert result.exit_code == 0
        assert "Validation passed" in result.output

    def test_dangling_only_fails_in_strict_mode(self, runner, dangling_plan):
        """Test dangling references are warnings unless strict."""
        assert runner.invoke(cli, ["validate", str(dangling_plan)]).exit_code == 0
        result = runner.invoke(cli, ["validate", "--strict", str(dangling_plan)])
        assert result.exit_code == 1
        assert "strict mode" in result.output

    def test_syntax_diagnostics_fail(self, runner, tmp_path):
        """Test parser diagnostics fail validation."""
        path = tmp_path / "bad.yml"
        path.write_text("diagnostics:\n  - 'main.tf:1: unexpected EOF'\n")
        result = runner.invoke(cli, ["validate", str(path)])
        assert result.exit_code == 1


class TestBuild:
    """Tests for build."""

    def test_build_json(self, runner, plan):
        """Test a build into the memory store with JSON output."""
        result = runner.invoke(cli, ["build", str(plan), "--json", "--source", "ci"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["merge"]["status"] == "succeeded"
        assert data["merge"]["source_tag"] == "ci"
        assert data["merge"]["nodes_written"] == 3
        assert data["graph"]["relationship_kinds"] == {"REFERENCES": 1}

    def test_build_table(self, runner, plan):
        """Test the human-readable report."""
        result = runner.invoke(cli, ["build", str(plan), "--mode", "rebuild"])
        assert result.exit_code == 0
        assert "succeeded" in result.output

    def test_merge_failure_exits_nonzero(self, runner, plan, tmp_path, monkeypatch):
        """Test a failed merge exits 1 and reports the store diagnostic."""

        class DownStore(InMemoryGraphStore):
            @contextmanager
            def transaction(self):
                raise StoreUnavailableError("connection refused")
                yield

        monkeypatch.setattr(Settings, "open_store", lambda self, password=None: DownStore())
        config = tmp_path / "infragraph.yml"
        config.write_text("retry:\n  max_attempts: 1\n")
        result = runner.invoke(cli, ["--config", str(config), "build", str(plan), "--json"])
        assert result.exit_code == 1
        assert '"status": "failed"' in result.output
        assert "STORE_UNAVAILABLE" in result.output
