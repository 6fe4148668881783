"""Tests for the stackops command-line interface."""

from __future__ import annotations

import functools
import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from aws_mock import FakeAws, FakePopen
from stackops import cli as cli_module
from stackops.build import PackerBuild
from stackops.cli import cli
from stackops.main import _HANDLER_MARKER

TEMPLATE = """\
Parameters:
  EnvName:
    Type: String
  Size:
    Type: Number
    Default: 1
Resources:
  Handle:
    Type: AWS::CloudFormation::WaitConditionHandle
"""

SPEC = """\
name: app
stacks:
  - id: db
  - id: web
"""


@pytest.fixture
def spec_dir(tmp_path: Path) -> Path:
    (tmp_path / "stackops.yaml").write_text(SPEC, encoding="utf-8")
    (tmp_path / "db.yml").write_text(TEMPLATE, encoding="utf-8")
    (tmp_path / "web.yml").write_text(TEMPLATE, encoding="utf-8")
    return tmp_path


@pytest.fixture
def fake_aws(aws: FakeAws, monkeypatch: pytest.MonkeyPatch) -> FakeAws:
    """Route every client the CLI builds to the fakes."""
    monkeypatch.setattr(cli_module, "ClientProvider", lambda region: aws)
    monkeypatch.setenv("STACKOPS_REGION", "us-east-1")
    monkeypatch.setenv("STACKOPS_ENV_NAME", "qa")
    monkeypatch.setenv("STACKOPS_WAITER_DELAY", "0")
    return aws


@pytest.fixture(autouse=True)
def remove_cli_log_handlers():
    """Handlers installed by a command point at the runner's closed streams."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)


def invoke(spec_dir: Path, *args: str):
    runner = CliRunner()
    return runner.invoke(cli, ["--spec", str(spec_dir), "--log-level", "WARNING", *args])


class TestStackCommands:
    """Tests for create, update, delete and status."""

    def test_create_is_dry_run_by_default(self, fake_aws: FakeAws, spec_dir: Path) -> None:
        """Without --no-dry-run nothing is created."""
        result = invoke(spec_dir, "create")

        assert result.exit_code == 0, result.output
        assert "Create finished" in result.output
        assert fake_aws.cloudformation.calls_to("create_stack") == []

    def test_create_update_delete(self, fake_aws: FakeAws, spec_dir: Path) -> None:
        """A full lifecycle through the command line."""
        result = invoke(spec_dir, "--no-dry-run", "create", "--param", "web.Size=3")

        assert result.exit_code == 0, result.output
        assert sorted(fake_aws.cloudformation.stacks) == ["qa-app-db", "qa-app-web"]
        assert fake_aws.cloudformation.stacks["qa-app-web"].parameters["Size"] == "3"
        assert fake_aws.cloudformation.stacks["qa-app-db"].parameters == {"EnvName": "qa"}

        result = invoke(spec_dir, "--no-dry-run", "update", "web")

        assert result.exit_code == 0, result.output
        assert "web: no changes" in result.output

        result = invoke(spec_dir, "--no-dry-run", "update", "web", "--param", "Size=5")

        assert result.exit_code == 0, result.output
        assert "web:" in result.output
        assert fake_aws.cloudformation.stacks["qa-app-web"].parameters["Size"] == "5"

        result = invoke(spec_dir, "--no-dry-run", "delete")

        assert result.exit_code == 0, result.output
        assert fake_aws.cloudformation.stacks == {}

    def test_status_is_json(self, fake_aws: FakeAws, spec_dir: Path) -> None:
        """Status prints the deployment report as JSON."""
        fake_aws.cloudformation.add_stack("qa-app-db", "CREATE_COMPLETE")

        result = invoke(spec_dir, "status")

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["deployment"] == "app"
        assert [stack["status"] for stack in report["stacks"]] == [
            "CREATE_COMPLETE",
            "DOES_NOT_EXIST",
        ]

    def test_bad_param(self, fake_aws: FakeAws, spec_dir: Path) -> None:
        """Parameters must be KEY=VALUE."""
        result = invoke(spec_dir, "create", "--param", "Size")

        assert result.exit_code == 2
        assert "expected KEY=VALUE" in result.output

    def test_unknown_stack(self, fake_aws: FakeAws, spec_dir: Path) -> None:
        """Operation errors exit with 1 and a one-line message."""
        result = invoke(spec_dir, "delete", "cache")

        assert result.exit_code == 1
        assert "Delete failed: No stack cache" in result.output

    def test_missing_region(self, aws: FakeAws, spec_dir: Path) -> None:
        """Configuration problems are reported before anything is called."""
        result = invoke(spec_dir, "status")

        assert result.exit_code == 1
        assert "Loading deployment failed" in result.output
        assert "STACKOPS_REGION" in result.output


class TestImageCommand:
    """Tests for the image command."""

    def test_dry_run(self, tmp_path: Path) -> None:
        """A dry run builds nothing and prints no artifact."""
        template = tmp_path / "packer.json"
        template.write_text('{"builders": []}', encoding="utf-8")

        result = invoke(tmp_path, "image", str(template), "--var", "region=us-east-1")

        assert result.exit_code == 0, result.output
        assert result.output.strip() == ""

    def test_dry_run_setting_from_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """STACKOPS_DRY_RUN=false runs the build without any region configured."""
        template = tmp_path / "packer.hcl"
        template.write_text('source "amazon-ebs" "web" {}\n', encoding="utf-8")
        popen = FakePopen(lines=["us-east-1: ami-0abc"])
        monkeypatch.setattr(cli_module, "PackerBuild", functools.partial(PackerBuild, popen=popen))
        monkeypatch.setenv("STACKOPS_DRY_RUN", "false")

        result = invoke(tmp_path, "image", str(template))

        assert result.exit_code == 0, result.output
        assert result.output.strip() == "ami-0abc"
        assert popen.commands == [["packer", "build", str(template)]]

    def test_dry_run_option_wins_over_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """--dry-run keeps the build from running whatever the environment says."""
        template = tmp_path / "packer.hcl"
        template.write_text('source "amazon-ebs" "web" {}\n', encoding="utf-8")
        popen = FakePopen(lines=["us-east-1: ami-0abc"])
        monkeypatch.setattr(cli_module, "PackerBuild", functools.partial(PackerBuild, popen=popen))
        monkeypatch.setenv("STACKOPS_DRY_RUN", "false")

        result = invoke(tmp_path, "--dry-run", "image", str(template))

        assert result.exit_code == 0, result.output
        assert popen.commands == []

    def test_version(self) -> None:
        """--version prints the CLI version."""
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output
