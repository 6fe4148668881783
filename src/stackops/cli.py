"""stackops command-line interface.

Usage:
    stackops --spec deploy/ create                 # Dry run of creating every stack
    stackops --no-dry-run create web --param Size=2
    stackops update --force-secret 'db/.*'         # Rewrite matching secrets
    stackops delete                                # Delete in reverse order
    stackops status                                # JSON status report
    stackops image packer.json --repo org/app      # Build a machine image

Settings not given as options are read from STACKOPS_* environment variables.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from botocore.exceptions import BotoCoreError, ClientError

from .artifacts import ArtifactFetchError, ArtifactSource
from .build import BuildFailed, PackerBuild, image_name, resolve_sha
from .change_preview import ChangePreviewFailed
from .config import Config, ConfigurationError, dry_run_from_env
from .deployment import Deployment, DeploymentError
from .engine import ClientProvider
from .main import setup_logging
from .parameters import ParameterError
from .secrets import SecretBuildError
from .spec_loader import SpecLoadError, load_spec
from .stack import StackOperationError
from .tags import TagError
from .template import TemplateInvalid
from .waiter import WaitFailed

logger = logging.getLogger(__name__)

CLI_VERSION = "0.1.0"

# Errors that end a command with exit code 1 and a one-line message
OPERATION_ERRORS = (
    ConfigurationError,
    SpecLoadError,
    DeploymentError,
    StackOperationError,
    ParameterError,
    TagError,
    SecretBuildError,
    TemplateInvalid,
    ChangePreviewFailed,
    WaitFailed,
    ArtifactFetchError,
    BuildFailed,
    ClientError,
    BotoCoreError,
)


@dataclass
class CliContext:
    """Global options shared by every subcommand."""

    spec_path: Path
    env_name: str | None = None
    region: str | None = None
    dry_run: bool | None = None

    def config(self) -> Config:
        return Config.from_env(region=self.region, env_name=self.env_name, dry_run=self.dry_run)

    def deployment(self) -> Deployment:
        config = self.config()
        spec = load_spec(self.spec_path)
        spec_dir = self.spec_path if self.spec_path.is_dir() else self.spec_path.parent
        return Deployment.from_spec(
            spec, config, spec_dir=spec_dir, clients=ClientProvider(config.region)
        )


def parse_key_values(
    ctx: click.Context, param: click.Parameter, values: Iterable[str]
) -> dict[str, str]:
    """Parse repeated KEY=VALUE options into a dict."""
    parsed: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}")
        parsed[key] = value
    return parsed


def run_operation(description: str, operation: Any) -> Any:
    """Run an operation, turning known failures into a clean exit code 1."""
    try:
        return operation()
    except OPERATION_ERRORS as e:
        logger.debug("%s failed", description, exc_info=True)
        raise click.ClickException(f"{description} failed: {e}") from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="stackops")
@click.option(
    "--spec",
    "spec_path",
    type=click.Path(exists=True, path_type=Path),
    default=".",
    show_default=True,
    help="Deployment spec file, or a directory holding stackops.yaml.",
)
@click.option("--env-name", default=None, help="Environment name (STACKOPS_ENV_NAME).")
@click.option("--region", default=None, help="Region (STACKOPS_REGION).")
@click.option(
    "--dry-run/--no-dry-run",
    default=None,
    help="Only log what would change (default: STACKOPS_DRY_RUN, else dry run).",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="text",
    show_default=True,
)
@click.option("--log-level", default="INFO", show_default=True)
@click.pass_context
def cli(
    ctx: click.Context,
    spec_path: Path,
    env_name: str | None,
    region: str | None,
    dry_run: bool | None,
    log_format: str,
    log_level: str,
) -> None:
    """Create, update and delete the stacks of a deployment.

    \b
    Quick Start:
        stackops status                 # What is deployed
        stackops update                 # Dry run: log the change sets
        stackops --no-dry-run update    # Apply them
    """
    setup_logging(json_output=log_format == "json", level=log_level)
    ctx.obj = CliContext(spec_path=spec_path, env_name=env_name, region=region, dry_run=dry_run)


# =============================================================================
# Stack Commands
# =============================================================================


@cli.command()
@click.argument("stack_ids", nargs=-1)
@click.option(
    "--param",
    "params",
    multiple=True,
    callback=parse_key_values,
    help="KEY=VALUE or STACK_ID.KEY=VALUE; repeatable.",
)
@click.option("--wait/--no-wait", default=True, show_default=True)
@click.pass_obj
def create(obj: CliContext, stack_ids: tuple[str, ...], params: dict[str, str], wait: bool) -> None:
    """Create stacks in deployment order."""
    deployment = run_operation("Loading deployment", obj.deployment)
    run_operation(
        "Create",
        lambda: deployment.create(stack_ids=stack_ids, params=params, wait=wait),
    )
    click.secho("✓ Create finished", fg="green")


@cli.command()
@click.argument("stack_ids", nargs=-1)
@click.option(
    "--param",
    "params",
    multiple=True,
    callback=parse_key_values,
    help="KEY=VALUE or STACK_ID.KEY=VALUE; repeatable.",
)
@click.option(
    "--force-secret",
    "force_secrets",
    multiple=True,
    help="Regex of secret names to rewrite even when unchanged; repeatable.",
)
@click.option("--wait/--no-wait", default=True, show_default=True)
@click.pass_obj
def update(
    obj: CliContext,
    stack_ids: tuple[str, ...],
    params: dict[str, str],
    force_secrets: tuple[str, ...],
    wait: bool,
) -> None:
    """Update stacks through change sets."""
    deployment = run_operation("Loading deployment", obj.deployment)
    results = run_operation(
        "Update",
        lambda: deployment.update(
            stack_ids=stack_ids, params=params, wait=wait, force_secrets=force_secrets
        ),
    )
    for stack_id, result in results.items():
        if not result.has_changes:
            click.echo(f"{stack_id}: no changes")
            continue
        click.echo(f"{stack_id}:")
        for line in result.summary_lines():
            click.echo(f"  {line}")
    click.secho("✓ Update finished", fg="green")


@cli.command()
@click.argument("stack_ids", nargs=-1)
@click.option("--wait/--no-wait", default=True, show_default=True)
@click.pass_obj
def delete(obj: CliContext, stack_ids: tuple[str, ...], wait: bool) -> None:
    """Delete stacks in reverse deployment order."""
    deployment = run_operation("Loading deployment", obj.deployment)
    run_operation("Delete", lambda: deployment.delete(stack_ids=stack_ids, wait=wait))
    click.secho("✓ Delete finished", fg="green")


@cli.command()
@click.argument("stack_ids", nargs=-1)
@click.pass_obj
def status(obj: CliContext, stack_ids: tuple[str, ...]) -> None:
    """Print a JSON status report."""
    deployment = run_operation("Loading deployment", obj.deployment)
    report = run_operation("Status", lambda: deployment.status(stack_ids=stack_ids))
    click.echo(json.dumps(report.to_dict(), indent=2))


# =============================================================================
# Image Commands
# =============================================================================


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--only", "builders", multiple=True, help="Packer builders to run; repeatable.")
@click.option("--var", "variables", multiple=True, callback=parse_key_values)
@click.option("--repo", "org_slash_repo", default=None, help="org/repo the image is built from.")
@click.option("--sha", default=None, help="Commit SHA (default: head of --branch).")
@click.option("--branch", default=None, help="Branch to resolve when no SHA is given.")
@click.option("--base-name", default=None, help="Image name prefix; defaults to the repo name.")
@click.option("--verbose", is_flag=True, help="Set PACKER_LOG=1.")
@click.option("--debug", is_flag=True, help="Run packer with --debug.")
@click.pass_obj
def image(
    obj: CliContext,
    template: Path,
    builders: tuple[str, ...],
    variables: dict[str, str],
    org_slash_repo: str | None,
    sha: str | None,
    branch: str | None,
    base_name: str | None,
    verbose: bool,
    debug: bool,
) -> None:
    """Build a machine image with Packer."""
    dry_run = obj.dry_run if obj.dry_run is not None else dry_run_from_env()
    build_variables = dict(variables)

    if org_slash_repo:
        source = ArtifactSource(run_operation("Loading config", obj.config).github_token)
        resolved = run_operation(
            "Resolving commit",
            lambda: resolve_sha(source, org_slash_repo=org_slash_repo, sha=sha, branch=branch),
        )
        base = base_name or org_slash_repo.split("/")[-1]
        build_variables.setdefault("sha", resolved)
        build_variables.setdefault("image_name", image_name(base, resolved))

    packer = PackerBuild(
        template,
        dry_run=dry_run,
        only=builders,
        variables=build_variables,
        verbose=verbose,
        debug=debug,
    )
    result = run_operation("Image build", packer.run)
    if result.artifact_id:
        click.echo(result.artifact_id)
