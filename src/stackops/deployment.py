"""A deployment: the stacks of one application in one environment.

Stacks are created in the order the deployment spec lists them and deleted in reverse,
so later stacks can depend on the outputs of earlier ones. Stack names follow
the "<env>-<deployment>-<stack id>" convention, which is also what parameter
default inference relies on to point "<Other>StackName" parameters at
sibling stacks.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .artifacts import ArtifactSource
from .build import resolve_sha
from .change_preview import StageResult
from .config import VALID_STACK_NAME_PATTERN, Config
from .engine import ClientProvider, ParameterStore
from .models import DeploymentSpec, SecretSpecificationSource, StackSpec
from .secrets import SecretSpecification, SecretsSet, SecretSynchronizer
from .stack import Stack, StackOperationError, StackServices, StackVolatileResolver
from .status import StatusReport
from .template import Template

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSIONS = (".yml", ".json")

ENV_NAME_PARAMETER = "EnvName"
KEY_PAIR_PARAMETERS = ("KeyName", "KeyPairName")
SIBLING_STACK_PARAMETER_PATTERN = r"^(.+)StackName$"


class DeploymentError(Exception):
    """Raised when a deployment cannot be assembled or addressed."""

    pass


def stack_name_for(env_name: str | None, deployment_name: str, stack_id: str) -> str:
    """"<env>-<deployment>-<stack id>", blanks dropped, underscores as hyphens."""
    parts = [part for part in (env_name, deployment_name, stack_id) if part]
    return "-".join(parts).replace("_", "-")


def _normalize_id(value: str) -> str:
    return re.sub(r"[-_]", "", value).lower()


def infer_parameter_defaults(
    parameter_names: Iterable[str],
    configured: Mapping[str, Any],
    *,
    env_name: str | None,
    key_pair_name: str | None,
    sibling_names: Mapping[str, str],
) -> dict[str, Any]:
    """Conventional defaults for well-known template parameters.

    Configured defaults are never overwritten.

    Args:
        parameter_names: Parameters the template declares.
        configured: Defaults from the deployment spec.
        env_name: Default for EnvName.
        key_pair_name: Default for KeyName and KeyPairName.
        sibling_names: Stack id -> stack name of the other stacks.
    """
    siblings = {_normalize_id(stack_id): name for stack_id, name in sibling_names.items()}
    defaults = dict(configured)
    for name in parameter_names:
        if name in defaults:
            continue
        if name == ENV_NAME_PARAMETER and env_name:
            defaults[name] = env_name
        elif name in KEY_PAIR_PARAMETERS and key_pair_name:
            defaults[name] = key_pair_name
        else:
            match = re.match(SIBLING_STACK_PARAMETER_PATTERN, name)
            if match and _normalize_id(match.group(1)) in siblings:
                defaults[name] = siblings[_normalize_id(match.group(1))]
    return defaults


def distribute_parameters(
    params: Mapping[str, Any] | None, stacks: Iterable[Stack]
) -> dict[str, dict[str, Any]]:
    """Route command-line parameters to the stacks they belong to.

    "KEY" goes to every stack whose template declares KEY; "STACK_ID.KEY"
    goes to that stack only.

    Raises:
        DeploymentError: If a parameter has no stack to go to.
    """
    stacks = list(stacks)
    by_id = {stack.id: stack for stack in stacks}
    routed: dict[str, dict[str, Any]] = {stack.id: {} for stack in stacks}

    for key, value in (params or {}).items():
        stack_id, dot, name = key.rpartition(".")
        if dot:
            if stack_id not in by_id:
                raise DeploymentError(f"Parameter {key} names an unknown stack: {stack_id}")
            routed[stack_id][name] = value
            continue

        takers = [stack for stack in stacks if key in stack.template.parameter_names]
        if not takers:
            raise DeploymentError(f"No stack declares a parameter named {key}")
        for stack in takers:
            routed[stack.id][key] = value

    return routed


@dataclass
class DeploymentStatus:
    """Status of every stack of a deployment."""

    name: str
    reports: list[StatusReport] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(report.failed for report in self.reports)

    @property
    def succeeded(self) -> bool:
        return bool(self.reports) and all(report.succeeded for report in self.reports)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment": self.name,
            "failed": self.failed,
            "succeeded": self.succeeded,
            "stacks": [report.to_dict() for report in self.reports],
        }


class Deployment:
    """An ordered group of stacks sharing an environment and a region."""

    def __init__(self, name: str, stacks: Iterable[Stack], *, config: Config) -> None:
        self.name = name
        self.config = config
        self._stacks = list(stacks)

    def __repr__(self) -> str:
        return f"Deployment(name={self.name!r}, stacks={[stack.id for stack in self._stacks]})"

    @classmethod
    def from_spec(
        cls,
        spec: DeploymentSpec,
        config: Config,
        *,
        spec_dir: str | Path = ".",
        services: StackServices | None = None,
        clients: ClientProvider | None = None,
        parameter_store: ParameterStore | None = None,
        artifact_source: ArtifactSource | None = None,
    ) -> Deployment:
        """Assemble the stacks a spec describes. Nothing remote is called."""
        return _DeploymentBuilder(
            spec,
            config,
            spec_dir=Path(spec_dir),
            services=services,
            clients=clients,
            parameter_store=parameter_store,
            artifact_source=artifact_source,
        ).build()

    @property
    def stacks(self) -> list[Stack]:
        return list(self._stacks)

    def stack(self, stack_id: str) -> Stack:
        for stack in self._stacks:
            if stack.id == stack_id:
                return stack
        raise DeploymentError(
            f"No stack {stack_id} in deployment {self.name} "
            f"(known: {[stack.id for stack in self._stacks]})"
        )

    def select(self, stack_ids: Iterable[str] | None = None) -> list[Stack]:
        """The named stacks in deployment order; all of them when none are named."""
        wanted = list(stack_ids or [])
        if not wanted:
            return self.stacks
        for stack_id in wanted:
            self.stack(stack_id)
        return [stack for stack in self._stacks if stack.id in wanted]

    def create(
        self,
        stack_ids: Iterable[str] | None = None,
        params: Mapping[str, Any] | None = None,
        wait: bool = True,
    ) -> None:
        """Create stacks in order. Stacks created before a failure stay."""
        stacks = self.select(stack_ids)
        routed = distribute_parameters(params, stacks)
        for stack in stacks:
            logger.info("Creating stack %s of %s", stack.id, self.name, extra={"stack": stack.name})
            stack.create(params=routed[stack.id], wait=wait)

    def update(
        self,
        stack_ids: Iterable[str] | None = None,
        params: Mapping[str, Any] | None = None,
        wait: bool = True,
        force_secrets: Iterable[str] = (),
    ) -> dict[str, StageResult]:
        """Update stacks in order; returns each stack's change set result."""
        stacks = self.select(stack_ids)
        routed = distribute_parameters(params, stacks)
        force = list(force_secrets)
        results: dict[str, StageResult] = {}
        for stack in stacks:
            logger.info("Updating stack %s of %s", stack.id, self.name, extra={"stack": stack.name})
            results[stack.id] = stack.update(
                params=routed[stack.id], wait=wait, force_secrets=force
            )
        return results

    def delete(self, stack_ids: Iterable[str] | None = None, wait: bool = True) -> None:
        """Delete stacks in reverse order."""
        for stack in reversed(self.select(stack_ids)):
            logger.info("Deleting stack %s of %s", stack.id, self.name, extra={"stack": stack.name})
            stack.delete(wait=wait)

    def status(self, stack_ids: Iterable[str] | None = None) -> DeploymentStatus:
        return DeploymentStatus(
            name=self.name,
            reports=[stack.status_report() for stack in self.select(stack_ids)],
        )


class _DeploymentBuilder:
    """Turns a validated spec into Stack objects."""

    def __init__(
        self,
        spec: DeploymentSpec,
        config: Config,
        *,
        spec_dir: Path,
        services: StackServices | None,
        clients: ClientProvider | None,
        parameter_store: ParameterStore | None,
        artifact_source: ArtifactSource | None,
    ) -> None:
        self._spec = spec
        self._config = config
        self._spec_dir = spec_dir
        self._clients = clients
        self._services = services
        self._parameter_store = parameter_store
        self._artifact_source = artifact_source
        self._stacks: dict[str, Stack] = {}
        self._names = {
            stack_spec.id: stack_name_for(config.env_name, spec.name, stack_spec.id)
            for stack_spec in spec.stacks
        }

    def build(self) -> Deployment:
        for stack_spec in self._spec.stacks:
            self._stacks[stack_spec.id] = self._build_stack(stack_spec)
        return Deployment(self._spec.name, self._stacks.values(), config=self._config)

    def _client_provider(self) -> ClientProvider:
        if self._clients is None:
            self._clients = ClientProvider(self._config.region)
        return self._clients

    def _stack_services(self) -> StackServices:
        if self._services is None:
            self._services = StackServices.from_config(self._config, self._client_provider())
        return self._services

    def _store(self) -> ParameterStore:
        if self._parameter_store is None:
            self._parameter_store = ParameterStore(self._client_provider()("ssm"))
        return self._parameter_store

    def _source(self) -> ArtifactSource:
        if self._artifact_source is None:
            self._artifact_source = ArtifactSource(self._config.github_token)
        return self._artifact_source

    def _build_stack(self, stack_spec: StackSpec) -> Stack:
        name = self._names[stack_spec.id]
        if not re.match(VALID_STACK_NAME_PATTERN, name):
            raise DeploymentError(f"Stack name {name} must match {VALID_STACK_NAME_PATTERN}")

        template_path = self._template_path(stack_spec)
        template = Template.from_path(template_path) if template_path is not None else None

        parameter_defaults: dict[str, Any] = dict(stack_spec.parameter_defaults)
        if template is not None and self._config.infer_parameter_defaults:
            parameter_defaults = infer_parameter_defaults(
                template.parameter_names,
                parameter_defaults,
                env_name=self._config.env_name,
                key_pair_name=self._config.key_pair_name,
                sibling_names={
                    stack_id: stack_name
                    for stack_id, stack_name in self._names.items()
                    if stack_id != stack_spec.id
                },
            )

        termination_protection = stack_spec.termination_protection
        if termination_protection is None:
            termination_protection = self._config.is_production

        try:
            return Stack(
                name,
                region=self._config.region,
                services=self._stack_services(),
                template_path=template_path,
                template=template,
                capabilities=stack_spec.capabilities,
                infer_capabilities=self._config.infer_capabilities,
                parameter_defaults=parameter_defaults,
                volatile_resolver=self._volatile_resolver(stack_spec),
                tags={**self._spec.tags, **stack_spec.tags},
                secrets=self._secrets(name, stack_spec),
                cycle_trigger_parameter=stack_spec.cycle_trigger_parameter,
                enable_termination_protection=termination_protection,
                dry_run=self._config.dry_run,
                stack_id=stack_spec.id,
            )
        except StackOperationError as e:
            raise DeploymentError(f"Stack {stack_spec.id}: {e}") from e

    def _template_path(self, stack_spec: StackSpec) -> Path | None:
        if stack_spec.template_path:
            path = self._spec_dir / stack_spec.template_path
            if not path.is_file():
                raise DeploymentError(f"Template for stack {stack_spec.id} not found: {path}")
            return path

        directory = self._spec_dir / (self._spec.template_directory or ".")
        for extension in TEMPLATE_EXTENSIONS:
            candidate = directory / f"{stack_spec.id}{extension}"
            if candidate.is_file():
                return candidate

        logger.debug(
            "No local template, the deployed template will be used",
            extra={"stack_id": stack_spec.id, "directory": str(directory)},
        )
        return None

    def _volatile_resolver(self, stack_spec: StackSpec) -> StackVolatileResolver | None:
        sources = dict(stack_spec.volatile_parameters)
        if not sources:
            return None

        def resolve(stack: Stack) -> dict[str, Any]:
            values: dict[str, Any] = {}
            for parameter, source in sources.items():
                if source.asg_desired_capacity is not None:
                    group = stack.resource(source.asg_desired_capacity)
                    values[parameter] = group.desired_capacity
                    continue

                ref = source.stack_output
                target = self._stacks[ref.stack] if ref.stack else stack
                # Live outputs, also in dry run
                outputs = target.engine.stack_outputs(target.name)
                if ref.key not in outputs:
                    raise StackOperationError(
                        f"No output with key {ref.key} in stack {target.name} "
                        f"(volatile parameter {parameter})"
                    )
                values[parameter] = outputs[ref.key]
            return values

        return resolve

    def _secrets(self, stack_name: str, stack_spec: StackSpec) -> SecretsSet | None:
        if not stack_spec.secrets:
            return None

        blocks = []
        for block in stack_spec.secrets:
            sources = list(block.specifications)
            blocks.append(
                SecretSynchronizer(
                    self._store(),
                    [self._config.env_name, stack_name, block.id],
                    dry_run=self._config.dry_run,
                    substitutions={**self._spec.shared_substitutions, **block.substitutions},
                    specification_loader=lambda sources=sources: [
                        self._load_specification(source) for source in sources
                    ],
                    sleep=self._stack_services().sleep,
                )
            )
        return SecretsSet(blocks)

    def _load_specification(self, source: SecretSpecificationSource) -> SecretSpecification:
        if source.content is not None:
            return SecretSpecification.from_content(source.content, top_key=source.top_key)
        if source.file is not None:
            return SecretSpecification.from_file(
                self._spec_dir / source.file, top_key=source.top_key
            )

        git = source.git
        sha = resolve_sha(
            self._source(), org_slash_repo=git.org_slash_repo, sha=git.sha, branch=git.branch
        )
        return SecretSpecification.from_git(
            self._source(),
            org_slash_repo=git.org_slash_repo,
            sha=sha,
            path=git.path,
            top_key=source.top_key,
        )
