"""The stack: one deployment unit and its lifecycle.

Stack composes the parameter reconciler, secret synchronizer, change preview,
waiter and tag sweep into create, update and delete. Remote state is the
source of truth: deployed parameters and status are fetched on demand and
cached only for the duration of one operation.

Update runs its steps strictly in order:

1. secrets are synchronized (and the cycle trigger set when any changed)
2. the parameter set is resolved
3. a change set is staged and its summary logged
4. the change set is executed (or discarded in dry run)
5. the update is waited for, then missing tags are applied
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from .change_preview import ChangePreview, StageResult
from .config import MAX_STACK_NAME_LENGTH, Config
from .engine import ClientProvider, CloudFormationEngine
from .parameters import (
    ParameterSet,
    explicit_keys,
    format_as_stack_parameters,
    resolve_for_create,
    resolve_for_update,
)
from .provenance import OperationRecorder
from .resources import ResourceFactory
from .secrets import SecretsSet, cycle_trigger_value
from .status import (
    ABSENT_STATUSES,
    CREATE_TARGET,
    DELETE_TARGET,
    DELETING_STATUSES,
    DOES_NOT_EXIST,
    FAILURE_STATUSES,
    UPDATE_TARGET,
    CachedStatus,
    StatusReport,
    failed_events_since_last_user_event,
)
from .tags import Tag, TagReconciler, TagReconcileResult, tags_from_mapping
from .template import Template, TemplateUploader
from .waiter import Waiter

logger = logging.getLogger(__name__)

DRY_RUN_OUTPUT_VALUE = "undefined-in-dry-run"

SHORT_CAPABILITIES: dict[str, str] = {
    "iam": "CAPABILITY_IAM",
    "named_iam": "CAPABILITY_NAMED_IAM",
    "auto_expand": "CAPABILITY_AUTO_EXPAND",
}

# Reads volatile parameter values for a stack from live state
StackVolatileResolver = Callable[["Stack"], Mapping[str, Any]]


class StackOperationError(Exception):
    """Raised when a stack operation cannot be carried out."""

    pass


def normalize_capabilities(capabilities: str | Iterable[str] | None) -> list[str] | None:
    """Map short capability names to the engine's names.

    Returns None when no capabilities were declared.

    Raises:
        StackOperationError: For anything outside the known capabilities.
    """
    if capabilities is None:
        return None
    if isinstance(capabilities, str):
        capabilities = [capabilities]

    valid = set(SHORT_CAPABILITIES) | set(SHORT_CAPABILITIES.values())
    normalized: list[str] = []
    for capability in capabilities:
        if capability is None:
            continue
        if capability not in valid:
            raise StackOperationError(f"Capabilities must be in {sorted(valid)}: {capability}")
        long_name = SHORT_CAPABILITIES.get(capability, capability)
        if long_name not in normalized:
            normalized.append(long_name)
    return normalized


@dataclass
class StackServices:
    """Remote collaborators shared by the stacks of one region."""

    engine: CloudFormationEngine
    waiter: Waiter
    change_preview: ChangePreview
    resource_factory: ResourceFactory | None = None
    template_uploader: TemplateUploader | None = None
    recorder: OperationRecorder = field(default_factory=OperationRecorder)
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_config(cls, config: Config, clients: ClientProvider) -> StackServices:
        engine = CloudFormationEngine(clients("cloudformation"))
        waiter = Waiter(
            delay_seconds=config.waiter_delay_seconds,
            max_attempts=config.waiter_max_attempts,
        )

        uploader = None
        if config.template_bucket:
            uploader = TemplateUploader(
                clients("s3", config.template_bucket_region or config.region),
                bucket=config.template_bucket,
                bucket_region=config.template_bucket_region,
                folder=config.template_bucket_folder,
                validate=lambda body: engine.validate_template(body=body),
            )

        return cls(
            engine=engine,
            waiter=waiter,
            change_preview=ChangePreview(engine, waiter),
            resource_factory=ResourceFactory(clients),
            template_uploader=uploader,
        )


class Stack:
    """One named stack in one region."""

    def __init__(
        self,
        name: str,
        *,
        region: str,
        services: StackServices,
        template_path: str | Path | None = None,
        template: Template | None = None,
        capabilities: str | Iterable[str] | None = None,
        infer_capabilities: bool = True,
        parameter_defaults: Mapping[str, Any] | None = None,
        volatile_resolver: StackVolatileResolver | None = None,
        tags: Mapping[str, Any] | Iterable[Tag] | None = None,
        secrets: SecretsSet | None = None,
        cycle_trigger_parameter: str | None = None,
        enable_termination_protection: bool = False,
        dry_run: bool = True,
        stack_id: str | None = None,
    ) -> None:
        if not name or not name.strip():
            raise StackOperationError("Stack name must not be blank")
        if len(name) > MAX_STACK_NAME_LENGTH:
            raise StackOperationError(
                f"Stack name exceeds {MAX_STACK_NAME_LENGTH} characters: {name}"
            )
        if not region:
            raise StackOperationError(f"region is not set for stack {name}")

        self.name = name
        self.id = stack_id or name
        self.region = region
        self.dry_run = dry_run
        self.enable_termination_protection = enable_termination_protection
        self.cycle_trigger_parameter = cycle_trigger_parameter

        self._services = services
        self._template_path = Path(template_path) if template_path else None
        self._template = template
        self._declared_capabilities = normalize_capabilities(capabilities)
        self._infer_capabilities = infer_capabilities
        self._parameter_defaults = dict(parameter_defaults or {})
        self._volatile_resolver = volatile_resolver
        # Tags are validated here, before any remote call
        self._tags = tags_from_mapping(tags)
        self._secrets = secrets

        self._deployed_parameters: dict[str, str] | None = None
        self._status = CachedStatus(lambda: self._services.engine.stack_status(self.name))

    def __repr__(self) -> str:
        return f"Stack(name={self.name!r}, region={self.region!r})"

    @property
    def engine(self) -> CloudFormationEngine:
        return self._services.engine

    @property
    def parameter_defaults(self) -> dict[str, Any]:
        return dict(self._parameter_defaults)

    @property
    def tags(self) -> list[Tag]:
        return list(self._tags)

    @property
    def secrets(self) -> SecretsSet | None:
        return self._secrets

    @property
    def template(self) -> Template:
        """The local template, or the deployed one when no path was given."""
        if self._template is None:
            if self._template_path is not None:
                self._template = Template.from_path(self._template_path)
            else:
                body = self.engine.template_body(self.name)
                self._template = Template.from_body(body, name=f"{self.name}.yml")
        return self._template

    @property
    def capabilities(self) -> list[str]:
        if self._declared_capabilities is not None:
            return list(self._declared_capabilities)
        if self._infer_capabilities:
            return normalize_capabilities(self.template.required_capabilities()) or []
        return []

    # Remote state

    def status(self, reload: bool = False) -> str:
        return self._status.get(reload=reload)

    def exists(self) -> bool:
        return self.status(reload=True) != DOES_NOT_EXIST

    def status_report(self, reload: bool = True) -> StatusReport:
        status = self.status(reload=reload)
        failed_events: tuple = ()
        if status in FAILURE_STATUSES:
            failed_events = tuple(
                failed_events_since_last_user_event(self.engine.stack_events(self.name))
            )
        return StatusReport(stack_name=self.name, status=status, failed_events=failed_events)

    @property
    def deployed_parameters(self) -> dict[str, str]:
        if self._deployed_parameters is None:
            self._deployed_parameters = self.engine.stack_parameters(self.name)
        return dict(self._deployed_parameters)

    def reset_cached_remote_state(self) -> None:
        self._deployed_parameters = None
        self._status.invalidate()

    def output_value(self, key: str) -> str:
        if self.dry_run:
            return DRY_RUN_OUTPUT_VALUE
        outputs = self.engine.stack_outputs(self.name)
        if key not in outputs:
            raise StackOperationError(f"No output with key {key} in stack {self.name}")
        return outputs[key]

    def resource_summary(self, logical_id: str) -> dict[str, Any]:
        for summary in self.engine.stack_resources(self.name):
            if summary.get("LogicalResourceId") == logical_id:
                return summary
        raise StackOperationError(f"No resource {logical_id} in stack {self.name}")

    def resource(self, logical_id: str) -> Any:
        """An adapter for one of the stack's resources."""
        factory = self._require_resource_factory()
        try:
            return factory.from_stack_resource_strict(self.resource_summary(logical_id))
        except ValueError as e:
            raise StackOperationError(str(e)) from e

    # Parameters

    def volatile_parameters(self) -> dict[str, Any]:
        if self._volatile_resolver is None:
            return {}
        return dict(self._volatile_resolver(self))

    def parameters_for_create(self, overrides: Mapping[str, Any] | None = None) -> ParameterSet:
        return resolve_for_create(self._parameter_defaults, overrides)

    def parameters_for_update(self, overrides: Mapping[str, Any] | None = None) -> ParameterSet:
        return resolve_for_update(
            template_keys=self.template.parameter_names,
            deployed_keys=self.deployed_parameters.keys(),
            defaults=self._parameter_defaults,
            volatile_resolver=self.volatile_parameters,
            overrides=overrides,
        )

    # Operations

    def create(self, params: Mapping[str, Any] | None = None, wait: bool = False) -> None:
        """Create the stack (secrets first).

        Raises:
            StackOperationError: If the stack already exists.
        """
        if self.dry_run:
            logger.info("**** DRY RUN ****")

        status_before = self.status(reload=True)
        with self._services.recorder.record(
            "create",
            self.name,
            region=self.region,
            dry_run=self.dry_run,
            status_before=status_before,
        ) as record:
            if status_before != DOES_NOT_EXIST:
                raise StackOperationError(
                    f"Stack {self.name} already exists with status {status_before}"
                )
            if self._template is None and self._template_path is None:
                raise StackOperationError(f"A template is required to create stack {self.name}")

            overrides = dict(params or {})
            if (
                self.cycle_trigger_parameter
                and self.cycle_trigger_parameter in self.template.parameter_names
                and self.cycle_trigger_parameter not in overrides
                and self.cycle_trigger_parameter not in self._parameter_defaults
            ):
                overrides[self.cycle_trigger_parameter] = cycle_trigger_value()
            parameters = self.parameters_for_create(overrides)
            record.changed_parameters = explicit_keys(parameters)

            if self._secrets is not None:
                self._secrets.create()
                record.secrets_changed = len(self._secrets) > 0

            options: dict[str, Any] = {
                "StackName": self.name,
                "Parameters": format_as_stack_parameters(parameters),
                "Capabilities": self.capabilities,
                "EnableTerminationProtection": self.enable_termination_protection,
            }
            if self._tags:
                options["Tags"] = [tag.to_api() for tag in self._tags]

            logger.info(
                "Creating stack",
                extra={"stack": self.name, "region": self.region, "parameters": sorted(parameters)},
            )

            if not self.dry_run:
                options.update(self._template_reference())
                self.engine.create_stack(**options)
                self.reset_cached_remote_state()

                if wait:
                    self.wait_for_creation()
                    record.tag_warnings = len(self.reconcile_tags().warnings)

            record.status_after = self.status(reload=True)

    def update(
        self,
        params: Mapping[str, Any] | None = None,
        wait: bool = False,
        force_secrets: Iterable[str] = (),
    ) -> StageResult:
        """Update the stack through a change set.

        Args:
            params: Overrides for this invocation; they win over everything.
            wait: Wait for the update to finish (not in dry run).
            force_secrets: Regex patterns of secrets to rewrite regardless.

        Returns:
            The staged change set, or NoChangeResult.
        """
        if self.dry_run:
            logger.info("**** DRY RUN ****")

        status_before = self.status(reload=True)
        with self._services.recorder.record(
            "update",
            self.name,
            region=self.region,
            dry_run=self.dry_run,
            status_before=status_before,
        ) as record:
            if status_before == DOES_NOT_EXIST:
                raise StackOperationError(f"Stack {self.name} does not exist")

            secrets_changed = False
            if self._secrets is not None:
                secrets_changed = self._secrets.update(force_update_these=force_secrets)
            record.secrets_changed = secrets_changed

            overrides = dict(params or {})
            if (
                secrets_changed
                and self.cycle_trigger_parameter
                and self.cycle_trigger_parameter in self.template.parameter_names
                and self.cycle_trigger_parameter not in overrides
            ):
                logger.info(
                    "Secrets changed, cycling dependent resources",
                    extra={"stack": self.name, "parameter": self.cycle_trigger_parameter},
                )
                overrides[self.cycle_trigger_parameter] = cycle_trigger_value()

            parameters = self.parameters_for_update(overrides)
            record.changed_parameters = explicit_keys(parameters)

            result = self._services.change_preview.stage(
                stack_name=self.name,
                parameters=parameters,
                capabilities=self.capabilities,
                tags=[tag.to_api() for tag in self._tags] or None,
                **self._change_set_template_reference(),
            )
            record.change_count = len(result.summaries())

            executed = self._services.change_preview.apply(result, dry_run=self.dry_run)
            if executed:
                self.reset_cached_remote_state()
                if wait:
                    self.wait_for_update()
                    record.tag_warnings = len(self.reconcile_tags().warnings)

            record.status_after = self.status(reload=True)
            return result

    def delete(self, wait: bool = False) -> None:
        """Delete the stack, then its secrets. Deleting a missing stack is fine.

        Secrets are only removed once the stack is gone or being deleted.
        """
        if self.dry_run:
            logger.info("**** DRY RUN ****")

        status_before = self.status(reload=True)
        with self._services.recorder.record(
            "delete",
            self.name,
            region=self.region,
            dry_run=self.dry_run,
            status_before=status_before,
        ) as record:
            if status_before == DOES_NOT_EXIST:
                logger.info("Stack does not exist, nothing to delete", extra={"stack": self.name})
            else:
                logger.info("Deleting stack", extra={"stack": self.name, "region": self.region})
                if not self.dry_run:
                    self.engine.delete_stack(self.name)
                    self.reset_cached_remote_state()
                    if wait:
                        self.wait_for_deletion()

            status_after = self.status(reload=True)
            if self._secrets is not None:
                if self.dry_run or status_after in ABSENT_STATUSES | DELETING_STATUSES:
                    self._secrets.delete()
                else:
                    logger.warning(
                        "Stack is still present, keeping its secrets",
                        extra={"stack": self.name, "status": status_after},
                    )

            record.status_after = status_after

    # Waiting

    def wait_for_creation(self) -> str | None:
        return self._wait_for(CREATE_TARGET)

    def wait_for_update(self) -> str | None:
        return self._wait_for(UPDATE_TARGET)

    def wait_for_deletion(self) -> str | None:
        return self._wait_for(DELETE_TARGET)

    def _wait_for(self, target: Any) -> str | None:
        if self.dry_run:
            return None
        status = self._services.waiter.wait_for(
            lambda: self.status(reload=True),
            target,
            subject=f"{self.name} stack",
            failure_reason=self._failure_reason,
        )
        if status in target.success:
            logger.info("%s has been %s!", self.name, target.word, extra={"stack": self.name})
        else:
            logger.warning(
                "%s was not %s",
                self.name,
                target.word,
                extra={"stack": self.name, "status": status},
            )
        return status

    def _failure_reason(self, status: str) -> str | None:
        if status == DOES_NOT_EXIST:
            return None
        reasons = [
            f"{event.logical_resource_id}: {event.reason}"
            for event in failed_events_since_last_user_event(self.engine.stack_events(self.name))
        ]
        if reasons:
            return "; ".join(reasons)
        return self.engine.stack_status_reason(self.name)

    # Tags

    def reconcile_tags(self) -> TagReconcileResult:
        """Apply missing stack tags to child resources; warnings only."""
        result = TagReconcileResult()
        if not self._tags or self._services.resource_factory is None:
            return result

        try:
            summaries = self.engine.stack_resources(self.name)
        except ClientError as e:
            message = f"Could not list resources of {self.name}: {e}"
            logger.warning(message, extra={"stack": self.name})
            result.warnings.append(message)
            return result

        factory = self._services.resource_factory
        resources = [
            resource
            for resource in (factory.from_stack_resource(summary) for summary in summaries)
            if resource is not None
        ]
        reconciler = TagReconciler(self._tags, sleep=self._services.sleep)
        return reconciler.reconcile(resources)

    # Helpers

    def _require_resource_factory(self) -> ResourceFactory:
        if self._services.resource_factory is None:
            raise StackOperationError("No resource factory configured")
        return self._services.resource_factory

    def _template_reference(self) -> dict[str, str]:
        uploader = self._services.template_uploader
        if uploader is not None:
            return {"TemplateURL": uploader.url_for(self.template)}
        self.engine.validate_template(body=self.template.body)
        return {"TemplateBody": self.template.body}

    def _change_set_template_reference(self) -> dict[str, str]:
        reference = self._template_reference()
        if "TemplateURL" in reference:
            return {"template_url": reference["TemplateURL"]}
        return {"template_body": reference["TemplateBody"]}
