"""Change previews: stage an update, inspect it, then commit or discard.

A preview is a change set. Staging waits until the engine has computed it.
A change set that turns out to contain no changes is not an error: it is
deleted and a NoChangeResult is returned. Any other failure to compute the
change set raises ChangePreviewFailed with the engine's reason.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from botocore.exceptions import ClientError

from .engine import CloudFormationEngine, error_message, is_no_changes_reason
from .parameters import ParameterValue, format_as_stack_parameters
from .status import CHANGE_SET_READY_TARGET
from .waiter import Waiter, WaitFailed

logger = logging.getLogger(__name__)


class ChangePreviewFailed(Exception):
    """Raised when the engine fails to compute a change set."""

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class ChangeSummary:
    """One affected resource in a change set."""

    action: str
    logical_id: str
    resource_type: str
    replacement: str | None = None
    scope: tuple[str, ...] = ()
    causes: tuple[str, ...] = ()

    @classmethod
    def from_api(cls, change: Mapping[str, Any]) -> ChangeSummary:
        resource_change = change.get("ResourceChange", {})
        causes = []
        for detail in resource_change.get("Details", []):
            parts = [detail.get("ChangeSource"), detail.get("CausingEntity")]
            causes.append(":".join(part for part in parts if part))
        return cls(
            action=resource_change.get("Action", ""),
            logical_id=resource_change.get("LogicalResourceId", ""),
            resource_type=resource_change.get("ResourceType", ""),
            replacement=resource_change.get("Replacement"),
            scope=tuple(resource_change.get("Scope", [])),
            causes=tuple(causes),
        )

    def text(self) -> str:
        summary = f"{self.action} '{self.logical_id}' ({self.resource_type})"
        if self.action == "Modify":
            summary = (
                f"{summary}: Replacement={self.replacement}; "
                f"Due to change in {', '.join(self.scope)}; "
                f"Causes: {', '.join(self.causes)}"
            )
        return summary


@dataclass(frozen=True)
class NoChangeResult:
    """Staging found nothing to change; the change set was discarded."""

    stack_name: str
    change_set_id: str | None = None
    reason: str | None = None

    has_changes = False

    def summaries(self) -> list[ChangeSummary]:
        return []

    def has_change_caused_by(self, entity_name: str) -> bool:
        return False


@dataclass
class ChangeHandle:
    """A staged change set that is ready to be committed or discarded."""

    stack_name: str
    change_set_id: str
    change_set_name: str
    description: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, ParameterValue] = field(default_factory=dict)
    state: str = "ready"

    has_changes = True

    def summaries(self) -> list[ChangeSummary]:
        return [ChangeSummary.from_api(change) for change in self.description.get("Changes", [])]

    def summary_lines(self) -> list[str]:
        return [summary.text() for summary in self.summaries()]

    def has_change_caused_by(self, entity_name: str) -> bool:
        """True when any resource change is caused by the named entity."""
        for change in self.description.get("Changes", []):
            for detail in change.get("ResourceChange", {}).get("Details", []):
                if detail.get("CausingEntity") == entity_name:
                    return True
        return False

    def parameter_value(self, parameter_name: str) -> str | None:
        """The value the change set would give a parameter."""
        for parameter in self.description.get("Parameters", []):
            if parameter.get("ParameterKey") == parameter_name:
                return parameter.get("ParameterValue")
        return None


StageResult = ChangeHandle | NoChangeResult


class ChangePreview:
    """Stages, commits and discards change sets for one engine."""

    def __init__(
        self,
        engine: CloudFormationEngine,
        waiter: Waiter,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._engine = engine
        self._waiter = waiter
        self._now = now

    def change_set_name(self, stack_name: str) -> str:
        return f"{stack_name}-{self._now().strftime('%Y%m%d-%H%M%S')}"

    def stage(
        self,
        *,
        stack_name: str,
        template_url: str | None = None,
        template_body: str | None = None,
        parameters: Mapping[str, ParameterValue],
        capabilities: list[str] | None = None,
        tags: list[dict[str, str]] | None = None,
        change_set_type: str = "UPDATE",
    ) -> StageResult:
        """Submit a change set and wait for the engine to compute it.

        Returns:
            ChangeHandle when there are changes, NoChangeResult otherwise.

        Raises:
            ChangePreviewFailed: If the engine could not compute the change set.
        """
        name = self.change_set_name(stack_name)
        options: dict[str, Any] = {
            "StackName": stack_name,
            "ChangeSetName": name,
            "ChangeSetType": change_set_type,
            "Parameters": format_as_stack_parameters(parameters),
            "Capabilities": list(capabilities or []),
        }
        if template_url is not None:
            options["TemplateURL"] = template_url
        elif template_body is not None:
            options["TemplateBody"] = template_body
        else:
            options["UsePreviousTemplate"] = True
        if tags:
            options["Tags"] = tags

        logger.info(
            "Creating change set",
            extra={"stack": stack_name, "change_set": name, "parameters": len(parameters)},
        )

        try:
            change_set_id = self._engine.create_change_set(**options)
        except ClientError as e:
            if is_no_changes_reason(error_message(e)):
                logger.info("No changes detected", extra={"stack": stack_name})
                return NoChangeResult(stack_name=stack_name, reason=error_message(e))
            raise

        def fetch_status() -> str:
            return self._engine.describe_change_set(change_set_id, stack_name)["Status"]

        def failure_reason(status: str) -> str | None:
            return self._engine.describe_change_set(change_set_id, stack_name).get("StatusReason")

        try:
            self._waiter.wait_for(
                fetch_status,
                CHANGE_SET_READY_TARGET,
                subject=f"change set {change_set_id}",
                failure_reason=failure_reason,
            )
        except WaitFailed as e:
            if is_no_changes_reason(e.reason):
                logger.info(
                    "No changes detected, deleting change set",
                    extra={"stack": stack_name, "change_set": change_set_id},
                )
                self._engine.delete_change_set(change_set_id, stack_name)
                return NoChangeResult(
                    stack_name=stack_name, change_set_id=change_set_id, reason=e.reason
                )
            logger.error(
                "Change set failed",
                extra={"stack": stack_name, "change_set": change_set_id, "reason": e.reason},
            )
            raise ChangePreviewFailed(
                f"Change set {name} for {stack_name} failed: {e.reason or e}", reason=e.reason
            ) from e

        return ChangeHandle(
            stack_name=stack_name,
            change_set_id=change_set_id,
            change_set_name=name,
            description=self._engine.describe_change_set(change_set_id, stack_name),
            parameters=dict(parameters),
        )

    def commit(self, handle: ChangeHandle) -> None:
        if handle.state != "ready":
            raise ChangePreviewFailed(
                f"Change set {handle.change_set_id} is already {handle.state}"
            )
        logger.info(
            "Executing change set",
            extra={"stack": handle.stack_name, "change_set": handle.change_set_id},
        )
        self._engine.execute_change_set(handle.change_set_id, handle.stack_name)
        handle.state = "executed"

    def discard(self, handle: ChangeHandle) -> None:
        if handle.state != "ready":
            return
        logger.info(
            "Deleting change set",
            extra={"stack": handle.stack_name, "change_set": handle.change_set_id},
        )
        self._engine.delete_change_set(handle.change_set_id, handle.stack_name)
        handle.state = "deleted"

    def apply(self, handle: StageResult, *, dry_run: bool) -> bool:
        """Log the summaries, then commit (or discard in dry run).

        Returns:
            True when the change set was executed.
        """
        if isinstance(handle, NoChangeResult):
            logger.info("Stack did not change", extra={"stack": handle.stack_name})
            return False

        for line in handle.summary_lines():
            logger.info(line, extra={"stack": handle.stack_name})

        if dry_run:
            logger.info(
                "Deleting change set because this is a dry run",
                extra={"stack": handle.stack_name},
            )
            self.discard(handle)
            return False

        self.commit(handle)
        return True
