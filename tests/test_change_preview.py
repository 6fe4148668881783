"""Tests for staging, committing and discarding change sets."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from botocore.exceptions import ClientError

from aws_mock import NO_CHANGES_REASON, FakeAws, client_error
from stackops.change_preview import (
    ChangeHandle,
    ChangePreview,
    ChangePreviewFailed,
    ChangeSummary,
    NoChangeResult,
)
from stackops.engine import CloudFormationEngine
from stackops.parameters import USE_PREVIOUS_VALUE
from stackops.waiter import Waiter


def make_preview(aws: FakeAws) -> ChangePreview:
    return ChangePreview(
        CloudFormationEngine(aws.cloudformation),
        Waiter(delay_seconds=1, max_attempts=5, sleep=aws.clock.sleep, clock=aws.clock),
        now=lambda: datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC),
    )


@pytest.fixture
def deployed(aws: FakeAws) -> FakeAws:
    aws.cloudformation.add_stack(
        "qa-app-web", "CREATE_COMPLETE", parameters={"Size": "1", "Name": "web"}
    )
    return aws


class TestStage:
    """Tests for ChangePreview.stage."""

    def test_changes_return_handle(self, deployed: FakeAws) -> None:
        """A change set with changes is ready to commit."""
        preview = make_preview(deployed)

        handle = preview.stage(
            stack_name="qa-app-web",
            parameters={"Size": "2", "Name": USE_PREVIOUS_VALUE},
            tags=[{"Key": "team", "Value": "platform"}],
        )

        assert isinstance(handle, ChangeHandle)
        assert handle.has_changes
        assert handle.change_set_name == "qa-app-web-20240506-070809"
        assert handle.has_change_caused_by("Size")
        assert not handle.has_change_caused_by("Name")
        assert handle.parameter_value("Size") == "2"
        assert handle.parameter_value("Name") == "web"
        request = deployed.cloudformation.calls_to("create_change_set")[0]
        assert request["UsePreviousTemplate"] is True
        assert request["Tags"] == [{"Key": "team", "Value": "platform"}]
        assert {"ParameterKey": "Name", "UsePreviousValue": True} in request["Parameters"]

    def test_template_body_sent(self, deployed: FakeAws) -> None:
        """A template body replaces the previous template."""
        make_preview(deployed).stage(
            stack_name="qa-app-web", template_body="{}", parameters={"Size": "1"}
        )

        request = deployed.cloudformation.calls_to("create_change_set")[0]
        assert request["TemplateBody"] == "{}"
        assert "UsePreviousTemplate" not in request

    def test_no_changes_via_status_reason(self, deployed: FakeAws) -> None:
        """A FAILED change set with the no-changes reason is deleted, not raised."""
        result = make_preview(deployed).stage(
            stack_name="qa-app-web", parameters={"Size": USE_PREVIOUS_VALUE}
        )

        assert isinstance(result, NoChangeResult)
        assert not result.has_changes
        assert result.reason == NO_CHANGES_REASON
        assert deployed.cloudformation.change_sets == {}
        assert result.summaries() == []

    def test_no_changes_via_client_error(self, deployed: FakeAws) -> None:
        """An immediate no-updates error is also a no-change result."""
        deployed.cloudformation.fail_on(
            "create_change_set", client_error("ValidationError", "No updates are to be performed.")
        )

        result = make_preview(deployed).stage(stack_name="qa-app-web", parameters={})

        assert isinstance(result, NoChangeResult)
        assert result.change_set_id is None

    def test_other_client_errors_propagate(self, deployed: FakeAws) -> None:
        """Unrelated SDK errors are not swallowed."""
        deployed.cloudformation.fail_on("create_change_set", client_error("AccessDenied"))

        with pytest.raises(ClientError):
            make_preview(deployed).stage(stack_name="qa-app-web", parameters={})

    def test_failed_change_set_raises(self, deployed: FakeAws) -> None:
        """Other failures carry the engine's reason."""
        deployed.cloudformation.change_set_outcomes.append(
            ("FAILED", "Parameter Size must be a number")
        )

        with pytest.raises(ChangePreviewFailed) as exc_info:
            make_preview(deployed).stage(stack_name="qa-app-web", parameters={"Size": "x"})

        assert exc_info.value.reason == "Parameter Size must be a number"
        assert "Parameter Size must be a number" in str(exc_info.value)


class TestCommitAndDiscard:
    """Tests for applying a staged change set."""

    def stage(self, aws: FakeAws) -> tuple[ChangePreview, ChangeHandle]:
        preview = make_preview(aws)
        handle = preview.stage(stack_name="qa-app-web", parameters={"Size": "3"})
        assert isinstance(handle, ChangeHandle)
        return preview, handle

    def test_commit_executes(self, deployed: FakeAws) -> None:
        """Commit executes the change set once."""
        preview, handle = self.stage(deployed)

        assert preview.apply(handle, dry_run=False) is True

        assert handle.state == "executed"
        assert deployed.cloudformation.stacks["qa-app-web"].parameters["Size"] == "3"
        with pytest.raises(ChangePreviewFailed):
            preview.commit(handle)

    def test_dry_run_discards(self, deployed: FakeAws) -> None:
        """In dry run the change set is deleted and nothing executes."""
        preview, handle = self.stage(deployed)

        assert preview.apply(handle, dry_run=True) is False

        assert handle.state == "deleted"
        assert deployed.cloudformation.calls_to("execute_change_set") == []
        assert deployed.cloudformation.change_sets == {}

    def test_discard_twice_is_noop(self, deployed: FakeAws) -> None:
        """Discarding an already deleted change set does nothing."""
        preview, handle = self.stage(deployed)
        preview.discard(handle)
        preview.discard(handle)

        assert len(deployed.cloudformation.calls_to("delete_change_set")) == 1

    def test_apply_no_change(self, deployed: FakeAws) -> None:
        """A no-change result is neither executed nor deleted again."""
        result = NoChangeResult(stack_name="qa-app-web")

        assert make_preview(deployed).apply(result, dry_run=False) is False
        assert deployed.cloudformation.calls_to("execute_change_set") == []


class TestChangeSummary:
    """Tests for change summaries."""

    def test_modify_text(self) -> None:
        """Modify changes list replacement, scope and causes."""
        summary = ChangeSummary.from_api(
            {
                "ResourceChange": {
                    "Action": "Modify",
                    "LogicalResourceId": "Topic",
                    "ResourceType": "AWS::SNS::Topic",
                    "Replacement": "True",
                    "Scope": ["Properties"],
                    "Details": [
                        {"ChangeSource": "ParameterReference", "CausingEntity": "EnvName"},
                        {"ChangeSource": "DirectModification"},
                    ],
                }
            }
        )

        assert summary.text() == (
            "Modify 'Topic' (AWS::SNS::Topic): Replacement=True; "
            "Due to change in Properties; "
            "Causes: ParameterReference:EnvName, DirectModification"
        )

    def test_add_text(self) -> None:
        """Other actions are one short line."""
        summary = ChangeSummary.from_api(
            {
                "ResourceChange": {
                    "Action": "Add",
                    "LogicalResourceId": "Queue",
                    "ResourceType": "AWS::SQS::Queue",
                }
            }
        )

        assert summary.text() == "Add 'Queue' (AWS::SQS::Queue)"
