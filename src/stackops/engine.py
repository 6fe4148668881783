"""Boundary adapters over the AWS SDK.

CloudFormationEngine and ParameterStore are thin wrappers around boto3
clients. They translate the few SDK errors that carry an idempotent meaning
(a stack that does not exist, a change set with nothing to change, a missing
parameter) into return values, and let every other ClientError propagate.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .status import DOES_NOT_EXIST, StackEvent
from .template import TemplateInvalid

logger = logging.getLogger(__name__)

STACK_DOES_NOT_EXIST_PATTERN = r"Stack.*does not exist"
NO_CHANGES_PATTERNS = (
    r"didn't contain changes",
    r"No updates are to be performed",
)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", "")


def is_stack_missing_error(error: ClientError) -> bool:
    return bool(re.search(STACK_DOES_NOT_EXIST_PATTERN, error_message(error)))


def is_no_changes_reason(reason: str | None) -> bool:
    if not reason:
        return False
    return any(re.search(pattern, reason) for pattern in NO_CHANGES_PATTERNS)


class ClientProvider:
    """Creates and caches one boto3 client per service for a region."""

    def __init__(self, region: str, session: boto3.session.Session | None = None) -> None:
        self._region = region
        self._session = session or boto3.session.Session()
        self._clients: dict[tuple[str, str], Any] = {}

    @property
    def region(self) -> str:
        return self._region

    def __call__(self, service_name: str, region: str | None = None) -> Any:
        key = (service_name, region or self._region)
        if key not in self._clients:
            self._clients[key] = self._session.client(service_name, region_name=key[1])
        return self._clients[key]


class CloudFormationEngine:
    """Stack, change set and template calls against CloudFormation."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        return self._client

    # Stacks

    def describe_stack(self, stack_name: str) -> dict[str, Any] | None:
        """Describe a stack, or None when it does not exist."""
        try:
            response = self._client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if is_stack_missing_error(e):
                return None
            raise
        stacks = response.get("Stacks", [])
        return stacks[0] if stacks else None

    def stack_status(self, stack_name: str) -> str:
        stack = self.describe_stack(stack_name)
        if stack is None:
            return DOES_NOT_EXIST
        return stack["StackStatus"]

    def stack_status_reason(self, stack_name: str) -> str | None:
        stack = self.describe_stack(stack_name)
        return stack.get("StackStatusReason") if stack else None

    def stack_parameters(self, stack_name: str) -> dict[str, str]:
        """Parameter key -> value of the deployed stack (empty if absent)."""
        stack = self.describe_stack(stack_name)
        if stack is None:
            return {}
        return {
            parameter["ParameterKey"]: parameter.get("ParameterValue", "")
            for parameter in stack.get("Parameters", [])
        }

    def stack_outputs(self, stack_name: str) -> dict[str, str]:
        stack = self.describe_stack(stack_name)
        if stack is None:
            return {}
        return {output["OutputKey"]: output["OutputValue"] for output in stack.get("Outputs", [])}

    def stack_events(self, stack_name: str) -> Iterator[StackEvent]:
        """Yield the stack's events newest first, fetching pages lazily."""
        kwargs: dict[str, Any] = {"StackName": stack_name}
        while True:
            try:
                response = self._client.describe_stack_events(**kwargs)
            except ClientError as e:
                if is_stack_missing_error(e):
                    return
                raise
            for event in response.get("StackEvents", []):
                yield StackEvent.from_api(event)
            next_token = response.get("NextToken")
            if not next_token:
                return
            kwargs["NextToken"] = next_token

    def stack_resources(self, stack_name: str) -> list[dict[str, Any]]:
        """Resource summaries (logical id, physical id, type) of a stack."""
        resources: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {"StackName": stack_name}
        while True:
            response = self._client.list_stack_resources(**kwargs)
            resources.extend(response.get("StackResourceSummaries", []))
            next_token = response.get("NextToken")
            if not next_token:
                return resources
            kwargs["NextToken"] = next_token

    def template_body(self, stack_name: str) -> str:
        body = self._client.get_template(StackName=stack_name)["TemplateBody"]
        # JSON templates come back already parsed
        if isinstance(body, dict):
            return json.dumps(body)
        return body

    def validate_template(self, body: str | None = None, url: str | None = None) -> dict[str, Any]:
        """Have the engine validate a template.

        Raises:
            TemplateInvalid: If the engine rejects the template.
        """
        if (body is None) == (url is None):
            raise ValueError("Exactly one of body or url is required")
        kwargs = {"TemplateBody": body} if body is not None else {"TemplateURL": url}
        try:
            return self._client.validate_template(**kwargs)
        except ClientError as e:
            if error_code(e) == "ValidationError":
                raise TemplateInvalid(error_message(e), body=body) from e
            raise

    def create_stack(self, **kwargs: Any) -> str:
        return self._client.create_stack(**kwargs)["StackId"]

    def delete_stack(self, stack_name: str) -> None:
        self._client.delete_stack(StackName=stack_name)

    # Change sets

    def create_change_set(self, **kwargs: Any) -> str:
        return self._client.create_change_set(**kwargs)["Id"]

    def describe_change_set(
        self, change_set_id: str, stack_name: str | None = None
    ) -> dict[str, Any]:
        """Describe a change set, merging every page of its Changes."""
        kwargs: dict[str, Any] = {"ChangeSetName": change_set_id}
        if stack_name:
            kwargs["StackName"] = stack_name
        description: dict[str, Any] | None = None
        while True:
            response = self._client.describe_change_set(**kwargs)
            if description is None:
                description = dict(response)
                description["Changes"] = list(response.get("Changes", []))
            else:
                description["Changes"].extend(response.get("Changes", []))
            next_token = response.get("NextToken")
            if not next_token:
                description.pop("NextToken", None)
                return description
            kwargs["NextToken"] = next_token

    def execute_change_set(self, change_set_id: str, stack_name: str | None = None) -> None:
        kwargs: dict[str, Any] = {"ChangeSetName": change_set_id}
        if stack_name:
            kwargs["StackName"] = stack_name
        self._client.execute_change_set(**kwargs)

    def delete_change_set(self, change_set_id: str, stack_name: str | None = None) -> None:
        kwargs: dict[str, Any] = {"ChangeSetName": change_set_id}
        if stack_name:
            kwargs["StackName"] = stack_name
        self._client.delete_change_set(**kwargs)


class StoredParameter:
    """A parameter read from the store.

    Descriptions are not returned by path listings, so they are looked up
    lazily, and only when a caller actually needs one.
    """

    def __init__(self, store: ParameterStore, data: dict[str, Any]) -> None:
        self._store = store
        self.name: str = data["Name"]
        self.value: str = data.get("Value", "")
        self.type: str = data.get("Type", "String")
        self._description: str | None = data.get("Description")
        self._description_loaded = "Description" in data

    @property
    def description(self) -> str | None:
        if not self._description_loaded:
            self._description = self._store.description_of(self.name)
            self._description_loaded = True
        return self._description

    def __repr__(self) -> str:
        return f"StoredParameter(name={self.name!r}, type={self.type!r})"


class ParameterStore:
    """Path-addressed SSM parameter store access."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def parameters_by_path(self, path: str) -> dict[str, StoredParameter]:
        """All parameters under a path, recursively, with values decrypted."""
        found: dict[str, StoredParameter] = {}
        kwargs: dict[str, Any] = {"Path": path, "Recursive": True, "WithDecryption": True}
        while True:
            response = self._client.get_parameters_by_path(**kwargs)
            for parameter in response.get("Parameters", []):
                found[parameter["Name"]] = StoredParameter(self, parameter)
            next_token = response.get("NextToken")
            if not next_token:
                return found
            kwargs["NextToken"] = next_token

    def description_of(self, name: str) -> str | None:
        response = self._client.describe_parameters(
            ParameterFilters=[{"Key": "Name", "Option": "Equals", "Values": [name]}],
            MaxResults=1,
        )
        parameters = response.get("Parameters", [])
        return parameters[0].get("Description") if parameters else None

    def get(self, name: str) -> dict[str, Any] | None:
        """Read one parameter by exact name, or None if it does not exist."""
        try:
            return self._client.get_parameter(Name=name, WithDecryption=True)["Parameter"]
        except ClientError as e:
            if error_code(e) == "ParameterNotFound":
                return None
            raise

    def put(self, name: str, value: str, type_: str, description: str | None = None) -> None:
        kwargs: dict[str, Any] = {"Name": name, "Value": value, "Type": type_, "Overwrite": True}
        if description:
            kwargs["Description"] = description
        self._client.put_parameter(**kwargs)

    def delete(self, names: Iterable[str]) -> list[str]:
        """Delete one batch of names; returns names the store reported invalid."""
        response = self._client.delete_parameters(Names=list(names))
        return list(response.get("InvalidParameters", []))
