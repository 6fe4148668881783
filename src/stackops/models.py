"""Pydantic models for deployment specs.

A deployment spec describes the stacks of one application for any
environment: templates, parameter defaults, volatile parameters, tags and
secret blocks. Validation happens at the boundary; nothing downstream has to
re-check shapes.
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

VALID_ID_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_-]*$"
VALID_PARAMETER_NAME_PATTERN = r"^[A-Za-z0-9]{1,255}$"

# YAML scalars are accepted as tag values and stringified when tags are built
TagValue = str | int | float | bool


class SpecModel(BaseModel):
    """Common model settings: camelCase aliases, snake_case also accepted."""

    model_config = {"extra": "forbid", "populate_by_name": True}


class GitSource(SpecModel):
    """A file in a GitHub repository."""

    org_slash_repo: str = Field(alias="orgSlashRepo")
    path: Annotated[str, Field(min_length=1)]
    sha: str | None = None
    branch: str | None = None

    @field_validator("org_slash_repo")
    @classmethod
    def validate_repo(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$", v):
            raise ValueError("orgSlashRepo must look like 'org/repo'")
        return v

    @model_validator(mode="after")
    def check_revision(self) -> GitSource:
        if self.sha and self.branch:
            raise ValueError("Give either sha or branch, not both")
        return self


class SecretSpecificationSource(SpecModel):
    """Where a secrets specification comes from (exactly one source)."""

    content: dict[str, Any] | str | None = None
    file: str | None = None
    git: GitSource | None = None
    top_key: str | None = Field(None, alias="topKey")

    @model_validator(mode="after")
    def check_one_source(self) -> SecretSpecificationSource:
        given = [name for name in ("content", "file", "git") if getattr(self, name) is not None]
        if len(given) != 1:
            raise ValueError(f"Exactly one of content, file or git is required (got {given})")
        return self


class SecretsBlockSpec(SpecModel):
    """One block of secrets for a stack."""

    id: str | None = None
    specifications: Annotated[list[SecretSpecificationSource], Field(min_length=1)]
    substitutions: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str | None) -> str | None:
        if v is not None and not re.match(VALID_ID_PATTERN, v):
            raise ValueError(f"id must match {VALID_ID_PATTERN}")
        return v


class StackOutputRef(SpecModel):
    """An output of this stack (stack omitted) or of a sibling stack."""

    key: Annotated[str, Field(min_length=1)]
    stack: str | None = None


class VolatileSource(SpecModel):
    """Where a volatile parameter's live value is read from."""

    asg_desired_capacity: str | None = Field(None, alias="asgDesiredCapacity")
    stack_output: StackOutputRef | None = Field(None, alias="stackOutput")

    @model_validator(mode="after")
    def check_one_source(self) -> VolatileSource:
        if (self.asg_desired_capacity is None) == (self.stack_output is None):
            raise ValueError("Exactly one of asgDesiredCapacity or stackOutput is required")
        return self


class StackSpec(SpecModel):
    """One stack of a deployment."""

    id: str
    template_path: str | None = Field(None, alias="templatePath")
    capabilities: list[str] | None = None
    parameter_defaults: dict[str, Any] = Field(default_factory=dict, alias="parameterDefaults")
    volatile_parameters: dict[str, VolatileSource] = Field(
        default_factory=dict, alias="volatileParameters"
    )
    cycle_trigger_parameter: str | None = Field(None, alias="cycleTriggerParameter")
    termination_protection: bool | None = Field(None, alias="terminationProtection")
    tags: dict[str, TagValue] = Field(default_factory=dict)
    secrets: list[SecretsBlockSpec] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(VALID_ID_PATTERN, v):
            raise ValueError(f"id must match {VALID_ID_PATTERN}")
        return v

    @field_validator("capabilities")
    @classmethod
    def validate_capabilities(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        valid = {
            "iam",
            "named_iam",
            "auto_expand",
            "CAPABILITY_IAM",
            "CAPABILITY_NAMED_IAM",
            "CAPABILITY_AUTO_EXPAND",
        }
        invalid = [capability for capability in v if capability not in valid]
        if invalid:
            raise ValueError(f"capabilities must be in {sorted(valid)}: {invalid}")
        return v

    @field_validator("parameter_defaults", "volatile_parameters")
    @classmethod
    def validate_parameter_names(cls, v: dict[str, Any]) -> dict[str, Any]:
        invalid = [name for name in v if not re.match(VALID_PARAMETER_NAME_PATTERN, name)]
        if invalid:
            raise ValueError(f"invalid parameter names: {invalid}")
        return v

    @model_validator(mode="after")
    def check_secret_block_ids(self) -> StackSpec:
        ids = [block.id for block in self.secrets]
        if len(self.secrets) > 1 and (None in ids or len(set(ids)) != len(ids)):
            raise ValueError("Multiple secret blocks need distinct ids")
        return self


class DeploymentSpec(SpecModel):
    """A named group of stacks, created in order and deleted in reverse."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=64)]
    template_directory: str | None = Field(None, alias="templateDirectory")
    tags: dict[str, TagValue] = Field(default_factory=dict)
    shared_substitutions: dict[str, Any] = Field(
        default_factory=dict, alias="sharedSubstitutions"
    )
    stacks: Annotated[list[StackSpec], Field(min_length=1)]

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_ID_PATTERN, v):
            raise ValueError(f"name must match {VALID_ID_PATTERN}")
        return v

    @model_validator(mode="after")
    def check_stack_ids(self) -> DeploymentSpec:
        ids = [stack.id for stack in self.stacks]
        duplicates = sorted({stack_id for stack_id in ids if ids.count(stack_id) > 1})
        if duplicates:
            raise ValueError(f"duplicate stack ids: {duplicates}")
        known = set(ids)
        for stack in self.stacks:
            for name, source in stack.volatile_parameters.items():
                ref = source.stack_output
                if ref is not None and ref.stack is not None and ref.stack not in known:
                    raise ValueError(
                        f"stack {stack.id}: volatile parameter {name} refers to "
                        f"unknown stack {ref.stack}"
                    )
        return self

    def stack(self, stack_id: str) -> StackSpec:
        for stack in self.stacks:
            if stack.id == stack_id:
                return stack
        raise KeyError(stack_id)
