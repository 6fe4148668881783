"""Adapters for stack child resources the engine does not fully manage.

Each adapter wraps one AWS service client and exposes the small surface the
tag sweep and volatile parameter lookups need. Adapters are built from the
stack's resource summaries by ResourceFactory, keyed by resource type.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .tags import Tag

logger = logging.getLogger(__name__)

# Returns a boto3 client for a service name, e.g. "cloudwatch"
ServiceClientFactory = Callable[[str], Any]


class ResourceNotFound(LookupError):
    """Raised when a child resource cannot be found by its physical id."""

    pass


class Alarm:
    """A CloudWatch alarm."""

    RESOURCE_TYPE = "AWS::CloudWatch::Alarm"
    SERVICE = "cloudwatch"

    def __init__(self, client: Any, name: str) -> None:
        self._client = client
        self._name = name
        self._arn: str | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def arn(self) -> str:
        if self._arn is None:
            response = self._client.describe_alarms(AlarmNames=[self._name])
            alarms = response.get("MetricAlarms", []) + response.get("CompositeAlarms", [])
            if not alarms:
                raise ResourceNotFound(f"Alarm {self._name} not found")
            self._arn = alarms[0]["AlarmArn"]
        return self._arn

    def tags(self) -> list[dict[str, str]]:
        return self._client.list_tags_for_resource(ResourceARN=self.arn).get("Tags", [])

    def tag_resource(self, tags: list[Tag]) -> None:
        self._client.tag_resource(ResourceARN=self.arn, Tags=[tag.to_api() for tag in tags])


class EventRule:
    """An EventBridge rule."""

    RESOURCE_TYPE = "AWS::Events::Rule"
    SERVICE = "events"

    def __init__(self, client: Any, name: str) -> None:
        self._client = client
        self._name = name
        self._arn: str | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def arn(self) -> str:
        if self._arn is None:
            # Rules on a custom bus have a "bus|rule" physical id
            bus, _, rule = self._name.rpartition("|")
            kwargs = {"Name": rule}
            if bus:
                kwargs["EventBusName"] = bus
            self._arn = self._client.describe_rule(**kwargs)["Arn"]
        return self._arn

    def tags(self) -> list[dict[str, str]]:
        return self._client.list_tags_for_resource(ResourceARN=self.arn).get("Tags", [])

    def tag_resource(self, tags: list[Tag]) -> None:
        self._client.tag_resource(ResourceARN=self.arn, Tags=[tag.to_api() for tag in tags])


class AutoScalingGroup:
    """An autoscaling group."""

    RESOURCE_TYPE = "AWS::AutoScaling::AutoScalingGroup"
    SERVICE = "autoscaling"

    def __init__(self, client: Any, name: str) -> None:
        self._client = client
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def describe(self) -> dict[str, Any]:
        response = self._client.describe_auto_scaling_groups(AutoScalingGroupNames=[self._name])
        groups = response.get("AutoScalingGroups", [])
        if not groups:
            raise ResourceNotFound(f"Autoscaling group {self._name} not found")
        return groups[0]

    @property
    def desired_capacity(self) -> int:
        return int(self.describe()["DesiredCapacity"])

    def tags(self) -> list[dict[str, str]]:
        return [
            {"Key": tag["Key"], "Value": tag.get("Value", "")}
            for tag in self.describe().get("Tags", [])
        ]

    def tag_resource(self, tags: list[Tag]) -> None:
        self._client.create_or_update_tags(
            Tags=[
                {
                    "ResourceId": self._name,
                    "ResourceType": "auto-scaling-group",
                    "Key": tag.key,
                    "Value": tag.value,
                    "PropagateAtLaunch": True,
                }
                for tag in tags
            ]
        )


ALL_TYPES: dict[str, type[Alarm] | type[EventRule] | type[AutoScalingGroup]] = {
    AutoScalingGroup.RESOURCE_TYPE: AutoScalingGroup,
    Alarm.RESOURCE_TYPE: Alarm,
    EventRule.RESOURCE_TYPE: EventRule,
}


class ResourceFactory:
    """Builds adapters from stack resource summaries."""

    def __init__(
        self, client_factory: ServiceClientFactory, types: Iterable[str] | None = None
    ) -> None:
        self._client_factory = client_factory
        if types is None:
            self._types = dict(ALL_TYPES)
        else:
            wanted = set(types)
            self._types = {name: klass for name, klass in ALL_TYPES.items() if name in wanted}

    @property
    def types(self) -> list[str]:
        return list(self._types)

    def from_stack_resource(self, summary: Mapping[str, Any]) -> Any | None:
        """Build an adapter for a resource summary, or None for unknown types."""
        klass = self._types.get(summary.get("ResourceType", ""))
        if klass is None:
            return None
        physical_id = summary.get("PhysicalResourceId")
        if not physical_id:
            return None
        return klass(self._client_factory(klass.SERVICE), physical_id)

    def from_stack_resource_strict(self, summary: Mapping[str, Any]) -> Any:
        """Like from_stack_resource but fails for unsupported types.

        Raises:
            ValueError: If the resource type has no adapter.
        """
        resource = self.from_stack_resource(summary)
        if resource is None:
            raise ValueError(
                f"'{summary.get('ResourceType')}' is not supported. "
                f"Supported types: {self.types}"
            )
        return resource
