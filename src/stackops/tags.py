"""Stack tags and the tag sweep for child resources.

The engine propagates stack tags to most resources it creates, but not to
all of them (alarms, event rules and autoscaling groups among others). After
a successful create or update the TagReconciler applies whatever stack tags
those resources are missing. The sweep is best effort: it runs after the
stack mutation already succeeded, so its failures are reported as warnings
and never raised.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

VALID_TAG_KEY_PATTERN = r"\A[\w\-/.+=:@]{1,128}\Z"
VALID_TAG_VALUE_PATTERN = r"\A[\w\-/.+=:@ ]{0,256}\Z"
RESERVED_TAG_KEY_PREFIX = "aws:"

THROTTLING_ERROR_CODES: frozenset[str] = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
})

# Tag calls retried on throttling before the resource is reported as a warning
DEFAULT_TAG_MAX_ATTEMPTS = 8


class TagError(Exception):
    """Raised when a tag key or value is invalid."""

    pass


@dataclass(frozen=True)
class Tag:
    """A validated key/value tag."""

    key: str
    value: str

    def __post_init__(self) -> None:
        if self.key is None or not isinstance(self.key, str):
            raise TagError("The tag key must be a string")
        if self.value is None:
            raise TagError(f"The value for tag '{self.key}' cannot be None")
        if not isinstance(self.value, str):
            raise TagError(f"The value for tag '{self.key}' must be a string")
        if not re.match(VALID_TAG_KEY_PATTERN, self.key):
            raise TagError(f"The tag key '{self.key}' is invalid")
        if self.key.startswith(RESERVED_TAG_KEY_PREFIX):
            raise TagError(
                f"The tag key '{self.key}' cannot start with '{RESERVED_TAG_KEY_PREFIX}'"
            )
        if not re.match(VALID_TAG_VALUE_PATTERN, self.value):
            raise TagError(f"The value '{self.value}' for tag '{self.key}' is invalid")

    def to_api(self) -> dict[str, str]:
        return {"Key": self.key, "Value": self.value}


def tags_from_mapping(tags: Mapping[str, Any] | Iterable[Tag] | None) -> list[Tag]:
    """Build validated tags from a key -> value mapping (or pass Tags through).

    Non-string values are stringified, except None which is rejected.

    Raises:
        TagError: If any key or value is invalid.
    """
    if not tags:
        return []
    if isinstance(tags, Mapping):
        result = []
        for key, value in tags.items():
            if value is None:
                raise TagError(f"The value for tag '{key}' cannot be None")
            if isinstance(value, bool):
                value = "true" if value else "false"
            result.append(Tag(str(key), str(value)))
        return result
    return list(tags)


def missing_tags(desired: Iterable[Tag], present: Iterable[Mapping[str, Any]]) -> list[Tag]:
    """Tags in desired that are not on the resource, keeping desired's order.

    present holds tags as the remote APIs return them ({"Key": ..., "Value": ...}).
    """
    present_pairs = {(tag.get("Key"), tag.get("Value")) for tag in present}
    return [tag for tag in desired if (tag.key, tag.value) not in present_pairs]


def is_throttling_error(error: Exception) -> bool:
    if not isinstance(error, ClientError):
        return False
    return error.response.get("Error", {}).get("Code") in THROTTLING_ERROR_CODES


class TaggableResource(Protocol):
    """A child resource whose tags can be read and added to."""

    @property
    def name(self) -> str: ...

    def tags(self) -> list[dict[str, str]]: ...

    def tag_resource(self, tags: list[Tag]) -> None: ...


@dataclass
class TagReconcileResult:
    """Outcome of a tag sweep."""

    tagged: dict[str, list[Tag]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


class TagReconciler:
    """Applies missing stack tags to child resources.

    Throttled tag calls are retried after attempt**2 seconds. Any other
    failure, or running out of attempts, becomes a warning on the result.
    """

    def __init__(
        self,
        tags: Iterable[Tag],
        *,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = DEFAULT_TAG_MAX_ATTEMPTS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._tags = list(tags)
        self._sleep = sleep
        self._max_attempts = max_attempts

    def reconcile_resource(self, resource: TaggableResource) -> list[Tag]:
        """Apply the stack tags this resource is missing.

        Returns:
            The tags that were applied (empty if none were missing).

        Raises:
            ClientError: On non-throttling failures or when retries run out.
        """
        missing = missing_tags(self._tags, resource.tags())
        if not missing:
            return []

        logger.debug("Tagging resource", extra={"resource": resource.name, "tags": len(missing)})

        attempt = 1
        while True:
            try:
                resource.tag_resource(missing)
                return missing
            except ClientError as e:
                if not is_throttling_error(e) or attempt >= self._max_attempts:
                    raise
                retry_in = attempt**2
                logger.debug(
                    "Tagging throttled, retrying",
                    extra={"resource": resource.name, "attempt": attempt, "retry_in": retry_in},
                )
                self._sleep(retry_in)
                attempt += 1

    def reconcile(self, resources: Iterable[TaggableResource]) -> TagReconcileResult:
        """Sweep every resource; never raises for per-resource failures."""
        result = TagReconcileResult()
        if not self._tags:
            return result

        for resource in resources:
            try:
                applied = self.reconcile_resource(resource)
            except (ClientError, LookupError) as e:
                message = f"Could not tag {resource.name}: {e}"
                logger.warning(message, extra={"resource": resource.name})
                result.warnings.append(message)
                continue
            if applied:
                result.tagged[resource.name] = applied

        return result
