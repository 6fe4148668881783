"""Stack status classification.

Maps the engine's lifecycle status texts into coarse buckets and defines the
wait targets for create, update, delete and change set staging.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .waiter import WaitTarget

# Status used when the engine reports that a stack does not exist
DOES_NOT_EXIST = "DOES_NOT_EXIST"

USER_INITIATED_REASON = "User Initiated"

# Seconds a fetched status may be reused for repeated reads within one operation
STATUS_CACHE_TTL_SECONDS = 5.0


class StackStatus(str, Enum):
    """Every stack status text the engine reports, plus DOES_NOT_EXIST."""

    DOES_NOT_EXIST = DOES_NOT_EXIST
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_FAILED = "CREATE_FAILED"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_FAILED = "DELETE_FAILED"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    IMPORT_IN_PROGRESS = "IMPORT_IN_PROGRESS"
    IMPORT_COMPLETE = "IMPORT_COMPLETE"
    IMPORT_ROLLBACK_IN_PROGRESS = "IMPORT_ROLLBACK_IN_PROGRESS"
    IMPORT_ROLLBACK_FAILED = "IMPORT_ROLLBACK_FAILED"
    IMPORT_ROLLBACK_COMPLETE = "IMPORT_ROLLBACK_COMPLETE"


class StatusBucket(str, Enum):
    """Coarse classification of a status."""

    ABSENT = "absent"
    CREATING = "creating"
    UPDATING = "updating"
    DELETING = "deleting"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


CREATING_STATUSES: frozenset[str] = frozenset({StackStatus.CREATE_IN_PROGRESS.value})

UPDATING_STATUSES: frozenset[str] = frozenset({
    StackStatus.UPDATE_IN_PROGRESS.value,
    StackStatus.UPDATE_COMPLETE_CLEANUP_IN_PROGRESS.value,
    StackStatus.UPDATE_ROLLBACK_IN_PROGRESS.value,
    StackStatus.UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS.value,
})

DELETING_STATUSES: frozenset[str] = frozenset({StackStatus.DELETE_IN_PROGRESS.value})

FAILURE_STATUSES: frozenset[str] = frozenset({
    StackStatus.ROLLBACK_COMPLETE.value,
    StackStatus.ROLLBACK_IN_PROGRESS.value,
    StackStatus.CREATE_FAILED.value,
    StackStatus.ROLLBACK_FAILED.value,
    StackStatus.DELETE_FAILED.value,
    StackStatus.UPDATE_FAILED.value,
    StackStatus.UPDATE_ROLLBACK_FAILED.value,
    StackStatus.UPDATE_ROLLBACK_COMPLETE.value,
    StackStatus.IMPORT_ROLLBACK_FAILED.value,
    StackStatus.IMPORT_ROLLBACK_COMPLETE.value,
})

SUCCESS_STATUSES: frozenset[str] = frozenset({
    StackStatus.CREATE_COMPLETE.value,
    StackStatus.UPDATE_COMPLETE.value,
    StackStatus.IMPORT_COMPLETE.value,
})

ABSENT_STATUSES: frozenset[str] = frozenset({
    DOES_NOT_EXIST,
    StackStatus.DELETE_COMPLETE.value,
})

# Transitional statuses not covered by the creating/updating/deleting buckets
OTHER_TRANSITIONAL_STATUSES: frozenset[str] = frozenset({
    StackStatus.REVIEW_IN_PROGRESS.value,
    StackStatus.IMPORT_IN_PROGRESS.value,
    StackStatus.IMPORT_ROLLBACK_IN_PROGRESS.value,
})


def classify(status: str) -> StatusBucket:
    """Map a status text to its coarse bucket.

    Failure wins over transitional: ROLLBACK_IN_PROGRESS after a create is
    already a failed create, even though the engine is still working.

    Raises:
        ValueError: If the status text is not known.
    """
    if status in ABSENT_STATUSES:
        return StatusBucket.ABSENT
    if status in FAILURE_STATUSES:
        return StatusBucket.FAILED
    if status in CREATING_STATUSES:
        return StatusBucket.CREATING
    if status in UPDATING_STATUSES:
        return StatusBucket.UPDATING
    if status in DELETING_STATUSES:
        return StatusBucket.DELETING
    if status in SUCCESS_STATUSES:
        return StatusBucket.SUCCEEDED
    if status == StackStatus.REVIEW_IN_PROGRESS.value:
        return StatusBucket.CREATING
    if status in OTHER_TRANSITIONAL_STATUSES:
        return StatusBucket.UPDATING
    raise ValueError(f"Unknown stack status: {status}")


def is_transitional(status: str) -> bool:
    return classify(status) in (StatusBucket.CREATING, StatusBucket.UPDATING, StatusBucket.DELETING)


# Wait targets for stack operations

CREATE_TARGET = WaitTarget(
    word="created",
    in_progress=CREATING_STATUSES,
    success=frozenset({StackStatus.CREATE_COMPLETE.value}),
    failure=FAILURE_STATUSES | ABSENT_STATUSES,
)

UPDATE_TARGET = WaitTarget(
    word="updated",
    in_progress=UPDATING_STATUSES,
    success=frozenset({StackStatus.UPDATE_COMPLETE.value}),
    failure=FAILURE_STATUSES | ABSENT_STATUSES,
)

DELETE_TARGET = WaitTarget(
    word="deleted",
    in_progress=DELETING_STATUSES,
    success=ABSENT_STATUSES,
    failure=frozenset({StackStatus.DELETE_FAILED.value}),
)

# Change set statuses (a different status vocabulary from stacks)
CHANGE_SET_READY_TARGET = WaitTarget(
    word="ready",
    in_progress=frozenset({"CREATE_PENDING", "CREATE_IN_PROGRESS"}),
    success=frozenset({"CREATE_COMPLETE"}),
    failure=frozenset({"FAILED", "DELETE_COMPLETE", "DELETE_FAILED"}),
)


@dataclass(frozen=True)
class StackEvent:
    """One entry of a stack's event history."""

    logical_resource_id: str
    resource_type: str
    status: str
    reason: str | None = None
    timestamp: Any = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> StackEvent:
        return cls(
            logical_resource_id=data.get("LogicalResourceId", ""),
            resource_type=data.get("ResourceType", ""),
            status=data.get("ResourceStatus", ""),
            reason=data.get("ResourceStatusReason"),
            timestamp=data.get("Timestamp"),
        )

    @property
    def failed(self) -> bool:
        return self.status in FAILURE_STATUSES or self.status.endswith("_FAILED")

    @property
    def user_initiated(self) -> bool:
        return self.reason == USER_INITIATED_REASON

    def to_dict(self) -> dict[str, Any]:
        return {
            "logical_resource_id": self.logical_resource_id,
            "resource_type": self.resource_type,
            "status": self.status,
            "reason": self.reason,
        }


def failed_events_since_last_user_event(events: Iterable[StackEvent]) -> list[StackEvent]:
    """Collect failed events (with a reason) newer than the last user-initiated event.

    Args:
        events: Events ordered newest first, as the engine returns them.
    """
    failed: list[StackEvent] = []
    for event in events:
        if event.failed and event.reason:
            failed.append(event)
        if event.user_initiated:
            break
    return failed


@dataclass(frozen=True)
class StatusReport:
    """Snapshot of a stack's status."""

    stack_name: str
    status: str
    failed_events: tuple[StackEvent, ...] = field(default_factory=tuple)

    @property
    def bucket(self) -> StatusBucket:
        return classify(self.status)

    @property
    def exists(self) -> bool:
        return self.status != DOES_NOT_EXIST

    @property
    def failed(self) -> bool:
        return self.status in FAILURE_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def creating(self) -> bool:
        return self.status in CREATING_STATUSES

    @property
    def updating(self) -> bool:
        return self.status in UPDATING_STATUSES

    @property
    def deleting(self) -> bool:
        return self.status in DELETING_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack": self.stack_name,
            "status": self.status,
            "bucket": self.bucket.value,
            "failed_events_since_last_user_event": [e.to_dict() for e in self.failed_events],
        }


class CachedStatus:
    """Short-lived cache for repeated status reads within a single operation."""

    def __init__(
        self,
        fetch: Callable[[], str],
        *,
        ttl_seconds: float = STATUS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: str | None = None
        self._fetched_at: float | None = None

    def get(self, reload: bool = False) -> str:
        now = self._clock()
        if (
            reload
            or self._value is None
            or self._fetched_at is None
            or now - self._fetched_at >= self._ttl_seconds
        ):
            self._value = self._fetch()
            self._fetched_at = now
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self._fetched_at = None
