"""Tests for stack status classification and reports."""

from __future__ import annotations

import pytest

from aws_mock import FakeClock
from stackops.status import (
    DOES_NOT_EXIST,
    CachedStatus,
    StackEvent,
    StackStatus,
    StatusBucket,
    StatusReport,
    classify,
    failed_events_since_last_user_event,
    is_transitional,
)


def event(status: str, reason: str | None = None, logical_id: str = "Resource") -> StackEvent:
    return StackEvent(
        logical_resource_id=logical_id,
        resource_type="AWS::SNS::Topic",
        status=status,
        reason=reason,
    )


class TestClassify:
    """Tests for the status classifier."""

    @pytest.mark.parametrize(
        ("status", "bucket"),
        [
            (DOES_NOT_EXIST, StatusBucket.ABSENT),
            ("DELETE_COMPLETE", StatusBucket.ABSENT),
            ("CREATE_IN_PROGRESS", StatusBucket.CREATING),
            ("REVIEW_IN_PROGRESS", StatusBucket.CREATING),
            ("UPDATE_IN_PROGRESS", StatusBucket.UPDATING),
            ("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS", StatusBucket.UPDATING),
            ("DELETE_IN_PROGRESS", StatusBucket.DELETING),
            ("CREATE_COMPLETE", StatusBucket.SUCCEEDED),
            ("UPDATE_COMPLETE", StatusBucket.SUCCEEDED),
            ("ROLLBACK_IN_PROGRESS", StatusBucket.FAILED),
            ("UPDATE_ROLLBACK_COMPLETE", StatusBucket.FAILED),
            ("DELETE_FAILED", StatusBucket.FAILED),
        ],
    )
    def test_buckets(self, status: str, bucket: StatusBucket) -> None:
        """Every engine status lands in exactly one bucket."""
        assert classify(status) == bucket

    def test_every_known_status_classifies(self) -> None:
        """No status of the enum is left unclassified."""
        for status in StackStatus:
            classify(status.value)

    def test_unknown_status(self) -> None:
        """Unknown status texts are an error."""
        with pytest.raises(ValueError):
            classify("SOMETHING_NEW")

    def test_is_transitional(self) -> None:
        """Only in-progress statuses are transitional."""
        assert is_transitional("UPDATE_IN_PROGRESS")
        assert not is_transitional("UPDATE_COMPLETE")
        assert not is_transitional(DOES_NOT_EXIST)


class TestFailedEvents:
    """Tests for failed event extraction."""

    def test_stops_at_last_user_initiated_event(self) -> None:
        """Only failures newer than the last user-initiated event count."""
        events = [
            event("UPDATE_ROLLBACK_COMPLETE"),
            event("UPDATE_FAILED", "Property X is invalid", "Topic"),
            event("UPDATE_IN_PROGRESS", "User Initiated"),
            event("CREATE_FAILED", "old failure", "Queue"),
        ]

        failed = failed_events_since_last_user_event(events)

        assert [e.logical_resource_id for e in failed] == ["Topic"]

    def test_failures_without_reason_are_skipped(self) -> None:
        """Failed events without a reason say nothing useful."""
        assert failed_events_since_last_user_event([event("CREATE_FAILED")]) == []

    def test_from_api(self) -> None:
        """Events are read from the API shape."""
        parsed = StackEvent.from_api(
            {
                "LogicalResourceId": "Topic",
                "ResourceType": "AWS::SNS::Topic",
                "ResourceStatus": "CREATE_FAILED",
                "ResourceStatusReason": "Access denied",
            }
        )

        assert parsed.failed
        assert parsed.reason == "Access denied"
        assert not parsed.user_initiated


class TestStatusReport:
    """Tests for StatusReport predicates and serialization."""

    def test_predicates(self) -> None:
        """Predicates follow the status buckets."""
        assert StatusReport("app", "CREATE_IN_PROGRESS").creating
        assert StatusReport("app", "UPDATE_IN_PROGRESS").updating
        assert StatusReport("app", "DELETE_IN_PROGRESS").deleting
        assert StatusReport("app", "ROLLBACK_COMPLETE").failed
        assert StatusReport("app", "UPDATE_COMPLETE").succeeded
        assert not StatusReport("app", DOES_NOT_EXIST).exists

    def test_to_dict(self) -> None:
        """The report serializes the bucket and failed events."""
        report = StatusReport(
            "app",
            "UPDATE_ROLLBACK_COMPLETE",
            failed_events=(event("UPDATE_FAILED", "bad", "Topic"),),
        )

        data = report.to_dict()

        assert data["stack"] == "app"
        assert data["bucket"] == "failed"
        assert data["failed_events_since_last_user_event"][0]["reason"] == "bad"


class TestCachedStatus:
    """Tests for the short-lived status cache."""

    def test_cached_within_ttl(self) -> None:
        """Repeated reads inside the TTL fetch once."""
        clock = FakeClock()
        fetches: list[int] = []

        def fetch() -> str:
            fetches.append(1)
            return "CREATE_COMPLETE"

        cached = CachedStatus(fetch, ttl_seconds=5, clock=clock)
        cached.get()
        cached.get()
        assert len(fetches) == 1

        clock.now = 6
        cached.get()
        assert len(fetches) == 2

    def test_reload_and_invalidate(self) -> None:
        """reload and invalidate both force a fetch."""
        clock = FakeClock()
        fetches: list[int] = []

        def fetch() -> str:
            fetches.append(1)
            return "CREATE_COMPLETE"

        cached = CachedStatus(fetch, clock=clock)
        cached.get()
        cached.get(reload=True)
        cached.invalidate()
        cached.get()

        assert len(fetches) == 3
