"""Tests for tag validation and the tag sweep."""

from __future__ import annotations

import pytest

from aws_mock import client_error
from stackops.tags import (
    Tag,
    TagError,
    TagReconciler,
    is_throttling_error,
    missing_tags,
    tags_from_mapping,
)


class FakeResource:
    """A taggable resource held in memory."""

    def __init__(self, name: str, tags: dict[str, str] | None = None) -> None:
        self.name = name
        self.current = dict(tags or {})
        self.errors: list[Exception] = []
        self.tag_calls = 0

    def tags(self) -> list[dict[str, str]]:
        return [{"Key": key, "Value": value} for key, value in self.current.items()]

    def tag_resource(self, tags: list[Tag]) -> None:
        self.tag_calls += 1
        if self.errors:
            raise self.errors.pop(0)
        self.current.update({tag.key: tag.value for tag in tags})


class TestTag:
    """Tests for Tag validation."""

    def test_valid(self) -> None:
        """Keys and values in the allowed charset are accepted."""
        tag = Tag("team:owner", "platform team@example.com")

        assert tag.to_api() == {"Key": "team:owner", "Value": "platform team@example.com"}

    @pytest.mark.parametrize("key", ["", "bad key", "x" * 129, "aws:cloudformation:stack"])
    def test_invalid_keys(self, key: str) -> None:
        """Blank, badly formed, overlong and reserved keys are rejected."""
        with pytest.raises(TagError):
            Tag(key, "value")

    def test_invalid_value(self) -> None:
        """Values are limited to 256 characters of the allowed charset."""
        with pytest.raises(TagError):
            Tag("team", "x" * 257)
        with pytest.raises(TagError):
            Tag("team", "semi;colon")

    def test_empty_value_allowed(self) -> None:
        """An empty value is valid."""
        assert Tag("team", "").value == ""

    def test_from_mapping(self) -> None:
        """Mappings are converted in order with bools in YAML form."""
        tags = tags_from_mapping({"team": "platform", "public": False, "tier": 2})

        assert [(tag.key, tag.value) for tag in tags] == [
            ("team", "platform"),
            ("public", "false"),
            ("tier", "2"),
        ]

    def test_from_mapping_rejects_none(self) -> None:
        """A None value is a validation error."""
        with pytest.raises(TagError):
            tags_from_mapping({"team": None})


class TestMissingTags:
    """Tests for the set difference."""

    def test_difference(self) -> None:
        """Only absent or differing tags are missing."""
        desired = [Tag("team", "platform"), Tag("env", "qa"), Tag("cost", "42")]
        present = [{"Key": "team", "Value": "platform"}, {"Key": "env", "Value": "prod"}]

        assert missing_tags(desired, present) == [Tag("env", "qa"), Tag("cost", "42")]

    def test_applying_missing_converges(self) -> None:
        """After applying the missing tags nothing is missing."""
        resource = FakeResource("alarm", {"team": "platform"})
        desired = [Tag("team", "platform"), Tag("env", "qa")]

        resource.tag_resource(missing_tags(desired, resource.tags()))

        assert missing_tags(desired, resource.tags()) == []


class TestTagReconciler:
    """Tests for TagReconciler."""

    def test_tags_missing_only(self) -> None:
        """Resources are tagged with what they lack; complete ones are left alone."""
        complete = FakeResource("complete", {"team": "platform"})
        partial = FakeResource("partial")
        reconciler = TagReconciler([Tag("team", "platform")], sleep=lambda s: None)

        result = reconciler.reconcile([complete, partial])

        assert result.ok
        assert result.tagged == {"partial": [Tag("team", "platform")]}
        assert complete.tag_calls == 0

    def test_throttling_retried_with_quadratic_backoff(self) -> None:
        """Throttled calls are retried after 1, 4, 9 seconds."""
        sleeps: list[float] = []
        resource = FakeResource("alarm")
        resource.errors = [client_error("Throttling", "Rate exceeded")] * 3
        reconciler = TagReconciler([Tag("team", "platform")], sleep=sleeps.append)

        result = reconciler.reconcile([resource])

        assert result.ok
        assert sleeps == [1, 4, 9]
        assert resource.current == {"team": "platform"}

    def test_retries_bounded(self) -> None:
        """Running out of attempts becomes a warning."""
        resource = FakeResource("alarm")
        resource.errors = [client_error("ThrottlingException")] * 5
        reconciler = TagReconciler([Tag("team", "p")], sleep=lambda s: None, max_attempts=3)

        result = reconciler.reconcile([resource])

        assert not result.ok
        assert resource.tag_calls == 3
        assert "alarm" in result.warnings[0]

    def test_other_errors_are_warnings(self) -> None:
        """Non-throttling failures never raise out of the sweep."""
        broken = FakeResource("broken")
        broken.errors = [client_error("AccessDenied", "not allowed")]
        fine = FakeResource("fine")
        reconciler = TagReconciler([Tag("team", "platform")], sleep=lambda s: None)

        result = reconciler.reconcile([broken, fine])

        assert len(result.warnings) == 1
        assert "fine" in result.tagged

    def test_missing_resource_is_a_warning(self) -> None:
        """A resource that cannot be found is reported, not raised."""

        class Gone(FakeResource):
            def tags(self) -> list[dict[str, str]]:
                raise LookupError("Alarm gone not found")

        reconciler = TagReconciler([Tag("team", "platform")], sleep=lambda s: None)

        result = reconciler.reconcile([Gone("gone")])

        assert result.warnings == ["Could not tag gone: Alarm gone not found"]

    def test_no_tags_no_calls(self) -> None:
        """Without stack tags there is nothing to do."""
        resource = FakeResource("alarm")

        TagReconciler([], sleep=lambda s: None).reconcile([resource])

        assert resource.tag_calls == 0

    def test_is_throttling_error(self) -> None:
        """Only the throttling codes count."""
        assert is_throttling_error(client_error("TooManyRequestsException"))
        assert not is_throttling_error(client_error("AccessDenied"))
        assert not is_throttling_error(ValueError("Throttling"))
