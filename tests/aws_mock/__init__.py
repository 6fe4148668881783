"""AWS API fakes for integration testing.

This package provides in-memory implementations of the AWS clients stackops
uses, so that the real code can be driven end to end without network access.

Key Features:
- In-memory state for stacks, change sets, parameters, alarms, rules, groups
- Scripted stack status sequences (in progress, then complete or failed)
- Change sets computed from parameter differences, "no changes" included
- Error injection per method (e.g. throttling on tag calls)
- A fake clock whose sleep advances time instantly

Usage:
    from aws_mock import FakeAws

    aws = FakeAws()
    services = aws.stack_services()
"""

from .base import FakeClient, client_error
from .cloudformation import NO_CHANGES_REASON, FakeCloudFormation, FakeStack
from .context import FakeAws, FakeClock
from .process import FakePopen, FakeResponse, FakeSession
from .services import FakeAutoScaling, FakeCloudWatch, FakeEvents, FakeS3, FakeSsm

__all__ = [
    "NO_CHANGES_REASON",
    "FakeAutoScaling",
    "FakeAws",
    "FakeClient",
    "FakeClock",
    "FakeCloudFormation",
    "FakeCloudWatch",
    "FakeEvents",
    "FakePopen",
    "FakeResponse",
    "FakeS3",
    "FakeSession",
    "FakeSsm",
    "FakeStack",
    "client_error",
]
