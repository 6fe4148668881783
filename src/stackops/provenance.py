"""Operation records for audit.

Every create, update and delete emits exactly one structured record that
answers what was attempted, against which stack, what the stack looked like
before and after, and how it ended. Records go to the standard logger; the
JSON formatter set up in main makes them queryable wherever logs are shipped.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
STACKOPS_VERSION = os.environ.get("STACKOPS_VERSION", "dev")


@dataclass
class OperationRecord:
    """Provenance of one mutating stack operation."""

    operation: str
    stack_name: str
    region: str = ""
    dry_run: bool = True

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    tool_version: str = STACKOPS_VERSION
    git_commit_sha: str = ""

    status_before: str | None = None
    status_after: str | None = None

    changed_parameters: list[str] = field(default_factory=list)
    secrets_changed: bool = False
    change_count: int = 0
    tag_warnings: int = 0

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class OperationRecorder:
    """Creates, times and logs operation records."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self.records: list[OperationRecord] = []

    @contextmanager
    def record(
        self,
        operation: str,
        stack_name: str,
        *,
        region: str = "",
        dry_run: bool = True,
        status_before: str | None = None,
    ) -> Iterator[OperationRecord]:
        """Track one operation; the record is logged when the block exits.

        Exceptions are noted on the record and re-raised.
        """
        record = OperationRecord(
            operation=operation,
            stack_name=stack_name,
            region=region,
            dry_run=dry_run,
            git_commit_sha=self._git_commit_sha,
            status_before=status_before,
        )
        started = self._clock()
        try:
            yield record
        except Exception as e:
            record.error = str(e)
            record.error_type = type(e).__name__
            raise
        finally:
            record.duration_seconds = round(self._clock() - started, 3)
            self.records.append(record)
            self.log_record(record)

    def log_record(self, record: OperationRecord) -> None:
        log_level = logging.INFO
        if record.error:
            log_level = logging.ERROR
        elif record.tag_warnings:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Stack operation",
            extra={
                "provenance": record.to_dict(),
                # Flatten key fields for easier querying
                "operation": record.operation,
                "stack": record.stack_name,
                "dry_run": record.dry_run,
                "status_before": record.status_before,
                "status_after": record.status_after,
                "duration_seconds": record.duration_seconds,
            },
        )
