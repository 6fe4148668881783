"""Status polling with progress messages and bounded attempts.

Waiting is cooperative polling on a fixed delay; there is no push notification
from the orchestration engine. The waiter only observes transitions, it never
drives them, so an interrupted wait can simply be started again: all state
lives remotely.

Clock and sleep are injected so tests run without real delays.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class WaitFailed(Exception):
    """Raised when the observed resource reaches a terminal failure state."""

    def __init__(self, message: str, status: str | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


class WaitTimeout(WaitFailed):
    """Raised when max attempts are exhausted while still in progress."""

    pass


class WaitMessage:
    """Progress message with elapsed time, throttled to one per interval."""

    def __init__(
        self,
        message: str,
        *,
        clock: Callable[[], float] = time.monotonic,
        min_interval_seconds: float = 0.0,
    ) -> None:
        self._message = message
        self._clock = clock
        self._start_time = clock()
        self._last_said: float | None = None
        self._min_interval_seconds = min_interval_seconds

    @property
    def elapsed_seconds(self) -> int:
        return round(self._clock() - self._start_time)

    def text(self) -> str:
        elapsed_minutes, remainder_seconds = divmod(self.elapsed_seconds, 60)
        return f"{self._message}... ({elapsed_minutes}m{remainder_seconds}s elapsed)"

    def say_it(self) -> bool:
        """Log the progress message unless one was logged too recently.

        Returns:
            True if the message was logged.
        """
        now = self._clock()
        if (
            self._last_said is not None
            and now - self._last_said < self._min_interval_seconds
        ):
            return False

        self._last_said = now
        logger.debug(self.text())
        return True


@dataclass(frozen=True)
class WaitTarget:
    """What a wait is waiting for.

    in_progress: statuses that keep the loop polling.
    success: statuses that end the wait successfully.
    failure: statuses that end the wait with WaitFailed.
    Any other status observed while polling is treated as a failure.
    """

    word: str
    in_progress: frozenset[str]
    success: frozenset[str]
    failure: frozenset[str] = field(default_factory=frozenset)


class Waiter:
    """Generic polling loop over a status fetcher."""

    def __init__(
        self,
        *,
        delay_seconds: float,
        max_attempts: int,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        message_interval_seconds: float = 0.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")

        self._delay_seconds = delay_seconds
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._clock = clock
        self._message_interval_seconds = message_interval_seconds

    @property
    def delay_seconds(self) -> float:
        return self._delay_seconds

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def wait_for(
        self,
        fetch_status: Callable[[], str],
        target: WaitTarget,
        *,
        subject: str,
        failure_reason: Callable[[str], str | None] | None = None,
        on_attempt: Callable[[int, WaitMessage], None] | None = None,
    ) -> str:
        """Poll until the target's success or failure state is reached.

        If the current status is not one of the target's in-progress states,
        returns immediately without polling (or raises if it is a failure
        state): there is nothing left to wait for.

        Args:
            fetch_status: Returns the current remote status text.
            target: The states that define this wait.
            subject: Human-readable name for messages (e.g. "stack app").
            failure_reason: Optional lookup of the engine's reason for a
                failure status.
            on_attempt: Optional callback invoked before each poll.

        Returns:
            The final status text.

        Raises:
            WaitFailed: On a terminal failure state.
            WaitTimeout: When max attempts are exhausted.
        """
        status = fetch_status()

        if status not in target.in_progress:
            if status in target.success:
                logger.debug(
                    "Nothing to wait for",
                    extra={"subject": subject, "status": status},
                )
                return status
            if status in target.failure:
                raise self._failure(subject, target, status, failure_reason)
            logger.debug(
                "Not in an expected in-progress state, not waiting",
                extra={"subject": subject, "status": status},
            )
            return status

        wait_message = WaitMessage(
            f"Waiting for {subject} to be {target.word}",
            clock=self._clock,
            min_interval_seconds=self._message_interval_seconds,
        )

        for attempt in range(1, self._max_attempts + 1):
            wait_message.say_it()
            if on_attempt is not None:
                on_attempt(attempt, wait_message)

            self._sleep(self._delay_seconds)
            status = fetch_status()

            if status in target.success:
                return status
            if status in target.in_progress:
                continue
            raise self._failure(subject, target, status, failure_reason)

        logger.error(
            "Waiting failed: max attempts exceeded",
            extra={
                "subject": subject,
                "status": status,
                "max_attempts": self._max_attempts,
            },
        )
        raise WaitTimeout(
            f"{subject} was not {target.word} after {self._max_attempts} attempts "
            f"(last status {status})",
            status=status,
        )

    @staticmethod
    def _failure(
        subject: str,
        target: WaitTarget,
        status: str,
        failure_reason: Callable[[str], str | None] | None,
    ) -> WaitFailed:
        reason = failure_reason(status) if failure_reason is not None else None
        message = f"{subject} failed to be {target.word}: status {status}"
        if reason:
            message = f"{message} ({reason})"
        logger.error("Waiting failed: %s", message, extra={"subject": subject, "status": status})
        return WaitFailed(message, status=status, reason=reason)
