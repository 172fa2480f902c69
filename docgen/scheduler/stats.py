import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from docgen.domain.states import JobOutcome


@dataclass(frozen=True)
class PollerStatus:
    is_running: bool
    current_queue_depth: int
    last_poll_time: Optional[datetime]


@dataclass(frozen=True)
class StatsSnapshot:
    is_running: bool
    total_processed: int
    total_succeeded: int
    total_failed: int
    total_retries: int
    current_queue_depth: int
    last_poll_time: Optional[datetime]
    uptime_seconds: float


@dataclass
class PollerStats:
    """
    Process-local counters, reset on restart.

    Updated only from coroutines on the poller's event loop, between awaits,
    so plain integer increments are safe even with concurrent job tasks.
    """

    started_at: float = field(default_factory=time.monotonic)
    total_processed: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    total_retries: int = 0
    total_skipped: int = 0
    total_abandoned: int = 0
    poll_errors: int = 0
    cycles: int = 0
    last_poll_time: Optional[datetime] = None

    def record(self, outcome: JobOutcome) -> None:
        if outcome == JobOutcome.SKIPPED:
            self.total_skipped += 1
            return

        self.total_processed += 1
        if outcome == JobOutcome.SUCCEEDED:
            self.total_succeeded += 1
        elif outcome == JobOutcome.FAILED:
            self.total_failed += 1
        elif outcome == JobOutcome.RETRIED:
            self.total_retries += 1
        elif outcome == JobOutcome.ABANDONED:
            self.total_abandoned += 1

    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at
