import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from docgen.api.v1.metrics import JOB_OUTCOMES, POLL_CYCLE_ERRORS, POLL_CYCLES_SKIPPED, POLLER_RUNNING, QUEUE_DEPTH
from docgen.commands.claim_job import build_claim_query, claim_job
from docgen.commands.requeue_expired import requeue_expired_jobs
from docgen.domain.errors import JobStoreError
from docgen.domain.models import BatchResult, Exhausted, Job, LostRace, utc_now
from docgen.domain.states import JobOutcome
from docgen.scheduler.processor import JobProcessor
from docgen.scheduler.stats import PollerStats, PollerStatus, StatsSnapshot
from docgen.store.base import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollerConfig:
    poll_interval_seconds: float = 10
    batch_size: int = 10
    concurrency: int = 1
    lease_duration_seconds: int = 300
    max_attempts: int = 3
    requeue_expired_locks: bool = False

    @classmethod
    def from_settings(cls, settings) -> "PollerConfig":
        return cls(
            poll_interval_seconds=settings.POLL_INTERVAL_SECONDS,
            batch_size=settings.BATCH_SIZE,
            concurrency=settings.WORKER_CONCURRENCY,
            lease_duration_seconds=settings.LEASE_DURATION_SECONDS,
            max_attempts=settings.MAX_ATTEMPTS,
            requeue_expired_locks=settings.REQUEUE_EXPIRED_LOCKS,
        )


class PollerService:
    """
    Timer-driven poll loop: Stopped -> Running -> Stopped.

    Each cycle queries claimable jobs, claims them one at a time and hands
    each claimed job to the processor. Only one cycle runs at a time; a tick
    that fires while a cycle is still draining is dropped.
    """

    def __init__(
        self,
        store: JobStore,
        processor: JobProcessor,
        config: Optional[PollerConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.processor = processor
        self.config = config or PollerConfig()
        self.clock = clock
        self.stats = PollerStats()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._cycle_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Returns False without changing anything if already running."""
        if self._running:
            return False

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        POLLER_RUNNING.set(1)
        logger.info(
            "Poller started (interval=%ss, batch=%d, concurrency=%d, lease=%ss)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            self.config.concurrency,
            self.config.lease_duration_seconds,
        )
        return True

    async def stop(self) -> bool:
        """
        Stops scheduling new cycles and waits for the in-flight cycle, if any,
        to drain. Returns False if the poller was not running.
        """
        if not self._running:
            return False

        self._running = False
        if self._stop_event:
            self._stop_event.set()
        POLLER_RUNNING.set(0)

        task, self._task = self._task, None
        if task and task is not asyncio.current_task():
            await task
        logger.info("Poller stopped")
        return True

    async def _loop(self):
        loop = asyncio.get_running_loop()
        interval = self.config.poll_interval_seconds
        next_tick = loop.time()

        while self._running:
            try:
                await self.process_batch()
            except Exception as e:
                logger.error(f"Error in poll loop: {e}", exc_info=True)

            next_tick += interval
            now = loop.time()
            if next_tick < now:
                # Ticks that fell inside a long cycle are dropped, not queued
                missed = int((now - next_tick) // interval) + 1
                POLL_CYCLES_SKIPPED.inc(missed)
                next_tick += missed * interval

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(next_tick - now, 0))
            except asyncio.TimeoutError:
                pass

    async def process_batch(self) -> BatchResult:
        """Runs one poll cycle. Skipped if another cycle is still in progress."""
        if self._cycle_lock.locked():
            logger.info("Previous poll cycle still running, skipping this one")
            POLL_CYCLES_SKIPPED.inc()
            return BatchResult(skipped=True)

        async with self._cycle_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> BatchResult:
        now = self.clock()
        self.stats.last_poll_time = now
        self.stats.cycles += 1
        result = BatchResult()

        try:
            if self.config.requeue_expired_locks:
                await requeue_expired_jobs(self.store, now, self.config.max_attempts)
            candidates = await self.store.query(build_claim_query(self.config.batch_size, now))
        except JobStoreError as e:
            self.stats.poll_errors += 1
            POLL_CYCLE_ERRORS.inc()
            logger.error("Poll cycle aborted, job store unavailable: %s", e)
            result.error = str(e)
            return result

        if not candidates:
            logger.debug("No claimable jobs")
            return result

        if self.config.concurrency <= 1:
            for job in candidates:
                await self._claim_and_process(job, result)
        else:
            semaphore = asyncio.Semaphore(self.config.concurrency)

            async def bounded(job: Job):
                async with semaphore:
                    await self._claim_and_process(job, result)

            await asyncio.gather(*(bounded(job) for job in candidates))

        logger.info(
            "Poll cycle finished: %d candidates, %d claimed, %d lost to other workers",
            len(candidates), result.claimed, result.lost,
        )
        return result

    async def _claim_and_process(self, job: Job, result: BatchResult) -> None:
        # Claim right before processing so the lease clock starts with the work
        claim = await claim_job(
            self.store,
            job.id,
            self.clock(),
            self.config.lease_duration_seconds,
            max_attempts=self.config.max_attempts,
        )
        if isinstance(claim, LostRace):
            result.lost += 1
            logger.debug("Lost claim on job %s: %s", job.id, claim.reason)
            return
        if isinstance(claim, Exhausted):
            # Failed by the claim itself; nothing left to process
            JOB_OUTCOMES.labels(outcome=JobOutcome.FAILED).inc()
            self.stats.record(JobOutcome.FAILED)
            result.outcomes.append(JobOutcome.FAILED)
            return

        result.claimed += 1
        try:
            outcome = await self.processor.process(claim.job, claim.lease)
        except Exception as e:
            logger.error(f"Processor raised for job {job.id}: {e}", exc_info=True)
            outcome = JobOutcome.ABANDONED

        self.stats.record(outcome)
        result.outcomes.append(outcome)

    async def queue_depth(self) -> int:
        depth = await self.store.count(build_claim_query(self.config.batch_size, self.clock()))
        QUEUE_DEPTH.set(depth)
        return depth

    async def status(self) -> PollerStatus:
        return PollerStatus(
            is_running=self._running,
            current_queue_depth=await self.queue_depth(),
            last_poll_time=self.stats.last_poll_time,
        )

    async def snapshot(self) -> StatsSnapshot:
        stats = self.stats
        return StatsSnapshot(
            is_running=self._running,
            total_processed=stats.total_processed,
            total_succeeded=stats.total_succeeded,
            total_failed=stats.total_failed,
            total_retries=stats.total_retries,
            current_queue_depth=await self.queue_depth(),
            last_poll_time=stats.last_poll_time,
            uptime_seconds=round(stats.uptime_seconds(), 3),
        )
