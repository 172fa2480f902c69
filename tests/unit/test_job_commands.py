"""Unit tests for the terminal writes and the expired-lock janitor."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

import pytest

from docgen.commands.claim_job import claim_job
from docgen.commands.complete_job import complete_job
from docgen.commands.fail_job import ERROR_MAX_LENGTH, fail_job
from docgen.commands.requeue_expired import requeue_expired_jobs
from docgen.domain.errors import JobNotFoundError
from docgen.domain.retry import RetryPolicy
from docgen.domain.states import ErrorKind, JobOutcome, JobStatus

POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=30, max_delay_seconds=600, jitter=0)


async def _claimed(store, now, **fields):
    job_id = await store.insert({'status': JobStatus.QUEUED, **fields})
    return await claim_job(store, job_id, now)


@pytest.mark.unit
class TestCompleteJob:
    @pytest.mark.asyncio
    async def test_success_records_artifact_and_releases_lock(self, store, now: datetime) -> None:
        claim = await _claimed(store, now, error=None)

        await complete_job(store, claim.job, claim.lease, '068xx0000001')

        job = await store.get(claim.job.id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.output_file_id == '068xx0000001'
        assert job.attempts == 1
        assert job.locked_until is None
        assert job.error is None

    @pytest.mark.asyncio
    async def test_empty_output_id_rejected(self, store, now: datetime) -> None:
        claim = await _claimed(store, now)
        with pytest.raises(ValueError):
            await complete_job(store, claim.job, claim.lease, '')

    @pytest.mark.asyncio
    async def test_vanished_job_raises(self, store, now: datetime) -> None:
        claim = await _claimed(store, now)
        await store.delete(claim.job.id)
        with pytest.raises(JobNotFoundError):
            await complete_job(store, claim.job, claim.lease, '068x')


@pytest.mark.unit
class TestFailJob:
    @pytest.mark.asyncio
    async def test_non_retryable_fails_after_one_attempt(self, store, now: datetime) -> None:
        claim = await _claimed(store, now)

        outcome = await fail_job(store, claim.job, 'Template tpl-9 not found', ErrorKind.NON_RETRYABLE, POLICY, now)

        job = await store.get(claim.job.id)
        assert outcome == JobOutcome.FAILED
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert job.locked_until is None
        assert 'not found' in job.error

    @pytest.mark.asyncio
    async def test_retryable_requeues_with_backoff(self, store, now: datetime) -> None:
        claim = await _claimed(store, now)

        outcome = await fail_job(store, claim.job, 'render timed out', ErrorKind.RETRYABLE, POLICY, now)

        job = await store.get(claim.job.id)
        assert outcome == JobOutcome.RETRIED
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert job.locked_until is None
        assert job.scheduled_retry_time == now + timedelta(seconds=30)
        assert job.error is None

    @pytest.mark.asyncio
    async def test_retryable_on_last_attempt_is_exhausted(self, store, now: datetime) -> None:
        claim = await _claimed(store, now, attempts=2)

        outcome = await fail_job(store, claim.job, 'HTTP 503', ErrorKind.RETRYABLE, POLICY, now)

        job = await store.get(claim.job.id)
        assert outcome == JobOutcome.FAILED
        assert job.attempts == 3
        assert job.error == 'max attempts exceeded: HTTP 503'

    @pytest.mark.asyncio
    async def test_backoff_grows_between_retries(self, store, now: datetime) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=30, jitter=0.2)
        rng = random.Random(3)
        claim = await _claimed(store, now)

        await fail_job(store, claim.job, 'timeout', ErrorKind.RETRYABLE, policy, now, rng=rng)
        first = (await store.get(claim.job.id)).scheduled_retry_time

        later = first + timedelta(seconds=1)
        claim = await claim_job(store, claim.job.id, later)
        await fail_job(store, claim.job, 'timeout', ErrorKind.RETRYABLE, policy, later, rng=rng)
        second = (await store.get(claim.job.id)).scheduled_retry_time

        assert (second - later) >= (first - now)

    @pytest.mark.asyncio
    async def test_long_error_is_truncated(self, store, now: datetime) -> None:
        claim = await _claimed(store, now)

        await fail_job(store, claim.job, 'x' * (ERROR_MAX_LENGTH + 500), ErrorKind.FATAL, POLICY, now)

        job = await store.get(claim.job.id)
        assert len(job.error) == ERROR_MAX_LENGTH
        assert job.error.endswith('...')

    @pytest.mark.asyncio
    async def test_empty_error_still_recorded(self, store, now: datetime) -> None:
        claim = await _claimed(store, now)

        await fail_job(store, claim.job, '', ErrorKind.FATAL, POLICY, now)

        assert (await store.get(claim.job.id)).error == 'Unknown error'


@pytest.mark.unit
class TestRequeueExpired:
    @pytest.mark.asyncio
    async def test_expired_lease_goes_back_to_queue(self, store, now: datetime) -> None:
        job_id = await store.insert({'status': JobStatus.PROCESSING, 'locked_until': now - timedelta(seconds=5)})

        count = await requeue_expired_jobs(store, now, max_attempts=3)

        job = await store.get(job_id)
        assert count == 1
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert job.locked_until is None

    @pytest.mark.asyncio
    async def test_expired_lease_on_last_attempt_fails(self, store, now: datetime) -> None:
        job_id = await store.insert({
            'status': JobStatus.PROCESSING,
            'locked_until': now - timedelta(seconds=5),
            'attempts': 2,
        })

        await requeue_expired_jobs(store, now, max_attempts=3)

        job = await store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert job.error == 'max attempts exceeded: lease expired'

    @pytest.mark.asyncio
    async def test_live_leases_untouched(self, store, now: datetime) -> None:
        job_id = await store.insert({'status': JobStatus.PROCESSING, 'locked_until': now + timedelta(seconds=120)})

        count = await requeue_expired_jobs(store, now, max_attempts=3)

        assert count == 0
        assert (await store.get(job_id)).status == JobStatus.PROCESSING
