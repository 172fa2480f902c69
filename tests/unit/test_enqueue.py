"""Unit tests for JobEnqueuer and request fingerprinting."""

from __future__ import annotations

import asyncio
import json

import pytest

from docgen.commands.enqueue_job import JobEnqueuer, compute_request_hash
from docgen.domain.models import DocgenRequest
from docgen.domain.states import JobStatus
from docgen.store.base import JobQuery


def _request(envelope, **overrides) -> DocgenRequest:
    return DocgenRequest.model_validate_json(envelope(**overrides))


@pytest.mark.unit
class TestRequestHash:
    def test_hash_is_prefixed_sha256(self, envelope) -> None:
        value = compute_request_hash(_request(envelope))
        assert value.startswith('sha256:')
        assert len(value) == len('sha256:') + 64

    def test_key_order_does_not_matter(self, envelope) -> None:
        a = _request(envelope, data={'a': 1, 'b': {'x': 1, 'y': 2}})
        b = _request(envelope, data={'b': {'y': 2, 'x': 1}, 'a': 1})
        assert compute_request_hash(a) == compute_request_hash(b)

    def test_format_changes_hash(self, envelope) -> None:
        pdf = _request(envelope, outputFormat='PDF')
        docx = _request(envelope, outputFormat='DOCX')
        assert compute_request_hash(pdf) != compute_request_hash(docx)

    def test_file_name_does_not_change_hash(self, envelope) -> None:
        a = _request(envelope, outputFileName='A.pdf')
        b = _request(envelope, outputFileName='B.pdf')
        assert compute_request_hash(a) == compute_request_hash(b)


@pytest.mark.unit
class TestEnqueue:
    @pytest.mark.asyncio
    async def test_creates_queued_job(self, store, envelope) -> None:
        result = await JobEnqueuer(store).enqueue(_request(envelope), 'cid-123')

        job = result.job
        assert result.created is True
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0
        assert job.correlation_id == 'cid-123'
        assert job.request_hash.startswith('sha256:')
        stored = json.loads(job.request_envelope)
        assert stored['templateId'] == 'tpl-001'
        assert stored['requestHash'] == job.request_hash

    @pytest.mark.asyncio
    async def test_double_invocation_yields_one_job(self, store, envelope) -> None:
        enqueuer = JobEnqueuer(store)

        first, second = await asyncio.gather(
            enqueuer.enqueue(_request(envelope), 'cid-1'),
            enqueuer.enqueue(_request(envelope), 'cid-2'),
        )

        assert first.job.id == second.job.id
        assert sorted([first.created, second.created]) == [False, True]
        assert await store.count(JobQuery()) == 1

    @pytest.mark.asyncio
    async def test_returns_finished_job_with_its_artifact(self, store, envelope) -> None:
        enqueuer = JobEnqueuer(store)
        first = await enqueuer.enqueue(_request(envelope), 'cid-1')
        await store.update(first.job.id, {'status': JobStatus.SUCCEEDED, 'output_file_id': '068xx1', 'attempts': 1})

        again = await enqueuer.enqueue(_request(envelope), 'cid-2')

        assert again.created is False
        assert again.job.output_file_id == '068xx1'

    @pytest.mark.asyncio
    async def test_failed_job_does_not_block_a_new_attempt(self, store, envelope) -> None:
        enqueuer = JobEnqueuer(store)
        first = await enqueuer.enqueue(_request(envelope), 'cid-1')
        await store.update(first.job.id, {'status': JobStatus.FAILED, 'error': 'Template tpl-001 not found', 'attempts': 1})

        again = await enqueuer.enqueue(_request(envelope), 'cid-2')

        assert again.created is True
        assert again.job.id != first.job.id
