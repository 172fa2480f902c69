"""Root test configuration for the docgen worker tests."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from docgen.store.memory import InMemoryJobStore


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line('markers', 'unit: Unit tests (no external services)')
    config.addinivalue_line('markers', 'integration: Tests against a real database engine')


def make_envelope(**overrides: Any) -> str:
    """Serialised generation request in the stored (camelCase) shape."""
    body: dict[str, Any] = {
        'templateId': 'tpl-001',
        'outputFileName': 'Quote.pdf',
        'outputFormat': 'PDF',
        'locale': 'en-GB',
        'timezone': 'Europe/London',
        'options': {'storeMergedDocx': False, 'returnDocxToBrowser': False},
        'data': {'Account': {'Name': 'Acme'}},
        'parents': {'AccountId': '001xx0000001', 'OpportunityId': None},
    }
    body.update(overrides)
    return json.dumps(body)


class FakeRenderer:
    """Renderer double: returns fixed bytes or raises the queued errors in order."""

    def __init__(self, content: bytes = b'%PDF-1.7 fake'):
        self.content = content
        self.errors: list[Exception] = []
        self.calls: list[dict[str, Any]] = []

    async def render(self, template_ref, merge_data, locale, timezone, output_format) -> bytes:
        self.calls.append({
            'template_ref': template_ref,
            'merge_data': merge_data,
            'locale': locale,
            'timezone': timezone,
            'output_format': output_format,
        })
        if self.errors:
            raise self.errors.pop(0)
        return self.content


class FakeFileStore:
    def __init__(self):
        self.uploads: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def upload(self, content: bytes, filename: str, parent_links: list[str]) -> str:
        if self.error:
            raise self.error
        self.uploads.append({'content': content, 'filename': filename, 'parent_links': parent_links})
        return f'068xx{len(self.uploads):010d}'


class FailingStore(InMemoryJobStore):
    """In-memory store whose calls can be made to fail on demand."""

    def __init__(self):
        super().__init__()
        self.fail_query: Optional[Exception] = None
        self.fail_update: Optional[Exception] = None

    async def query(self, query):
        if self.fail_query:
            raise self.fail_query
        return await super().query(query)

    async def count(self, query):
        if self.fail_query:
            raise self.fail_query
        return await super().count(query)

    async def update(self, job_id, fields):
        if self.fail_update:
            raise self.fail_update
        return await super().update(job_id, fields)


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 9, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def file_store() -> FakeFileStore:
    return FakeFileStore()


@pytest.fixture
def envelope():
    return make_envelope
