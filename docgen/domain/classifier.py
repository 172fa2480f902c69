"""
Failure classification for job processing.

`classify_error` maps whatever was raised while rendering or uploading to an
ErrorKind. `decide` turns (kind, attempts, max_attempts) into the next state
transition. Both are pure: no clock, no store, no hidden counters.
"""
import asyncio
from dataclasses import dataclass
from enum import StrEnum

import httpx
from pydantic import ValidationError

from docgen.domain.errors import (
    EnvelopeError,
    InvalidRequestError,
    JobStoreError,
    RenderError,
    RenderKind,
    UploadError,
)
from docgen.domain.states import ErrorKind

_NON_RETRYABLE_KINDS = frozenset({
    RenderKind.TEMPLATE_NOT_FOUND,
    RenderKind.INVALID_TEMPLATE,
    RenderKind.INVALID_REQUEST,
    RenderKind.UNSUPPORTED_FORMAT,
})

_RETRYABLE_KINDS = frozenset({
    RenderKind.TIMEOUT,
    RenderKind.UNAVAILABLE,
})

# 401 is retryable: the record store client refreshes its token on the next call.
_RETRYABLE_STATUS = frozenset({401, 408, 409, 423, 425, 429})


def classify_status(status_code: int) -> ErrorKind:
    if status_code in _RETRYABLE_STATUS or status_code >= 500:
        return ErrorKind.RETRYABLE
    if 400 <= status_code < 500:
        return ErrorKind.NON_RETRYABLE
    return ErrorKind.FATAL


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, EnvelopeError):
        return ErrorKind.FATAL

    if isinstance(exc, (InvalidRequestError, ValidationError)):
        return ErrorKind.NON_RETRYABLE

    if isinstance(exc, (RenderError, UploadError)):
        if exc.kind in _NON_RETRYABLE_KINDS:
            return ErrorKind.NON_RETRYABLE
        if exc.kind in _RETRYABLE_KINDS:
            return ErrorKind.RETRYABLE
        if exc.status_code is not None:
            return classify_status(exc.status_code)
        return ErrorKind.RETRYABLE

    if isinstance(exc, JobStoreError):
        if exc.status_code is not None:
            return classify_status(exc.status_code)
        return ErrorKind.RETRYABLE

    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)

    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.RETRYABLE

    return ErrorKind.FATAL


class Action(StrEnum):
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class Decision:
    action: Action
    exhausted: bool = False


def decide(kind: ErrorKind, attempts: int, max_attempts: int) -> Decision:
    """
    Args:
        kind: Classification of the failure.
        attempts: Attempt count *after* counting the attempt that just failed.
        max_attempts: Retry budget.
    """
    if kind != ErrorKind.RETRYABLE:
        return Decision(Action.FAIL)
    if attempts < max_attempts:
        return Decision(Action.RETRY)
    return Decision(Action.FAIL, exhausted=True)
