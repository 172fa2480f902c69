import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from docgen.commands.enqueue_job import JobEnqueuer
from docgen.scheduler.service import PollerService
from docgen.store.base import JobStore

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(request: Request, api_key: str = Security(API_KEY_HEADER)) -> None:
    allowed = request.app.state.api_keys
    if not allowed:
        # Open mode; create_app logs a warning at startup
        return
    if not api_key:
        raise HTTPException(status_code=401, detail="Missing API Key")
    if not any(hmac.compare_digest(api_key, key) for key in allowed):
        raise HTTPException(status_code=403, detail="Invalid API Key")


def get_poller(request: Request) -> PollerService:
    return request.app.state.poller


def get_enqueuer(request: Request) -> JobEnqueuer:
    return request.app.state.enqueuer


def get_store(request: Request) -> JobStore:
    return request.app.state.store


Poller = Annotated[PollerService, Depends(get_poller)]
Enqueuer = Annotated[JobEnqueuer, Depends(get_enqueuer)]
Store = Annotated[JobStore, Depends(get_store)]
