from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from docgen.api.deps import Poller

router = APIRouter()


class _CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ControlResponse(_CamelResponse):
    message: str
    is_running: bool


class StatusResponse(_CamelResponse):
    is_running: bool
    current_queue_depth: int
    last_poll_time: Optional[datetime] = None


class StatsResponse(StatusResponse):
    total_processed: int
    total_succeeded: int
    total_failed: int
    total_retries: int
    uptime_seconds: float


@router.post("/start", response_model=ControlResponse, response_model_by_alias=True)
async def start_worker(poller: Poller):
    if not await poller.start():
        raise HTTPException(status_code=409, detail="Worker is already running")
    return ControlResponse(message="Worker started", is_running=True)


@router.post("/stop", response_model=ControlResponse, response_model_by_alias=True)
async def stop_worker(poller: Poller):
    stopped = await poller.stop()
    message = "Worker stopped" if stopped else "Worker was not running"
    return ControlResponse(message=message, is_running=False)


@router.get("/status", response_model=StatusResponse, response_model_by_alias=True)
async def worker_status(poller: Poller):
    status = await poller.status()
    return StatusResponse(
        is_running=status.is_running,
        current_queue_depth=status.current_queue_depth,
        last_poll_time=status.last_poll_time,
    )


@router.get("/stats", response_model=StatsResponse, response_model_by_alias=True)
async def worker_stats(poller: Poller):
    snapshot = await poller.snapshot()
    return StatsResponse(
        is_running=snapshot.is_running,
        total_processed=snapshot.total_processed,
        total_succeeded=snapshot.total_succeeded,
        total_failed=snapshot.total_failed,
        total_retries=snapshot.total_retries,
        current_queue_depth=snapshot.current_queue_depth,
        last_poll_time=snapshot.last_poll_time,
        uptime_seconds=snapshot.uptime_seconds,
    )
