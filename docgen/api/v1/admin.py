from fastapi import APIRouter, Request

from docgen.api.deps import Store
from docgen.commands.requeue_expired import requeue_expired_jobs
from docgen.domain.models import utc_now

router = APIRouter()


@router.post("/requeue_expired")
async def trigger_requeue_expired(request: Request, store: Store):
    count = await requeue_expired_jobs(store, utc_now(), request.app.state.max_attempts)
    return {"requeuedCount": count}
