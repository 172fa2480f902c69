from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from docgen.api.deps import Enqueuer
from docgen.domain.models import DocgenRequest
from docgen.domain.states import JobStatus
from docgen.logging_config import correlation_id_var

router = APIRouter()


class GenerateResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    correlation_id: str
    job_id: str
    status: JobStatus
    created: bool
    output_file_id: Optional[str] = None


@router.post("/generate", status_code=202, response_model=GenerateResponse, response_model_by_alias=True)
async def generate(body: DocgenRequest, enqueuer: Enqueuer):
    correlation_id = correlation_id_var.get()
    result = await enqueuer.enqueue(body, correlation_id)
    job = result.job
    return GenerateResponse(
        # An existing job keeps the correlation id of the request that created it
        correlation_id=job.correlation_id or correlation_id,
        job_id=job.id,
        status=job.status,
        created=result.created,
        output_file_id=job.output_file_id,
    )
