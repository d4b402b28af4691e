"""Import endpoints."""

import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse

from rowbridge.api.v1.mapping import load_mapper
from rowbridge.core.deps import Services, get_services
from rowbridge.core.errors import APIException, ErrorCategory, ErrorCode
from rowbridge.core.session import get_session
from rowbridge.models.import_models import (
    ImportJobStatus,
    ImportStartRequest,
    ImportStartResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=ImportStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    request: ImportStartRequest,
    session: dict = Depends(get_session),
    services: Services = Depends(get_services),
) -> ImportStartResponse:
    """
    Start importing the uploaded file in the background.

    Every column must be mapped or ignored first. ``mapping`` in the body
    replaces the session's mapping for this run.
    """
    if request.mapping is not None:
        mapping = {k: v for k, v in request.mapping.items() if v}
    else:
        mapper = await load_mapper(session, services)
        unmapped = mapper.unmapped_columns()
        if unmapped:
            raise APIException(
                code=ErrorCode.MAPPING_INCOMPLETE,
                message=f"Map or ignore every column first: {', '.join(unmapped)}",
                category=ErrorCategory.VALIDATION,
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                details={"unmapped_columns": unmapped},
            )
        mapping = mapper.final_mapping()

    if len(set(mapping.values())) != len(mapping):
        raise APIException(
            code=ErrorCode.IMPORT_VALIDATION_ERROR,
            message="Two columns are mapped onto the same field",
            category=ErrorCategory.VALIDATION,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    if not mapping:
        raise APIException(
            code=ErrorCode.MAPPING_INCOMPLETE,
            message="At least one column must be mapped",
            category=ErrorCategory.VALIDATION,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    job = services.jobs.start(
        session["session_id"],
        lambda run, progress: services.pipeline.run(session, mapping, run, progress),
    )
    return ImportStartResponse(job_id=job.job_id, status=job.status)


@router.get("/{job_id}", response_model=ImportJobStatus)
async def get_import_status(
    job_id: str,
    session: dict = Depends(get_session),
    services: Services = Depends(get_services),
) -> ImportJobStatus:
    """Get import job status."""
    return services.jobs.get(job_id, session["session_id"])


async def stream_progress(services: Services, job_id: str) -> AsyncGenerator[str, None]:
    """Yield the job status as NDJSON lines until it reaches a terminal state."""
    while True:
        job = services.jobs.get(job_id)
        yield job.model_dump_json() + "\n"
        if job.is_terminal:
            return
        await services.jobs.wait_for_update(job_id)


@router.get("/{job_id}/events")
async def import_events(
    job_id: str,
    session: dict = Depends(get_session),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """
    Stream progress of an import (NDJSON format).

    Each line is an ImportJobStatus; the last line carries the terminal
    status with the result or errors.
    """
    services.jobs.get(job_id, session["session_id"])
    return StreamingResponse(
        stream_progress(services, job_id),
        media_type="application/x-ndjson",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@router.post("/{job_id}/cancel")
async def cancel_import(
    job_id: str,
    session: dict = Depends(get_session),
    services: Services = Depends(get_services),
) -> dict:
    """Request cancellation; the run stops at its next batch boundary."""
    services.jobs.get(job_id, session["session_id"])
    cancelled = services.jobs.cancel(job_id, session["session_id"])
    return {"job_id": job_id, "cancelled": cancelled}
