"""File upload endpoints."""

import logging

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from pydantic import ValidationError

from rowbridge.core.deps import Services, get_services
from rowbridge.core.errors import APIException, ErrorCategory, ErrorCode
from rowbridge.core.session import get_or_create_session, get_session
from rowbridge.models.import_models import OperatorInfo, UploadResponse
from rowbridge.services.csv_parser import parse_headers

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    first_name: str = Form(...),
    last_name: str = Form(...),
    email: str = Form(...),
    company: str = Form(...),
    services: Services = Depends(get_services),
) -> UploadResponse:
    """
    Upload a CSV file for import.

    Registers the file with the datastore (one registry row per operator)
    and keeps it in the session for the mapping and import steps. Starts a
    session when there is none.
    """
    try:
        operator = OperatorInfo(
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email.strip(),
            company=company.strip(),
        )
    except ValidationError as e:
        raise APIException(
            code=ErrorCode.UPLOAD_INVALID_FILE,
            message="First name, last name, email and company are required",
            category=ErrorCategory.VALIDATION,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": [err["loc"][-1] for err in e.errors()]},
        ) from e

    session = get_or_create_session(request)
    raw = await file.read()
    record = await services.uploads.upload(
        session,
        file_name=file.filename or "upload.csv",
        raw=raw,
        content_type=file.content_type,
        operator=operator,
    )
    session.pop("mapping", None)

    return UploadResponse(
        record_id=record.record_id,
        file_name=record.file_name,
        columns=parse_headers(record.content),
        total_lines=record.total_lines,
        storage=record.shape,
        warning=record.storage_warning,
    )


@router.get("/current", response_model=UploadResponse)
async def current_upload(
    session: dict = Depends(get_session),
    services: Services = Depends(get_services),
) -> UploadResponse:
    """Summary of the file stored in this session."""
    record = services.store.load(session)
    if record is None:
        raise APIException(
            code=ErrorCode.UPLOAD_NOT_FOUND,
            message="No uploaded file in this session",
            category=ErrorCategory.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
        )
    return UploadResponse(
        record_id=record.record_id,
        file_name=record.file_name,
        columns=parse_headers(record.content),
        total_lines=record.total_lines,
        storage=record.shape,
        warning=record.storage_warning,
    )
