"""Error handling and structured error responses."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from rowbridge.core.config import settings
from rowbridge.core.metrics import metrics

logger = logging.getLogger(__name__)


class ErrorCode:
    """Stable error codes for API responses."""

    # Session
    SESSION_REQUIRED = "SESSION_REQUIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"

    # Datastore credentials
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_NOT_CONFIGURED = "AUTH_NOT_CONFIGURED"

    # Datastore calls
    DATASTORE_ERROR = "DATASTORE_ERROR"
    DATASTORE_UNAVAILABLE = "DATASTORE_UNAVAILABLE"
    SCHEMA_PROVISIONING_FAILED = "SCHEMA_PROVISIONING_FAILED"
    MISSING_FIELD_MAPPING = "MISSING_FIELD_MAPPING"
    RECORD_CREATE_FAILED = "RECORD_CREATE_FAILED"

    # File content
    UPLOAD_INVALID_FILE = "UPLOAD_INVALID_FILE"
    UPLOAD_NOT_FOUND = "UPLOAD_NOT_FOUND"
    CONTENT_UNAVAILABLE = "CONTENT_UNAVAILABLE"
    STORAGE_QUOTA_EXCEEDED = "STORAGE_QUOTA_EXCEEDED"

    # Mapping
    MAPPING_INCOMPLETE = "MAPPING_INCOMPLETE"
    MAPPING_LOCKED = "MAPPING_LOCKED"
    MAPPING_UNKNOWN_COLUMN = "MAPPING_UNKNOWN_COLUMN"

    # Import
    IMPORT_VALIDATION_ERROR = "IMPORT_VALIDATION_ERROR"
    IMPORT_JOB_NOT_FOUND = "IMPORT_JOB_NOT_FOUND"
    IMPORT_ALREADY_RUNNING = "IMPORT_ALREADY_RUNNING"
    IMPORT_CANCELLED = "IMPORT_CANCELLED"
    IMPORT_FAILED = "IMPORT_FAILED"
    VERIFICATION_MISMATCH = "VERIFICATION_MISMATCH"  # Advisory, never raised

    # System
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorCategory:
    """Error categories for classification."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"
    UPSTREAM = "upstream"


class APIError(BaseModel):
    """Structured error response model."""

    code: str
    category: str
    message: str
    details: Optional[Dict[str, Any]] = None
    request_id: str
    timestamp: str
    retryable: bool = False


class APIException(Exception):
    """Base exception for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        category: str = ErrorCategory.INTERNAL,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        self.code = code
        self.message = message
        self.category = category
        self.status_code = status_code
        self.details = details or {}
        self.retryable = retryable
        super().__init__(message)


class DatastoreError(APIException):
    """Raised when the remote datastore answers with a non-success status."""

    def __init__(
        self,
        operation: str,
        upstream_status: Optional[int],
        body: str = "",
    ):
        self.operation = operation
        self.upstream_status = upstream_status
        self.body = body
        super().__init__(
            code=ErrorCode.DATASTORE_ERROR,
            message=f"{operation} failed with status {upstream_status}: {body[:200]}",
            category=ErrorCategory.UPSTREAM,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"operation": operation, "upstream_status": upstream_status},
            retryable=upstream_status is None or upstream_status >= 500,
        )


class AuthenticationFailed(APIException):
    """Raised when no elevated token can be obtained or a refreshed token is rejected."""

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        super().__init__(
            code=ErrorCode.AUTH_FAILED,
            message=message,
            category=ErrorCategory.AUTHENTICATION,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"upstream_status": upstream_status},
        )


class SchemaProvisioningFailed(APIException):
    """Raised when the target table cannot be shaped for the mapped columns."""

    def __init__(self, step: str, reason: str, table_id: Optional[int] = None):
        super().__init__(
            code=ErrorCode.SCHEMA_PROVISIONING_FAILED,
            message=f"Schema provisioning failed at {step}: {reason}",
            category=ErrorCategory.UPSTREAM,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"step": step, "table_id": table_id},
        )


class MissingFieldMapping(APIException):
    """Raised when mapped columns have no field id after provisioning."""

    def __init__(self, columns: List[str], table_id: int):
        self.columns = columns
        super().__init__(
            code=ErrorCode.MISSING_FIELD_MAPPING,
            message=f"No field id for columns: {', '.join(columns)}",
            category=ErrorCategory.UPSTREAM,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"columns": columns, "table_id": table_id},
        )


class ContentUnavailable(APIException):
    """Raised when the full file content cannot be reconstructed.

    ``action`` tells the operator what to do next: ``retry_with_file`` when the
    original upload may still be fetched, ``reupload_smaller_file`` when only a
    smaller upload can succeed.
    """

    RETRY_WITH_FILE = "retry_with_file"
    REUPLOAD_SMALLER_FILE = "reupload_smaller_file"

    def __init__(self, message: str, action: str, details: Optional[Dict[str, Any]] = None):
        self.action = action
        super().__init__(
            code=ErrorCode.CONTENT_UNAVAILABLE,
            message=message,
            category=ErrorCategory.VALIDATION,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"action": action, **(details or {})},
            retryable=action == self.RETRY_WITH_FILE,
        )


class ImportCancelled(APIException):
    """Raised when an import run observes its cancellation signal."""

    def __init__(self, processed: int = 0):
        super().__init__(
            code=ErrorCode.IMPORT_CANCELLED,
            message="Import cancelled",
            category=ErrorCategory.CONFLICT,
            status_code=status.HTTP_409_CONFLICT,
            details={"processed": processed},
        )


class RecordCreateFailed(APIException):
    """Row-level creation failure. Aggregated by the engine, never fatal."""

    def __init__(self, message: str, record: Optional[Dict[str, Any]] = None):
        self.record = record
        super().__init__(
            code=ErrorCode.RECORD_CREATE_FAILED,
            message=message,
            category=ErrorCategory.UPSTREAM,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )


class MappingLocked(APIException):
    """Raised when a change would evict an exact-match mapping without force."""

    def __init__(self, target: str, holder: str):
        super().__init__(
            code=ErrorCode.MAPPING_LOCKED,
            message=f"Field '{target}' is locked to column '{holder}'",
            category=ErrorCategory.CONFLICT,
            status_code=status.HTTP_409_CONFLICT,
            details={"target": target, "holder": holder},
        )


class StorageQuotaExceeded(APIException):
    """Raised by the session store when a write does not fit the quota."""

    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(
            code=ErrorCode.STORAGE_QUOTA_EXCEEDED,
            message=f"Session storage quota exceeded ({needed} bytes needed, {available} available)",
            category=ErrorCategory.INTERNAL,
            status_code=status.HTTP_507_INSUFFICIENT_STORAGE,
        )


def create_error_response(
    request: Request,
    code: str,
    message: str,
    category: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    retryable: bool = False,
) -> JSONResponse:
    """Create a structured error response."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))
    error = APIError(
        code=code,
        category=category,
        message=message,
        details=details,
        request_id=request_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
        retryable=retryable,
    )

    logger.error(
        f"API Error: {code} - {message}",
        extra={
            "error_code": code,
            "error_category": category,
            "request_id": request_id,
            "status_code": status_code,
            "details": details,
        },
    )

    metrics.record_error(code, category)

    return JSONResponse(
        status_code=status_code,
        content={"error": error.model_dump()},
    )


async def error_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle APIException instances."""
    return create_error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        category=exc.category,
        status_code=exc.status_code,
        details=exc.details,
        retryable=exc.retryable,
    )


async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception("Unhandled exception", exc_info=exc)
    message = "An internal error occurred"
    details: Optional[Dict[str, Any]] = None
    if settings.environment == "development":
        message = str(exc) or message
        details = {"exception_type": type(exc).__name__, "detail": str(exc)}
    return create_error_response(
        request=request,
        code=ErrorCode.INTERNAL_ERROR,
        message=message,
        category=ErrorCategory.INTERNAL,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        retryable=False,
        details=details,
    )


def setup_error_handlers(app: FastAPI) -> None:
    """Register error handlers with FastAPI app."""
    app.add_exception_handler(APIException, error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
