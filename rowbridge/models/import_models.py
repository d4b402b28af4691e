"""Upload and import models."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OperatorInfo(BaseModel):
    """Who uploaded the file; identifies the registry row and names the table."""

    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    company: str = Field(..., min_length=1)


class FileSessionRecord(BaseModel):
    """
    Session-scoped copy of an uploaded file.

    ``content`` may be the full text, a head+tail excerpt (``is_optimized``),
    only the first lines for header discovery (``is_header_only``, never row
    data) or empty (``requires_reupload``).
    """

    file_name: str
    original_size: int
    content: str = ""
    total_lines: int = 0
    is_optimized: bool = False
    is_header_only: bool = False
    requires_reupload: bool = False
    is_large_file: bool = False
    record_id: Optional[int] = None
    file_url: Optional[str] = None
    mime_type: Optional[str] = None
    operator: Optional[OperatorInfo] = None
    storage_warning: Optional[str] = None

    @property
    def shape(self) -> str:
        if self.requires_reupload:
            return "reupload"
        if self.is_header_only:
            return "header_only"
        if self.is_optimized:
            return "optimized"
        return "full"


class UploadResponse(BaseModel):
    record_id: Optional[int]
    file_name: str
    columns: List[str]
    total_lines: int
    storage: str
    warning: Optional[str] = None


class FailedRecord(BaseModel):
    data: Dict[str, Any]
    error: str


class BatchOutcome(BaseModel):
    """Result of one batch; ``success_count + failed_count`` records were attempted."""

    success_count: int = 0
    failed_count: int = 0
    failed_records: List[FailedRecord] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.success_count + self.failed_count


class ImportOutcome(BaseModel):
    attempted: int = 0
    created: int = 0
    failed: int = 0
    failed_records: List[FailedRecord] = Field(default_factory=list)
    strategy: str = "standard"


class ProgressSnapshot(BaseModel):
    """Progress of a running import."""

    current: int
    total: int
    percentage: int = 0
    speed: float = 0.0  # records per second
    remaining: int = 0
    estimated_time_remaining: Optional[float] = None  # seconds
    current_batch: int = 0
    total_batches: int = 0
    failed: int = 0
    strategy: str = "standard"  # bulk | standard | individual
    phase: str = "importing"


class FailureSummary(BaseModel):
    by_reason: Dict[str, int] = Field(default_factory=dict)
    sample: Optional[FailedRecord] = None


class VerificationReport(BaseModel):
    expected: int
    actual: int
    matched: bool
    message: str


class ImportResult(BaseModel):
    """Terminal result of a successful import run."""

    total: int
    created: int
    updated: int = 0
    failed: int
    table_id: int
    table_name: str
    verified: Optional[int] = None
    verification: Optional[VerificationReport] = None
    failure_summary: Optional[FailureSummary] = None
    duration_seconds: float = 0.0


class ImportStartRequest(BaseModel):
    """Start an import. ``mapping`` overrides the session's mapping when given."""

    mapping: Optional[Dict[str, str]] = None


class ImportStartResponse(BaseModel):
    job_id: str
    status: str


class ImportJobStatus(BaseModel):
    """Import job status."""

    job_id: str
    status: str  # 'pending', 'running', 'completed', 'failed', 'cancelled'
    phase: Optional[str] = None
    progress: Optional[ProgressSnapshot] = None
    result: Optional[ImportResult] = None
    errors: List[str] = Field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")
