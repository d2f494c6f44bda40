"""Job submission, cancellation and history endpoints."""
from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from rsyncweb.config import ServerConfig
from rsyncweb.core.errors import (
    ConflictError,
    ExecutableUnavailableError,
    NotFoundError,
    SpawnError,
    ValidationError,
)
from rsyncweb.core.logging import get_logger
from rsyncweb.dashboard.app import (
    get_config,
    get_executable_status,
    get_history,
    get_registry,
)
from rsyncweb.jobs.history import HistoryStore
from rsyncweb.jobs.models import JobRecord, JobStatus, build_command_spec
from rsyncweb.jobs.probe import ExecutableStatus
from rsyncweb.jobs.registry import JobRegistry

_logger = get_logger("dashboard.jobs")

router = APIRouter(prefix="/api", tags=["Jobs"])


def _to_datetime(ts: float | None) -> datetime | None:
    return datetime.fromtimestamp(ts, UTC) if ts is not None else None


# ============================================================================
# Request Models (Pydantic schemas for API requests)
# ============================================================================


class RunRequest(BaseModel):
    """Request to start a new synchronization job."""
    source: str = Field(..., description="Source path or [user@]host:path")
    destination: str = Field(..., description="Destination path or [user@]host:path")
    options: list[str] = Field(default_factory=list, description="Option tokens, in order")


# ============================================================================
# Response Models (Pydantic schemas for API responses)
# ============================================================================


class JobSummary(BaseModel):
    """Summarized job information for history views."""

    id: int
    full_command: str
    source: str
    destination: str
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_code: int | None = None

    @classmethod
    def from_record(cls, record: JobRecord) -> JobSummary:
        """Create from a History Store record."""
        return cls(
            id=record.id,
            full_command=record.full_command,
            source=record.source,
            destination=record.destination,
            status=record.status,
            created_at=_to_datetime(record.created_at),
            started_at=_to_datetime(record.started_at),
            ended_at=_to_datetime(record.ended_at),
            exit_code=record.exit_code,
        )


class JobRecordModel(JobSummary):
    """Full persisted job record."""

    options: list[str]
    error_message: str | None = None

    @classmethod
    def from_record(cls, record: JobRecord) -> JobRecordModel:
        summary = JobSummary.from_record(record)
        return cls(
            **summary.model_dump(),
            options=list(record.options),
            error_message=record.error_message,
        )


class HistoryListResponse(BaseModel):
    """Response for the history list endpoint."""

    jobs: list[JobSummary]
    total: int


class JobDetailResponse(BaseModel):
    """Persisted record plus live output while the job is running."""

    history: JobRecordModel
    live: bool
    live_output: list[str]


class RunResponse(BaseModel):
    id: int
    status: JobStatus
    message: str


class CancelResponse(BaseModel):
    """Response from a cancellation request."""
    success: bool
    id: int
    status: JobStatus
    message: str


class DeleteResponse(BaseModel):
    success: bool
    id: int


# ============================================================================
# API Endpoints
# ============================================================================


@router.get("/history", response_model=HistoryListResponse)
async def list_history(
    limit: int | None = Query(None, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    status: JobStatus | None = None,
    config: ServerConfig = Depends(get_config),
    history: HistoryStore = Depends(get_history),
    registry: JobRegistry = Depends(get_registry),
) -> HistoryListResponse:
    """List past and current jobs, most recent first.

    Args:
        limit: Maximum number of jobs to return (defaults to history_limit)
        offset: Number of jobs to skip
        status: Filter by job status (optional)

    Returns:
        Job summaries and the total matching count
    """
    records = await history.list_jobs(
        limit=limit or config.history_limit, offset=offset, status=status
    )
    jobs = [JobSummary.from_record(r) for r in records]
    # Live state is authoritative while the persisted row may lag behind.
    for job in jobs:
        if registry.is_live(job.id):
            try:
                _, job.status = await registry.get_live_state(job.id)
            except NotFoundError:
                continue
    return HistoryListResponse(jobs=jobs, total=await history.count(status))


@router.post("/run", response_model=RunResponse)
async def run_job(
    request: RunRequest,
    config: ServerConfig = Depends(get_config),
    registry: JobRegistry = Depends(get_registry),
    executable: ExecutableStatus = Depends(get_executable_status),
) -> RunResponse:
    """Validate a run request and start the job.

    Returns as soon as the process has been started; progress is
    observed through the job's stream.

    Raises:
        HTTPException: 400 if the request is invalid, 503 if the
            synchronization tool is not installed
    """
    try:
        executable.require()
    except ExecutableUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    try:
        spec = build_command_spec(
            config.executable, request.source, request.destination, request.options
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        job_id = await registry.submit(spec)
    except SpawnError as e:
        if e.job_id is None:
            raise HTTPException(status_code=500, detail=str(e)) from e
        # The job exists as a failed record; report it like any other outcome.
        return RunResponse(id=e.job_id, status=JobStatus.FAILED, message=str(e))

    _logger.info("dashboard.job_submitted", job_id=job_id)
    return RunResponse(id=job_id, status=JobStatus.PENDING, message=f"Job {job_id} started")


@router.post("/cancel/{job_id}", response_model=CancelResponse)
async def cancel_job(
    job_id: int,
    history: HistoryStore = Depends(get_history),
    registry: JobRegistry = Depends(get_registry),
) -> CancelResponse:
    """Request cancellation of a job.

    The response carries the status the job had when the request was
    issued. Cancelling a job that already finished is not an error: the
    response carries its terminal status.

    Raises:
        HTTPException: 404 if the job id is unknown
    """
    try:
        status = await registry.cancel(job_id)
    except NotFoundError:
        try:
            record = await history.get(job_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return CancelResponse(
            success=True,
            id=job_id,
            status=record.status,
            message=f"Job {job_id} already {record.status.value}",
        )
    return CancelResponse(
        success=True,
        id=job_id,
        status=status,
        message=f"Cancellation requested for job {job_id}",
    )


@router.delete("/history/{job_id}", response_model=DeleteResponse)
async def delete_history(
    job_id: int,
    history: HistoryStore = Depends(get_history),
) -> DeleteResponse:
    """Delete a finished job's history entry.

    Raises:
        HTTPException: 404 if not found, 409 if the job is still active
    """
    try:
        await history.delete(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return DeleteResponse(success=True, id=job_id)


@router.get("/job/{job_id}", response_model=JobDetailResponse)
async def get_job(
    job_id: int,
    history: HistoryStore = Depends(get_history),
    registry: JobRegistry = Depends(get_registry),
) -> JobDetailResponse:
    """Get a job's full record, plus its recent output while it is live.

    Raises:
        HTTPException: 404 if job not found
    """
    try:
        record = await history.get(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    detail = JobRecordModel.from_record(record)
    try:
        events, status = await registry.get_live_state(job_id)
    except NotFoundError:
        return JobDetailResponse(history=detail, live=False, live_output=[])
    detail.status = status
    return JobDetailResponse(
        history=detail,
        live=True,
        live_output=[e.data or "" for e in events],
    )
