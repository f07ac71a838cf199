"""Import job endpoints."""

import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from ...errors import ImportEngineError
from ...models.job import ImportJobStatus
from ...models.mapping import FieldMapping, ValidationRuleSet
from ...service import ImportService
from ...sources.base import RowSource
from ..dependencies import build_source, get_service, get_tenant_id, http_error
from ..models import (
    ErrorPageResponse,
    ImportJobStatusEnum,
    JobCreate,
    JobListResponse,
    JobResponse,
    PreviewRequest,
    SourcePayload,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/preview")
async def preview_records(
    data: PreviewRequest,
    service: ImportService = Depends(get_service),
):
    """Preview raw records against an optional mapping. Nothing is written."""
    try:
        mapping = FieldMapping.from_dict(data.field_mapping) if data.field_mapping else None
        rules = ValidationRuleSet.from_dict(data.validation_rules)
    except (ValueError, TypeError, KeyError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid mapping: {e}") from e
    result = service.preview(
        data.records, mapping, rules, sample_size=data.sample_size, natural_key=data.natural_key,
    )
    return result.to_dict()


@router.post("", response_model=JobResponse)
async def create_job(
    data: JobCreate,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Create a new import job."""
    try:
        job = await service.create_job(tenant_id, data.to_document())
    except ImportEngineError as e:
        raise http_error(e) from e
    return JobResponse.from_job(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    status: Optional[ImportJobStatusEnum] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """List the tenant's import jobs, newest first."""
    jobs = await service.list_jobs(tenant_id, ImportJobStatus(status.value) if status else None)
    return JobListResponse(jobs=[JobResponse.from_job(j) for j in jobs], total=len(jobs))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Get a specific import job."""
    try:
        job = await service.get_job(tenant_id, job_id)
    except ImportEngineError as e:
        raise http_error(e) from e
    return JobResponse.from_job(job)


@router.post("/{job_id}/preview")
async def preview_job(
    job_id: str,
    source: SourcePayload,
    sample_size: Optional[int] = Query(default=None, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Preview a source with the job's own mapping and rules."""
    try:
        result = await service.preview_job(tenant_id, job_id, build_source(source), sample_size)
    except ImportEngineError as e:
        raise http_error(e) from e
    return result.to_dict()


@router.post("/{job_id}/start")
async def start_job(
    job_id: str,
    source: SourcePayload,
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Start an import job."""
    try:
        job = await service.get_job(tenant_id, job_id)
    except ImportEngineError as e:
        raise http_error(e) from e

    if job.status not in (ImportJobStatus.PENDING, ImportJobStatus.PROCESSING):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot start import job in status: {job.status.value}"
        )
    if service.executor_for(tenant_id).is_running(tenant_id, job_id):
        raise HTTPException(status_code=409, detail=f"Import job {job_id} is already running")

    background_tasks.add_task(run_job_task, service, tenant_id, job_id, build_source(source), False)
    return {"status": "started", "job_id": job_id}


@router.post("/{job_id}/pause")
async def pause_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Pause a running import job at its next batch boundary."""
    try:
        await service.pause_job(tenant_id, job_id)
    except ImportEngineError as e:
        raise http_error(e) from e
    return {"status": "pause_requested"}


@router.post("/{job_id}/resume")
async def resume_job(
    job_id: str,
    source: SourcePayload,
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Resume a paused import job."""
    try:
        job = await service.get_job(tenant_id, job_id)
    except ImportEngineError as e:
        raise http_error(e) from e

    if job.status != ImportJobStatus.PAUSED:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot resume import job in status: {job.status.value}"
        )

    background_tasks.add_task(run_job_task, service, tenant_id, job_id, build_source(source), True)
    return {"status": "resumed", "job_id": job_id}


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Cancel an import job. Committed records are kept."""
    try:
        job = await service.cancel_job(tenant_id, job_id)
    except ImportEngineError as e:
        raise http_error(e) from e
    if job.status == ImportJobStatus.CANCELLED:
        return {"status": "cancelled"}
    return {"status": "cancel_requested"}


@router.get("/{job_id}/errors", response_model=ErrorPageResponse)
async def get_job_errors(
    job_id: str,
    page: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Get one page of the job's error log."""
    size = page_size or service.settings.error_page_size
    try:
        entries, total = await service.get_errors(tenant_id, job_id, page, size)
    except ImportEngineError as e:
        raise http_error(e) from e
    return ErrorPageResponse(
        errors=[e.to_dict() for e in entries], total=total, page=page, page_size=size,
    )


async def run_job_task(
    service: ImportService,
    tenant_id: str,
    job_id: str,
    source: RowSource,
    resume: bool
):
    """Background task to run or resume an import job."""
    try:
        if resume:
            job = await service.resume_job(tenant_id, job_id, source)
        else:
            job = await service.start_job(tenant_id, job_id, source)
        logger.info(f"Import job {job_id} finished as {job.status.value}")
    except ImportEngineError as e:
        logger.error(f"Import job {job_id} stopped: {e.message}")
