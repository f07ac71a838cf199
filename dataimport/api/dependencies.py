"""Shared dependencies for API routes."""

import logging
from typing import Optional

from fastapi import Header, HTTPException

from ..errors import (
    CompilationError,
    ConcurrencyError,
    ImportEngineError,
    JobAlreadyRunningError,
    JobNotFoundError,
    PlanNotFoundError,
    TemplateNotFoundError,
)
from ..service import ImportService
from ..sources.base import ListRowSource, RowSource
from ..sources.files import open_file_source
from .models import SourcePayload

logger = logging.getLogger(__name__)

_service: Optional[ImportService] = None


def get_service() -> ImportService:
    """Get the process-wide import service."""
    global _service
    if _service is None:
        _service = ImportService()
    return _service


def get_tenant_id(x_tenant_id: str = Header(..., min_length=1)) -> str:
    """Tenant scope of the request, from the ``X-Tenant-ID`` header."""
    return x_tenant_id


def http_error(error: ImportEngineError) -> HTTPException:
    """Map an engine error to an HTTP error."""
    if isinstance(error, (JobNotFoundError, PlanNotFoundError, TemplateNotFoundError)):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, CompilationError):
        return HTTPException(status_code=422, detail=error.to_dict())
    if isinstance(error, (ConcurrencyError, JobAlreadyRunningError)):
        return HTTPException(status_code=409, detail=error.message)
    return HTTPException(status_code=400, detail={"code": error.code.value, "message": error.message})


def build_source(payload: SourcePayload) -> RowSource:
    """
    Build a row source from a request payload.

    Raises:
        HTTPException: If the payload names no rows or an unreadable format
    """
    if payload.records is not None:
        return ListRowSource(payload.records)
    if payload.file_path:
        try:
            return open_file_source(payload.file_path, payload.encoding, payload.delimiter)
        except ImportEngineError as e:
            raise http_error(e) from e
    raise HTTPException(status_code=400, detail="Provide either records or file_path")
