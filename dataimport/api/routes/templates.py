"""Import template endpoints."""

from fastapi import APIRouter, Depends, Query

from ...errors import ImportEngineError
from ...service import ImportService
from ..dependencies import get_service, get_tenant_id, http_error
from ..models import TemplateCreate, TemplateListResponse, TemplateResponse

router = APIRouter()


@router.post("", response_model=TemplateResponse)
async def create_template(
    data: TemplateCreate,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Save a reusable import template."""
    try:
        template = await service.create_template(tenant_id, data.to_document())
    except ImportEngineError as e:
        raise http_error(e) from e
    return TemplateResponse.from_template(template)


@router.get("", response_model=TemplateListResponse)
async def list_templates(
    active_only: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """List the tenant's import templates."""
    templates = await service.list_templates(tenant_id, active_only)
    return TemplateListResponse(
        templates=[TemplateResponse.from_template(t) for t in templates],
        total=len(templates),
    )


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Get a specific import template."""
    try:
        template = await service.get_template(tenant_id, template_id)
    except ImportEngineError as e:
        raise http_error(e) from e
    return TemplateResponse.from_template(template)


@router.post("/{template_id}/deactivate", response_model=TemplateResponse)
async def deactivate_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Retire a template so no new jobs start from it."""
    try:
        template = await service.set_template_active(tenant_id, template_id, False)
    except ImportEngineError as e:
        raise http_error(e) from e
    return TemplateResponse.from_template(template)
