"""Migration plan endpoints."""

import logging
from typing import Dict
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ...errors import ImportEngineError
from ...models.plan import MigrationPlanStatus
from ...service import ImportService
from ...sources.base import RowSource
from ..dependencies import build_source, get_service, get_tenant_id, http_error
from ..models import PlanCreate, PlanListResponse, PlanResponse, PlanStartRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=PlanResponse)
async def create_plan(
    data: PlanCreate,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Create a new migration plan."""
    try:
        plan = await service.create_plan(tenant_id, data.to_document())
    except ImportEngineError as e:
        raise http_error(e) from e
    return PlanResponse.from_plan(plan)


@router.get("", response_model=PlanListResponse)
async def list_plans(
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """List the tenant's migration plans."""
    plans = await service.list_plans(tenant_id)
    return PlanListResponse(plans=[PlanResponse.from_plan(p) for p in plans], total=len(plans))


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(
    plan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Get a specific migration plan."""
    try:
        plan = await service.get_plan(tenant_id, plan_id)
    except ImportEngineError as e:
        raise http_error(e) from e
    return PlanResponse.from_plan(plan)


@router.post("/{plan_id}/start")
async def start_plan(
    plan_id: str,
    data: PlanStartRequest,
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Start a migration plan."""
    try:
        plan = await service.get_plan(tenant_id, plan_id)
    except ImportEngineError as e:
        raise http_error(e) from e

    if plan.status != MigrationPlanStatus.PENDING:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot start migration plan in status: {plan.status.value}"
        )

    sources = {name: build_source(payload) for name, payload in data.sources.items()}
    background_tasks.add_task(run_plan_task, service, tenant_id, plan_id, sources)
    return {"status": "started", "plan_id": plan_id}


@router.post("/{plan_id}/cancel")
async def cancel_plan(
    plan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_service),
):
    """Cancel a migration plan."""
    try:
        plan = await service.cancel_plan(tenant_id, plan_id)
    except ImportEngineError as e:
        raise http_error(e) from e
    if plan.status == MigrationPlanStatus.CANCELLED:
        return {"status": "cancelled"}
    return {"status": "cancel_requested"}


async def run_plan_task(
    service: ImportService,
    tenant_id: str,
    plan_id: str,
    sources: Dict[str, RowSource]
):
    """Background task to run a migration plan."""
    try:
        plan = await service.run_plan(tenant_id, plan_id, sources)
        logger.info(f"Migration plan {plan_id} finished as {plan.status.value}")
    except ImportEngineError as e:
        logger.error(f"Migration plan {plan_id} stopped: {e.message}")
