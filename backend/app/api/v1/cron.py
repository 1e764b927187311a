"""Sweep endpoints — triggered by the external scheduler, not by users."""

from fastapi import APIRouter, Depends

from app.api.deps import get_database, require_internal_access
from app.database import Database
from app.schemas.billing import SweepResponse
from app.services import sweep_service

router = APIRouter(
    prefix="/api/v1/cron",
    tags=["cron"],
    dependencies=[Depends(require_internal_access)],
)


@router.post("/expire-grace-period", response_model=SweepResponse)
async def expire_grace_period(database: Database = Depends(get_database)) -> SweepResponse:
    """Move lapsed subscriptions to PAST_DUE, and to EXPIRED after the grace window."""
    report = await sweep_service.expire_grace_period(database)
    return SweepResponse.model_validate(report.as_dict())


@router.post("/activate-scheduled-changes", response_model=SweepResponse)
async def activate_scheduled_changes(database: Database = Depends(get_database)) -> SweepResponse:
    """Promote plan changes staged for the end of the period."""
    report = await sweep_service.activate_deferred_changes(database)
    return SweepResponse.model_validate(report.as_dict())


@router.post("/process-scheduled-downgrades", response_model=SweepResponse)
async def process_scheduled_downgrades(database: Database = Depends(get_database)) -> SweepResponse:
    """Move subscriptions cancelled at period end to the free plan."""
    report = await sweep_service.process_scheduled_downgrades(database)
    return SweepResponse.model_validate(report.as_dict())
