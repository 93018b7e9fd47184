from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.context import FleetContext
from printfarm.models.core import JobStatusEnum
from printfarm.models.queue import JobRead, JobStatusUpdate
from printfarm.routers.deps import get_fleet, get_session

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("", response_model=List[JobRead])
async def get_jobs(
    status: Optional[JobStatusEnum] = None,
    limit: int = Query(default=100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    """
    Returns jobs ordered by creation date (descending).
    """
    return await fleet.jobs.list_jobs(session, status, limit)


@router.put("/{job_id}/status", response_model=JobRead)
async def update_job_status(
    job_id: int,
    update: JobStatusUpdate,
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    return await fleet.jobs.update_status(session, job_id, update.status)


@router.post("/{job_id}/reconcile", response_model=JobRead)
async def reconcile_job(
    job_id: int,
    update: JobStatusUpdate,
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    """
    Operator resolution for a job flagged as inconsistent with telemetry.
    Unflagged jobs are rejected with 409.
    """
    return await fleet.jobs.resolve_reconciliation(session, job_id, update.status)
