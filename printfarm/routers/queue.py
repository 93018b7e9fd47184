from typing import List

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.context import FleetContext
from printfarm.models.queue import AssignRequest, JobCreate, PriorityUpdate, QueueEntryRead
from printfarm.routers.deps import get_fleet, get_session

router = APIRouter(prefix="/queue", tags=["Queue"])


@router.get("", response_model=List[QueueEntryRead])
async def list_queue(session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    """Active entries in service order: priority, then insertion time."""
    return await fleet.queue.list_queue(session)


@router.post("", response_model=QueueEntryRead, status_code=201)
async def enqueue(job_in: JobCreate, session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    return await fleet.queue.enqueue(session, job_in)


@router.put("/{queue_entry_id}/assign", response_model=QueueEntryRead)
async def assign(
    queue_entry_id: int,
    request: AssignRequest,
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    """
    Manual assignment. 409 when the device is busy, the entry is no longer
    queued, or peak protection blocks new work.
    """
    return await fleet.queue.assign(session, queue_entry_id, request.device_id)


@router.put("/{queue_entry_id}/priority", response_model=QueueEntryRead)
async def change_priority(
    queue_entry_id: int,
    update: PriorityUpdate,
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    return await fleet.queue.change_priority(session, queue_entry_id, update.priority)


@router.delete("/{queue_entry_id}", response_model=QueueEntryRead)
async def remove(queue_entry_id: int, session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    return await fleet.queue.remove(session, queue_entry_id)
