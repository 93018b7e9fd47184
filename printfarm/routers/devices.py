from typing import List

from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.context import FleetContext
from printfarm.models.core import DeviceEvent, DeviceReading
from printfarm.models.device import DeviceCreate, DeviceRead, MaintenanceToggle
from printfarm.routers.deps import get_fleet, get_session

router = APIRouter(prefix="/devices", tags=["Devices"])


@router.get("", response_model=List[DeviceRead])
async def list_devices(session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    return await fleet.devices.list_devices(session)


@router.post("", response_model=DeviceRead, status_code=201)
async def create_device(
    device_in: DeviceCreate,
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    return await fleet.devices.create_device(session, device_in)


@router.get("/{device_id}", response_model=DeviceRead)
async def get_device(device_id: int, session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    return await fleet.devices.get_device(session, device_id)


@router.get("/{device_id}/history", response_model=List[DeviceReading])
async def get_device_history(
    device_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    """Recent telemetry, newest first."""
    return await fleet.devices.get_device_history(session, device_id, limit)


@router.get("/{device_id}/events", response_model=List[DeviceEvent])
async def get_device_events(
    device_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    return await fleet.devices.get_device_events(session, device_id, limit)


@router.post("/{device_id}/maintenance", response_model=DeviceRead)
async def set_maintenance(
    device_id: int,
    toggle: MaintenanceToggle,
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    return await fleet.devices.set_maintenance(session, device_id, toggle.enabled)


@router.delete("/{device_id}", response_model=DeviceRead)
async def deactivate_device(device_id: int, session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    """Soft delete; telemetry history is kept."""
    return await fleet.devices.deactivate_device(session, device_id)
