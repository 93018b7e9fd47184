from typing import List

from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.context import FleetContext
from printfarm.models.energy import EnergyReading, EnergySettings, EnergySettingsUpdate, EnergyState, PowerEvent
from printfarm.routers.deps import get_fleet, get_session

router = APIRouter(prefix="/energy", tags=["Energy"])


@router.get("", response_model=EnergyState)
async def get_energy_state(session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    return await fleet.energy.get_energy_state(session)


@router.get("/settings", response_model=EnergySettings)
async def get_settings(session: AsyncSession = Depends(get_session), fleet: FleetContext = Depends(get_fleet)):
    return await fleet.energy.get_settings(session)


@router.put("/settings", response_model=EnergySettings)
async def update_settings(
    update: EnergySettingsUpdate,
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    return await fleet.energy.update_settings(session, update)


@router.get("/readings", response_model=List[EnergyReading])
async def get_readings(
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    """Historical chart data in chronological order."""
    return await fleet.energy.list_readings(session, limit)


@router.get("/events", response_model=List[PowerEvent])
async def get_power_events(
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    fleet: FleetContext = Depends(get_fleet),
):
    return await fleet.energy.list_power_events(session, limit)
