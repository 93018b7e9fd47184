import logging
from typing import Dict, List, Optional

from fastapi import status
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.exceptions import FleetException, ResourceNotFoundError
from printfarm.models.core import (
    OCCUPYING_JOB_STATUSES,
    Device,
    DeviceEvent,
    DeviceReading,
    Job,
)
from printfarm.models.device import DeviceCreate, DeviceRead
from printfarm.schemas.events import EventTopic
from printfarm.services.events import EventBus

logger = logging.getLogger("DeviceService")


class DeviceService:
    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus

    def _to_read(self, device: Device, current_job: Optional[Job] = None) -> DeviceRead:
        """Merges device configuration with its current job."""
        data = device.model_dump()
        data["current_job_id"] = current_job.id if current_job else None
        data["current_job_name"] = current_job.name if current_job else None
        return DeviceRead(**data)

    async def _current_jobs(self, session: AsyncSession) -> Dict[int, Job]:
        jobs = (await session.exec(
            select(Job).where(Job.status.in_(OCCUPYING_JOB_STATUSES)).where(Job.assigned_device_id.is_not(None))
        )).all()
        return {job.assigned_device_id: job for job in jobs}

    async def _get(self, session: AsyncSession, device_id: int) -> Device:
        device = await session.get(Device, device_id)
        if not device:
            raise ResourceNotFoundError("Device", device_id)
        return device

    async def list_devices(self, session: AsyncSession) -> List[DeviceRead]:
        devices = (await session.exec(
            select(Device).where(Device.is_active == True).order_by(Device.name.asc())  # noqa: E712
        )).all()
        current_jobs = await self._current_jobs(session)
        return [self._to_read(device, current_jobs.get(device.id)) for device in devices]

    async def get_device(self, session: AsyncSession, device_id: int) -> DeviceRead:
        device = await self._get(session, device_id)
        current_jobs = await self._current_jobs(session)
        return self._to_read(device, current_jobs.get(device.id))

    async def get_device_history(self, session: AsyncSession, device_id: int, limit: int = 100) -> List[DeviceReading]:
        """Newest readings first."""
        await self._get(session, device_id)
        return list((await session.exec(
            select(DeviceReading)
            .where(DeviceReading.device_id == device_id)
            .order_by(DeviceReading.recorded_at.desc(), DeviceReading.id.desc())
            .limit(limit)
        )).all())

    async def get_device_events(self, session: AsyncSession, device_id: int, limit: int = 50) -> List[DeviceEvent]:
        await self._get(session, device_id)
        return list((await session.exec(
            select(DeviceEvent)
            .where(DeviceEvent.device_id == device_id)
            .order_by(DeviceEvent.created_at.desc(), DeviceEvent.id.desc())
            .limit(limit)
        )).all())

    async def create_device(self, session: AsyncSession, device_in: DeviceCreate) -> DeviceRead:
        existing = (await session.exec(select(Device).where(Device.name == device_in.name))).first()
        if existing:
            raise FleetException(status.HTTP_409_CONFLICT, f"Device name {device_in.name} already exists.")

        device = Device(**device_in.model_dump())
        session.add(device)
        await session.commit()
        await session.refresh(device)

        logger.info(f"Device {device.id} ({device.name}) added at {device.ip_address}:{device.port}.")
        await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
            "type": "DEVICE_ADDED",
            "device_id": device.id,
            "name": device.name,
        })
        return self._to_read(device)

    async def deactivate_device(self, session: AsyncSession, device_id: int) -> DeviceRead:
        """Soft delete. History stays."""
        device = await self._get(session, device_id)
        device.is_active = False
        session.add(device)
        await session.commit()
        await session.refresh(device)
        logger.info(f"Device {device.id} deactivated.")
        return self._to_read(device)

    async def set_maintenance(self, session: AsyncSession, device_id: int, enabled: bool) -> DeviceRead:
        device = await self._get(session, device_id)
        device.maintenance_mode = enabled
        session.add(device)
        session.add(DeviceEvent(
            device_id=device.id,
            level="INFO",
            code="CMD_MAINTENANCE",
            message=f"Maintenance mode {'enabled' if enabled else 'disabled'}",
        ))
        await session.commit()
        await session.refresh(device)

        await self.event_bus.publish(EventTopic.DEVICE_TELEMETRY, {
            "device_id": device.id,
            "name": device.name,
            "maintenance_mode": enabled,
        })
        current_jobs = await self._current_jobs(session)
        return self._to_read(device, current_jobs.get(device.id))
