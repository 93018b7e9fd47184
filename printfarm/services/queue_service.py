import logging
import uuid
from typing import List, Optional

from sqlalchemy.orm import selectinload
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.exceptions import (
    DeviceBusyError,
    EnergyThresholdError,
    QueueConflictError,
    ResourceNotFoundError,
)
from printfarm.models.core import (
    ACTIVE_QUEUE_STATUSES,
    PRIORITY_RANK,
    Device,
    DeviceStatusEnum,
    Job,
    JobPriorityEnum,
    JobStatusEnum,
    QueueEntry,
    QueueEntryStatusEnum,
)
from printfarm.models.queue import JobCreate
from printfarm.schemas.events import EventTopic
from printfarm.services.energy_controller import EnergyAdmissionController
from printfarm.services.events import EventBus
from printfarm.services.fleet_scheduler import FleetScheduler
from printfarm.utils.timeutils import utc_now

logger = logging.getLogger("QueueService")


def new_job_code() -> str:
    return f"JOB-{uuid.uuid4().hex[:6].upper()}"


class QueueService:
    """
    Operator-facing queue operations. `assign` is the manual twin of one
    scheduler match and runs under the scheduler's lock.
    """

    def __init__(self, scheduler: FleetScheduler, energy_controller: EnergyAdmissionController, event_bus: EventBus):
        self.scheduler = scheduler
        self.energy_controller = energy_controller
        self.event_bus = event_bus

    async def _load_entry(self, session: AsyncSession, queue_entry_id: int) -> QueueEntry:
        entry = (await session.exec(
            select(QueueEntry)
            .where(QueueEntry.id == queue_entry_id)
            .options(selectinload(QueueEntry.job))
            .execution_options(populate_existing=True)
        )).first()
        if not entry:
            raise ResourceNotFoundError("QueueEntry", queue_entry_id)
        return entry

    async def list_queue(self, session: AsyncSession) -> List[QueueEntry]:
        statement = (
            select(QueueEntry)
            .where(QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES))
            .options(selectinload(QueueEntry.job))
            .order_by(QueueEntry.priority.asc(), QueueEntry.created_at.asc(), QueueEntry.id.asc())
        )
        return list((await session.exec(statement)).all())

    async def enqueue(
        self,
        session: AsyncSession,
        job_in: JobCreate,
        priority: Optional[JobPriorityEnum] = None,
    ) -> QueueEntry:
        priority = priority or job_in.priority
        job = Job(
            job_code=new_job_code(),
            name=job_in.name,
            material=job_in.material,
            file_name=job_in.file_name,
            weight_grams=job_in.weight_grams,
            estimated_duration_min=job_in.estimated_duration_min,
            priority=priority,
        )
        session.add(job)
        await session.flush()

        entry = QueueEntry(job_id=job.id, priority=PRIORITY_RANK[priority])
        session.add(entry)
        await session.commit()

        entry = await self._load_entry(session, entry.id)
        logger.info(f"Queued job {job.id} ({job.name}) with priority {priority.value}.")
        await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
            "type": "JOB_ADDED",
            "queue_entry_id": entry.id,
            "job_id": job.id,
            "job_name": job.name,
            "priority": entry.priority,
        })
        return entry

    async def assign(self, session: AsyncSession, queue_entry_id: int, device_id: int) -> QueueEntry:
        """
        Manually assigns one queued entry to one device. Same lock, same
        admission gate and same busy check as the periodic scheduler.
        Raises without mutating anything on conflict, busy device or block.
        """
        async with self.scheduler.lock:
            entry = await self._load_entry(session, queue_entry_id)
            device = await session.get(Device, device_id)
            if not device or not device.is_active:
                raise ResourceNotFoundError("Device", device_id)

            if entry.status != QueueEntryStatusEnum.QUEUED or entry.device_id is not None:
                raise QueueConflictError(entry.id, entry.status.value)

            decision = await self.energy_controller.check_admission(
                session, action=f"Manual assignment of queue entry {queue_entry_id} to device {device_id} blocked"
            )
            if not decision.allowed:
                raise EnergyThresholdError(
                    current_kw=decision.current_kw,
                    limit_kw=decision.limit_kw,
                    threshold_kw=decision.threshold_kw,
                    reason=decision.reason,
                )

            occupied = await self.scheduler.occupied_device_ids(session)
            if device.id in occupied:
                raise DeviceBusyError(device.id, "occupied")
            if device.maintenance_mode:
                raise DeviceBusyError(device.id, DeviceStatusEnum.MAINTENANCE.value)
            if device.current_status != DeviceStatusEnum.IDLE:
                raise DeviceBusyError(device.id, device.current_status.value)

            assignment = await self.scheduler.commit_assignment(session, queue_entry_id, device_id)
            if assignment is None:
                raise QueueConflictError(queue_entry_id, "changed concurrently")

            self.scheduler.schedule_start(assignment.device_id, assignment.job_id)

        await self.event_bus.publish(EventTopic.QUEUE_UPDATED, assignment.as_event("manual"))
        return await self._load_entry(session, queue_entry_id)

    async def change_priority(self, session: AsyncSession, queue_entry_id: int, priority: JobPriorityEnum) -> QueueEntry:
        entry = await self._load_entry(session, queue_entry_id)
        if entry.status not in ACTIVE_QUEUE_STATUSES:
            raise QueueConflictError(entry.id, entry.status.value)

        entry.priority = PRIORITY_RANK[priority]
        session.add(entry)
        if entry.job:
            entry.job.priority = priority
            session.add(entry.job)
        await session.commit()

        entry = await self._load_entry(session, queue_entry_id)
        await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
            "type": "PRIORITY_CHANGED",
            "queue_entry_id": entry.id,
            "priority": entry.priority,
        })
        return entry

    async def remove(self, session: AsyncSession, queue_entry_id: int) -> QueueEntry:
        """Withdraws an active entry and cancels its job."""
        async with self.scheduler.lock:
            entry = await self._load_entry(session, queue_entry_id)
            if entry.status not in ACTIVE_QUEUE_STATUSES:
                raise QueueConflictError(entry.id, entry.status.value)

            entry.status = QueueEntryStatusEnum.REMOVED
            session.add(entry)
            job = entry.job
            if job and job.status not in (JobStatusEnum.COMPLETED, JobStatusEnum.FAILED):
                job.status = JobStatusEnum.CANCELLED
                job.completed_at = utc_now()
                session.add(job)
            await session.commit()

        logger.info(f"Removed queue entry {queue_entry_id}.")
        await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
            "type": "JOB_REMOVED",
            "queue_entry_id": queue_entry_id,
        })
        return await self._load_entry(session, queue_entry_id)
