import logging
from typing import List, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.exceptions import (
    DeviceUnreachable,
    InvalidTransitionError,
    JobNotFlaggedError,
    ResourceNotFoundError,
)
from printfarm.models.core import (
    ACTIVE_QUEUE_STATUSES,
    OCCUPYING_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    Device,
    Job,
    JobStatusEnum,
    QueueEntry,
    QueueEntryStatusEnum,
)
from printfarm.schemas.events import EventTopic
from printfarm.services.device.client import DeviceClient
from printfarm.services.events import EventBus
from printfarm.utils.timeutils import utc_now

logger = logging.getLogger("JobService")

# queued -> printing happens only through an assignment
ALLOWED_TRANSITIONS = {
    JobStatusEnum.QUEUED: {JobStatusEnum.CANCELLED},
    JobStatusEnum.PRINTING: {JobStatusEnum.PAUSED, JobStatusEnum.COMPLETED, JobStatusEnum.FAILED, JobStatusEnum.CANCELLED},
    JobStatusEnum.PAUSED: {JobStatusEnum.PRINTING, JobStatusEnum.FAILED, JobStatusEnum.CANCELLED},
}

# Transitions the printer has to be told about. Completed and failed are
# reported by the operator after the fact.
DEVICE_COMMANDS = {
    (JobStatusEnum.PRINTING, JobStatusEnum.PAUSED): "pause",
    (JobStatusEnum.PAUSED, JobStatusEnum.PRINTING): "resume",
    (JobStatusEnum.PRINTING, JobStatusEnum.CANCELLED): "cancel",
    (JobStatusEnum.PAUSED, JobStatusEnum.CANCELLED): "cancel",
}


class JobService:
    """
    Lifecycle of work units after assignment: pause/resume and the
    terminal outcomes, plus operator resolution of flagged jobs.
    """

    def __init__(self, event_bus: EventBus, device_client: Optional[DeviceClient] = None):
        self.event_bus = event_bus
        self.device_client = device_client

    async def list_jobs(self, session: AsyncSession, status: Optional[JobStatusEnum] = None, limit: int = 100) -> List[Job]:
        statement = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(limit)
        if status:
            statement = statement.where(Job.status == status)
        return list((await session.exec(statement)).all())

    async def get_job(self, session: AsyncSession, job_id: int) -> Job:
        job = await session.get(Job, job_id)
        if not job:
            raise ResourceNotFoundError("Job", job_id)
        return job

    async def update_status(self, session: AsyncSession, job_id: int, status: JobStatusEnum) -> Job:
        job = await self.get_job(session, job_id)
        if status not in ALLOWED_TRANSITIONS.get(job.status, set()):
            raise InvalidTransitionError(job.id, job.status.value, status.value)

        previous = job.status
        device_id = job.assigned_device_id
        await self._apply(session, job, status)
        await session.commit()
        await session.refresh(job)

        logger.info(f"Job {job.id}: {previous.value} -> {status.value}")
        await self._publish(job, previous)

        command = DEVICE_COMMANDS.get((previous, status))
        if command and device_id is not None:
            await self._send_command(session, device_id, job.id, command)
        return job

    async def resolve_reconciliation(self, session: AsyncSession, job_id: int, status: JobStatusEnum) -> Job:
        """
        Operator decision for a job flagged as inconsistent. The job may be
        closed with any terminal outcome, or confirmed as printing/paused
        when it still holds its device. Queued is never a valid target:
        work only starts through an admitted assignment.
        """
        job = await self.get_job(session, job_id)
        if not job.needs_reconciliation:
            raise JobNotFlaggedError(job.id)

        holds_device = job.status in OCCUPYING_JOB_STATUSES and job.assigned_device_id is not None
        if status not in TERMINAL_JOB_STATUSES and not (status in OCCUPYING_JOB_STATUSES and holds_device):
            raise InvalidTransitionError(job.id, job.status.value, status.value)

        previous = job.status
        await self._apply(session, job, status)
        job.needs_reconciliation = False
        job.reconciliation_note = None
        await session.commit()
        await session.refresh(job)

        logger.info(f"Job {job.id} reconciled by operator: {previous.value} -> {status.value}")
        await self._publish(job, previous)
        return job

    async def _send_command(self, session: AsyncSession, device_id: int, job_id: int, command: str) -> None:
        if self.device_client is None:
            return
        device = await session.get(Device, device_id)
        if not device:
            return

        try:
            await getattr(self.device_client, f"{command}_print")(device)
        except DeviceUnreachable as e:
            # The recorded status stands; telemetry and the operator settle it.
            logger.error(f"{command.capitalize()} command for job {job_id} on device {device_id} failed: {e.message}")
            await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
                "type": "COMMAND_FAILED",
                "command": command,
                "job_id": job_id,
                "device_id": device_id,
                "error": e.message,
            })

    async def _apply(self, session: AsyncSession, job: Job, status: JobStatusEnum) -> None:
        job.status = status
        if status in TERMINAL_JOB_STATUSES:
            job.completed_at = utc_now()
            job.needs_reconciliation = False

            entry = (await session.exec(
                select(QueueEntry)
                .where(QueueEntry.job_id == job.id)
                .where(QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES))
            )).first()
            if entry:
                # Cancelled before assignment counts as a withdrawal
                if entry.status == QueueEntryStatusEnum.QUEUED and status == JobStatusEnum.CANCELLED:
                    entry.status = QueueEntryStatusEnum.REMOVED
                else:
                    entry.status = QueueEntryStatusEnum.DONE
                session.add(entry)
        session.add(job)

    async def _publish(self, job: Job, previous: JobStatusEnum) -> None:
        await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
            "type": "JOB_STATUS_CHANGED",
            "job_id": job.id,
            "job_name": job.name,
            "from": previous.value,
            "to": job.status.value,
            "device_id": job.assigned_device_id,
        })
