import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.exceptions import DeviceUnreachable
from printfarm.models.core import (
    OCCUPYING_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    Device,
    DeviceStatusEnum,
    Job,
    JobStatusEnum,
    QueueEntry,
    QueueEntryStatusEnum,
)
from printfarm.schemas.events import EventTopic
from printfarm.services.device.client import DeviceClient
from printfarm.services.energy_controller import EnergyAdmissionController, get_or_create_settings
from printfarm.services.events import EventBus
from printfarm.services.periodic import PeriodicWorker
from printfarm.utils.timeutils import utc_now

logger = logging.getLogger("FleetScheduler")


@dataclass
class Assignment:
    queue_entry_id: int
    job_id: int
    job_name: str
    device_id: int
    device_name: str
    start_delay_sec: float = 0.0

    def as_event(self, mode: str) -> dict:
        return {
            "type": "JOB_ASSIGNED",
            "mode": mode,
            "queue_entry_id": self.queue_entry_id,
            "job_id": self.job_id,
            "job_name": self.job_name,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "start_delay_sec": self.start_delay_sec,
        }


@dataclass
class ReconciliationReport:
    restored: List[int] = field(default_factory=list)
    replayed: List[int] = field(default_factory=list)
    reverted: List[int] = field(default_factory=list)
    closed: List[int] = field(default_factory=list)
    flagged: List[int] = field(default_factory=list)


class FleetScheduler(PeriodicWorker):
    """
    Periodic matcher: pairs idle devices with queued work, highest
    priority first and FIFO within a priority, behind the energy gate.

    The lock below is the single critical section for assignments. The
    manual path in QueueService takes the same lock.
    """

    name = "FleetScheduler"

    def __init__(
        self,
        session_maker: sessionmaker,
        event_bus: EventBus,
        energy_controller: EnergyAdmissionController,
        device_client: Optional[DeviceClient] = None,
        interval: float = 15.0,
    ):
        super().__init__(interval)
        self.session_maker = session_maker
        self.event_bus = event_bus
        self.energy_controller = energy_controller
        self.device_client = device_client
        self.lock = asyncio.Lock()

        self._pending_starts: Dict[int, asyncio.TimerHandle] = {}
        self._start_tasks: Set[asyncio.Task] = set()

    async def run_cycle(self) -> List[Assignment]:
        async with self.lock:
            async with self.session_maker() as session:
                assignments = await self._match(session)

            for assignment in assignments:
                self.schedule_start(assignment.device_id, assignment.job_id, assignment.start_delay_sec)

        # Published after the lock is released
        for assignment in assignments:
            await self.event_bus.publish(EventTopic.QUEUE_UPDATED, assignment.as_event("auto"))
        return assignments

    async def _match(self, session: AsyncSession) -> List[Assignment]:
        decision = await self.energy_controller.check_admission(
            session, action="Automatic assignment tick skipped by peak protection"
        )
        if not decision.allowed:
            logger.info(f"Tick skipped: {decision.reason}")
            return []

        idle_devices = await self.find_idle_devices(session)
        if not idle_devices:
            logger.debug("No idle devices available.")
            return []

        candidates = await self.find_candidates(session, limit=len(idle_devices))
        if not candidates:
            logger.debug("No queued work.")
            return []

        energy_settings = await get_or_create_settings(session)
        stagger_delay = energy_settings.stagger_delay_sec if energy_settings.stagger_enabled else 0

        logger.info(f"Matching {len(idle_devices)} idle devices against {len(candidates)} queued entries.")

        # Plain ids: a rollback below expires every loaded instance
        pairs = [(device.id, entry.id) for device, entry in zip(idle_devices, candidates)]

        assignments = []
        for device_id, entry_id in pairs:
            delay = len(assignments) * stagger_delay
            try:
                assignment = await self.commit_assignment(session, entry_id, device_id, start_delay_sec=delay)
            except Exception as e:
                await session.rollback()
                logger.error(f"Assignment of queue entry {entry_id} to device {device_id} failed: {e}", exc_info=True)
                continue
            if assignment:
                assignments.append(assignment)
        return assignments

    async def occupied_device_ids(self, session: AsyncSession) -> Set[int]:
        rows = (await session.exec(
            select(Job.assigned_device_id)
            .where(Job.status.in_(OCCUPYING_JOB_STATUSES))
            .where(Job.assigned_device_id.is_not(None))
        )).all()
        return set(rows)

    async def find_idle_devices(self, session: AsyncSession) -> List[Device]:
        """
        Only genuinely idle devices are eligible: offline devices cannot be
        confirmed ready, and a device holding a printing or paused job is
        occupied whatever its last reading says.
        """
        occupied = await self.occupied_device_ids(session)
        devices = (await session.exec(
            select(Device)
            .where(Device.is_active == True)  # noqa: E712
            .where(Device.maintenance_mode == False)  # noqa: E712
            .where(Device.current_status == DeviceStatusEnum.IDLE)
            .order_by(Device.name.asc(), Device.id.asc())
        )).all()
        return [device for device in devices if device.id not in occupied]

    async def find_candidates(self, session: AsyncSession, limit: Optional[int] = None) -> List[QueueEntry]:
        statement = (
            select(QueueEntry)
            .where(QueueEntry.status == QueueEntryStatusEnum.QUEUED)
            .where(QueueEntry.device_id.is_(None))
            .order_by(QueueEntry.priority.asc(), QueueEntry.created_at.asc(), QueueEntry.id.asc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        return list((await session.exec(statement)).all())

    async def commit_assignment(
        self,
        session: AsyncSession,
        queue_entry_id: int,
        device_id: int,
        start_delay_sec: float = 0.0,
    ) -> Optional[Assignment]:
        """
        Moves one entry to ASSIGNED and its job to PRINTING in a single
        commit. Returns None when either row changed under us.
        Callers must hold `self.lock`.
        """
        entry = (await session.exec(
            select(QueueEntry)
            .where(QueueEntry.id == queue_entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).first()
        if not entry or entry.status != QueueEntryStatusEnum.QUEUED or entry.device_id is not None:
            logger.warning(f"Queue entry {queue_entry_id} is no longer queued. Skipping.")
            return None

        job = (await session.exec(
            select(Job)
            .where(Job.id == entry.job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).first()
        if not job or job.status != JobStatusEnum.QUEUED:
            logger.warning(f"Job for queue entry {queue_entry_id} is no longer queued. Skipping.")
            return None

        device = await session.get(Device, device_id)
        if not device:
            return None

        now = utc_now()
        entry.device_id = device.id
        entry.status = QueueEntryStatusEnum.ASSIGNED
        entry.start_at = now + timedelta(seconds=start_delay_sec)

        job.assigned_device_id = device.id
        job.status = JobStatusEnum.PRINTING
        job.started_at = now

        session.add(entry)
        session.add(job)
        await session.commit()

        logger.info(f"Assigned job {job.id} ({job.name}) -> device {device.id} ({device.name}), start in {start_delay_sec}s.")
        return Assignment(
            queue_entry_id=entry.id,
            job_id=job.id,
            job_name=job.name,
            device_id=device.id,
            device_name=device.name,
            start_delay_sec=start_delay_sec,
        )

    def schedule_start(self, device_id: int, job_id: int, delay_sec: float = 0.0) -> None:
        """
        Defers the device start signal without blocking the caller. Staggered
        starts are timer callbacks, so the matching loop never sleeps.
        """
        if self.device_client is None:
            return

        if delay_sec <= 0:
            self._spawn_start(device_id, job_id)
            return

        loop = asyncio.get_running_loop()
        self._pending_starts[job_id] = loop.call_later(delay_sec, self._spawn_start, device_id, job_id)

    def _spawn_start(self, device_id: int, job_id: int) -> None:
        self._pending_starts.pop(job_id, None)
        task = asyncio.create_task(self._signal_start(device_id, job_id))
        self._start_tasks.add(task)
        task.add_done_callback(self._start_tasks.discard)

    @property
    def pending_start_count(self) -> int:
        return len(self._pending_starts)

    async def _signal_start(self, device_id: int, job_id: int) -> None:
        async with self.session_maker() as session:
            device = await session.get(Device, device_id)
            job = await session.get(Job, job_id)
            if not device or not job:
                return
            if job.status != JobStatusEnum.PRINTING or job.assigned_device_id != device_id:
                logger.info(f"Job {job_id} no longer printing on device {device_id}. Start signal dropped.")
                return

            try:
                await self.device_client.start_print(device, job)
            except DeviceUnreachable as e:
                # Left for telemetry and the operator; state is not rewritten.
                logger.error(f"Start signal for job {job_id} on device {device_id} failed: {e.message}")
                await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
                    "type": "START_FAILED",
                    "job_id": job_id,
                    "device_id": device_id,
                    "error": e.message,
                })

    def cancel_pending_starts(self) -> None:
        for handle in self._pending_starts.values():
            handle.cancel()
        self._pending_starts.clear()
        for task in self._start_tasks:
            task.cancel()

    async def stop(self) -> None:
        await super().stop()
        self.cancel_pending_starts()
        await asyncio.gather(*self._start_tasks, return_exceptions=True)

    async def reconcile(self) -> ReconciliationReport:
        """
        Startup repair of interrupted commits. Consistent in-flight jobs are
        trusted; contradictions are flagged for the operator, never guessed.
        """
        report = ReconciliationReport()
        async with self.lock:
            async with self.session_maker() as session:
                printing = (await session.exec(
                    select(Job)
                    .where(Job.status.in_(OCCUPYING_JOB_STATUSES))
                    .where(Job.assigned_device_id.is_not(None))
                )).all()
                report.restored = [job.id for job in printing]

                entries = (await session.exec(
                    select(QueueEntry)
                    .where(QueueEntry.status.in_((QueueEntryStatusEnum.QUEUED, QueueEntryStatusEnum.ASSIGNED)))
                    .order_by(QueueEntry.id.asc())
                )).all()

                occupied = await self.occupied_device_ids(session)
                for entry in entries:
                    job = await session.get(Job, entry.job_id)
                    if job is None:
                        continue
                    await self._reconcile_entry(session, entry, job, occupied, report)

                await session.commit()

        for job_id in report.replayed:
            async with self.session_maker() as session:
                job = await session.get(Job, job_id)
            if job and job.assigned_device_id:
                self.schedule_start(job.assigned_device_id, job.id)

        logger.info(
            f"Reconciliation: restored {len(report.restored)} in-progress jobs, "
            f"replayed {len(report.replayed)}, reverted {len(report.reverted)}, "
            f"closed {len(report.closed)}, flagged {len(report.flagged)}."
        )
        if report.replayed or report.reverted or report.closed or report.flagged:
            await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
                "type": "RECONCILED",
                "replayed_job_ids": report.replayed,
                "reverted_entry_ids": report.reverted,
                "closed_entry_ids": report.closed,
                "flagged_job_ids": report.flagged,
            })
        return report

    async def _reconcile_entry(
        self,
        session: AsyncSession,
        entry: QueueEntry,
        job: Job,
        occupied: Set[int],
        report: ReconciliationReport,
    ) -> None:
        if job.status in TERMINAL_JOB_STATUSES:
            entry.status = QueueEntryStatusEnum.DONE
            session.add(entry)
            report.closed.append(entry.id)
            return

        if job.status in OCCUPYING_JOB_STATUSES:
            if entry.status == QueueEntryStatusEnum.ASSIGNED and entry.device_id == job.assigned_device_id:
                return
            self._flag(job, (
                f"Queue entry {entry.id} is {entry.status.value} on device {entry.device_id} "
                f"but job is {job.status.value} on device {job.assigned_device_id}."
            ))
            session.add(job)
            report.flagged.append(job.id)
            return

        # Job still QUEUED
        if entry.status == QueueEntryStatusEnum.QUEUED:
            if entry.device_id is not None:
                entry.device_id = None
                session.add(entry)
            return

        # ASSIGNED entry whose job never reached PRINTING: interrupted commit
        device = await session.get(Device, entry.device_id) if entry.device_id else None
        if device and device.is_active and not device.maintenance_mode and device.id not in occupied:
            now = utc_now()
            job.status = JobStatusEnum.PRINTING
            job.assigned_device_id = device.id
            job.started_at = now
            entry.start_at = now
            session.add(job)
            session.add(entry)
            occupied.add(device.id)
            report.replayed.append(job.id)
            logger.warning(f"Replayed interrupted assignment of job {job.id} to device {device.id}.")
        else:
            stale_device_id = entry.device_id
            entry.status = QueueEntryStatusEnum.QUEUED
            entry.device_id = None
            entry.start_at = None
            session.add(entry)
            report.reverted.append(entry.id)
            logger.warning(f"Reverted queue entry {entry.id} to queued; device {stale_device_id} cannot take it.")

    @staticmethod
    def _flag(job: Job, note: str) -> None:
        job.needs_reconciliation = True
        job.reconciliation_note = note
        logger.error(f"Job {job.id} requires operator reconciliation: {note}")
