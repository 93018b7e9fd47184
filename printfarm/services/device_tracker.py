import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func
from sqlalchemy.orm import sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.exceptions import DeviceUnreachable
from printfarm.models.core import (
    Device,
    DeviceEvent,
    DeviceReading,
    DeviceStatusEnum,
    Job,
    JobStatusEnum,
    QueueEntry,
    QueueEntryStatusEnum,
)
from printfarm.schemas.events import EventTopic
from printfarm.schemas.telemetry import DeviceSnapshot
from printfarm.services.device.client import DeviceClient
from printfarm.services.device.status_mapper import HeaterPowerModel, PowerModel, build_snapshot
from printfarm.services.events import EventBus
from printfarm.services.periodic import PeriodicWorker
from printfarm.utils.timeutils import as_utc, utc_now

logger = logging.getLogger("DeviceStateTracker")

# (sensor key, snapshot attribute, device limit attribute, event code)
THERMAL_SENSORS = (
    ("extruder", "temperature_extruder", "max_temp_extruder", "THERMAL_RUNAWAY"),
    ("bed", "temperature_bed", "max_temp_bed", "BED_OVERHEAT"),
)


class DeviceStateTracker(PeriodicWorker):
    """
    Polls every active device, persists the normalized reading together
    with the device's current status, and raises thermal and stale-job
    signals.
    """

    name = "DeviceStateTracker"

    def __init__(
        self,
        session_maker: sessionmaker,
        event_bus: EventBus,
        device_client: DeviceClient,
        power_model: Optional[PowerModel] = None,
        poll_interval: float = 7.0,
        query_timeout: float = 3.0,
        history_cap: int = 500,
        stale_idle_readings: int = 3,
    ):
        super().__init__(poll_interval)
        self.session_maker = session_maker
        self.event_bus = event_bus
        self.device_client = device_client
        self.power_model = power_model or HeaterPowerModel()
        self.query_timeout = query_timeout
        self.history_cap = history_cap
        self.stale_idle_readings = stale_idle_readings

        # (device_id, sensor) -> currently over limit
        self._thermal_breached: Dict[Tuple[int, str], bool] = {}
        # device_id -> consecutive idle readings while a job is printing on it
        self._idle_streak: Dict[int, int] = {}

    async def run_cycle(self) -> None:
        async with self.session_maker() as session:
            result = await session.exec(select(Device).where(Device.is_active == True))  # noqa: E712
            devices = result.all()

        if not devices:
            return

        await asyncio.gather(*(self.process_device(device) for device in devices))

    async def poll(self, device: Device) -> DeviceSnapshot:
        """
        Queries one device. Transport and parsing failures never propagate:
        they yield an offline snapshot with zero metrics.
        """
        try:
            payload = await asyncio.wait_for(
                self.device_client.query_status(device),
                timeout=self.query_timeout,
            )
            return build_snapshot(device, payload, self.power_model)
        except asyncio.TimeoutError:
            logger.debug(f"Device {device.id} poll timed out after {self.query_timeout}s.")
            return DeviceSnapshot.unreachable(device.id, f"Timeout after {self.query_timeout}s")
        except DeviceUnreachable as e:
            logger.debug(f"Device {device.id} unreachable: {e.message}")
            return DeviceSnapshot.unreachable(device.id, e.message)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Device {device.id} returned malformed telemetry: {e}")
            return DeviceSnapshot.unreachable(device.id, f"Malformed telemetry: {e}")

    async def process_device(self, device: Device) -> DeviceSnapshot:
        snapshot = await self.poll(device)
        async with self.session_maker() as session:
            db_device = await session.get(Device, device.id)
            if not db_device or not db_device.is_active:
                return snapshot
            reading, anomalies = await self.record(session, db_device, snapshot)
            await self._publish(db_device, reading, snapshot, anomalies)
            await self._check_stale_job(session, db_device, snapshot)
        return snapshot

    async def record(
        self,
        session: AsyncSession,
        device: Device,
        snapshot: DeviceSnapshot,
    ) -> Tuple[DeviceReading, List[DeviceEvent]]:
        """
        Appends the reading, updates the device's current status in the
        same transaction, and evicts history past the per-device cap.
        """
        reading = DeviceReading(
            device_id=device.id,
            temperature_extruder=snapshot.temperature_extruder,
            temperature_bed=snapshot.temperature_bed,
            progress=snapshot.progress,
            status=snapshot.status,
            fan_speed=snapshot.fan_speed,
            power_draw_estimate=snapshot.power_draw_estimate,
        )
        session.add(reading)

        if device.current_status != snapshot.status:
            logger.info(f"Device {device.id} ({device.name}): {device.current_status.value} -> {snapshot.status.value}")
        device.current_status = snapshot.status
        device.current_power_kw = snapshot.power_draw_estimate
        if snapshot.is_reachable:
            device.last_seen_at = reading.recorded_at
        session.add(device)

        anomalies = self._check_thermal(device, snapshot)
        for event in anomalies:
            session.add(event)

        await session.flush()
        await self._evict_history(session, device.id)
        await session.commit()
        await session.refresh(reading)
        return reading, anomalies

    async def _evict_history(self, session: AsyncSession, device_id: int) -> int:
        count = (await session.exec(
            select(func.count()).select_from(DeviceReading).where(DeviceReading.device_id == device_id)
        )).one()
        overflow = count - self.history_cap
        if overflow <= 0:
            return 0

        oldest_ids = (await session.exec(
            select(DeviceReading.id)
            .where(DeviceReading.device_id == device_id)
            .order_by(DeviceReading.recorded_at.asc(), DeviceReading.id.asc())
            .limit(overflow)
        )).all()
        await session.execute(delete(DeviceReading).where(DeviceReading.id.in_(oldest_ids)))
        return len(oldest_ids)

    def _check_thermal(self, device: Device, snapshot: DeviceSnapshot) -> List[DeviceEvent]:
        """
        Edge-triggered: one event when a sensor crosses its limit, re-armed
        once it is back at or under the limit. Offline snapshots carry no
        temperature data and leave the state untouched.
        """
        if not snapshot.is_reachable:
            return []

        events = []
        for sensor, value_attr, limit_attr, code in THERMAL_SENSORS:
            value = getattr(snapshot, value_attr)
            limit = getattr(device, limit_attr)
            key = (device.id, sensor)
            if value > limit:
                if not self._thermal_breached.get(key):
                    self._thermal_breached[key] = True
                    logger.critical(f"Device {device.id} {sensor} at {value}°C exceeds limit {limit}°C")
                    events.append(DeviceEvent(
                        device_id=device.id,
                        level="CRITICAL",
                        code=code,
                        message=f"{sensor.capitalize()} temp {value}°C exceeds limit {limit}°C",
                        value=value,
                    ))
            else:
                self._thermal_breached[key] = False
        return events

    async def _publish(
        self,
        device: Device,
        reading: DeviceReading,
        snapshot: DeviceSnapshot,
        anomalies: List[DeviceEvent],
    ) -> None:
        payload = reading.model_dump(mode="json")
        payload.update({
            "name": device.name,
            "is_reachable": snapshot.is_reachable,
            "error": snapshot.error,
        })
        await self.event_bus.publish(EventTopic.DEVICE_TELEMETRY, payload)

        for event in anomalies:
            await self.event_bus.publish(EventTopic.DEVICE_ANOMALY, {
                "device_id": device.id,
                "name": device.name,
                "level": event.level,
                "code": event.code,
                "message": event.message,
                "value": event.value,
            })

    async def _check_stale_job(self, session: AsyncSession, device: Device, snapshot: DeviceSnapshot) -> None:
        """
        A job still PRINTING while its device keeps reporting idle is
        flagged for operator reconciliation. Its status is never rewritten.
        """
        if snapshot.status != DeviceStatusEnum.IDLE:
            self._idle_streak.pop(device.id, None)
            return

        job = (await session.exec(
            select(Job)
            .where(Job.assigned_device_id == device.id)
            .where(Job.status == JobStatusEnum.PRINTING)
        )).first()
        if not job:
            self._idle_streak.pop(device.id, None)
            return

        entry = (await session.exec(
            select(QueueEntry)
            .where(QueueEntry.job_id == job.id)
            .where(QueueEntry.status == QueueEntryStatusEnum.ASSIGNED)
        )).first()
        start_at = as_utc(entry.start_at if entry and entry.start_at else job.started_at)
        if start_at and start_at > utc_now():
            # Start signal still pending (stagger)
            return

        streak = self._idle_streak.get(device.id, 0) + 1
        self._idle_streak[device.id] = streak
        if streak < self.stale_idle_readings or job.needs_reconciliation:
            return

        job.needs_reconciliation = True
        job.reconciliation_note = (
            f"Device {device.id} reported idle for {streak} consecutive readings while job is printing."
        )
        session.add(job)
        await session.commit()
        logger.warning(f"Job {job.id} on device {device.id} looks stale. Operator reconciliation required.")
        await self.event_bus.publish(EventTopic.QUEUE_UPDATED, {
            "type": "JOB_STALE",
            "job_id": job.id,
            "device_id": device.id,
            "note": job.reconciliation_note,
        })
