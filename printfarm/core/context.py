import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from printfarm.core.config import Settings
from printfarm.core.database import build_engine, build_session_maker
from printfarm.services.device.client import DeviceClient
from printfarm.services.device.meter import MeterClient
from printfarm.services.device.status_mapper import PowerModel
from printfarm.services.device_service import DeviceService
from printfarm.services.device_tracker import DeviceStateTracker
from printfarm.services.energy_controller import EnergyAdmissionController
from printfarm.services.events import EventBus, MqttEventSink, RedisEventSink
from printfarm.services.fleet_scheduler import FleetScheduler, ReconciliationReport
from printfarm.services.job_service import JobService
from printfarm.services.queue_service import QueueService

logger = logging.getLogger("FleetContext")


@dataclass
class FleetContext:
    """
    Explicit wiring of the fleet core. Built once (init), then `run`
    starts the periodic drivers and `shutdown` tears everything down.
    """
    settings: Settings
    session_maker: sessionmaker
    event_bus: EventBus
    device_client: DeviceClient
    meter_client: Optional[MeterClient]
    tracker: DeviceStateTracker
    energy: EnergyAdmissionController
    scheduler: FleetScheduler
    queue: QueueService
    jobs: JobService
    devices: DeviceService
    engine: AsyncEngine

    @classmethod
    def build(
        cls,
        settings: Settings,
        db_engine: Optional[AsyncEngine] = None,
        session_maker: Optional[sessionmaker] = None,
        device_client: Optional[DeviceClient] = None,
        meter_client: Optional[MeterClient] = None,
        power_model: Optional[PowerModel] = None,
    ) -> "FleetContext":
        if db_engine is None:
            db_engine = build_engine(settings.ASYNC_DATABASE_URL, echo=settings.DATABASE_ECHO)
        if session_maker is None:
            session_maker = build_session_maker(db_engine)

        event_bus = EventBus()
        if settings.REDIS_URL:
            event_bus.add_sink(RedisEventSink(settings.REDIS_URL, settings.EVENT_CHANNEL))
            logger.info(f"Redis event sink enabled on channel {settings.EVENT_CHANNEL}.")
        if settings.MQTT_BROKER_HOST:
            event_bus.add_sink(MqttEventSink(settings.MQTT_BROKER_HOST, settings.MQTT_BROKER_PORT))
            logger.info(f"MQTT event sink enabled on {settings.MQTT_BROKER_HOST}:{settings.MQTT_BROKER_PORT}.")

        device_client = device_client or DeviceClient(timeout=settings.DEVICE_QUERY_TIMEOUT_SEC)
        if meter_client is None and settings.ENERGY_METER_URL:
            meter_client = MeterClient(settings.ENERGY_METER_URL, timeout=settings.ENERGY_METER_TIMEOUT_SEC)

        tracker = DeviceStateTracker(
            session_maker,
            event_bus,
            device_client,
            power_model=power_model,
            poll_interval=settings.TELEMETRY_POLL_INTERVAL_SEC,
            query_timeout=settings.DEVICE_QUERY_TIMEOUT_SEC,
            history_cap=settings.TELEMETRY_HISTORY_CAP,
            stale_idle_readings=settings.STALE_IDLE_READINGS,
        )
        energy = EnergyAdmissionController(
            session_maker,
            event_bus,
            meter_client=meter_client,
            sample_interval=settings.ENERGY_SAMPLE_INTERVAL_SEC,
            history_cap=settings.ENERGY_HISTORY_CAP,
            threshold_ratio=settings.PEAK_THRESHOLD_RATIO,
        )
        scheduler = FleetScheduler(
            session_maker,
            event_bus,
            energy,
            device_client=device_client,
            interval=settings.SCHEDULER_INTERVAL_SEC,
        )

        return cls(
            settings=settings,
            session_maker=session_maker,
            event_bus=event_bus,
            device_client=device_client,
            meter_client=meter_client,
            tracker=tracker,
            energy=energy,
            scheduler=scheduler,
            queue=QueueService(scheduler, energy, event_bus),
            jobs=JobService(event_bus, device_client),
            devices=DeviceService(event_bus),
            engine=db_engine,
        )

    async def create_schema(self) -> None:
        """Creates missing tables. Production deployments use migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def run(self, start_loops: bool = True) -> ReconciliationReport:
        report = await self.scheduler.reconcile()
        if start_loops:
            self.tracker.start()
            self.energy.start()
            self.scheduler.start()
        return report

    async def shutdown(self) -> None:
        logger.info("Shutting down fleet core...")
        await self.scheduler.stop()
        await self.energy.stop()
        await self.tracker.stop()
        await self.device_client.close()
        if self.meter_client:
            await self.meter_client.close()
        await self.event_bus.close()
