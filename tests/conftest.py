from datetime import datetime
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlmodel import SQLModel

from printfarm.core.config import Settings
from printfarm.core.context import FleetContext
from printfarm.core.database import build_engine
from printfarm.models import Device, DeviceStatusEnum, Job, JobPriorityEnum, QueueEntry
from printfarm.models.core import PRIORITY_RANK
from printfarm.models.energy import EnergyReading, EnergySourceEnum
from printfarm.services.device.client import DeviceClient

# In-memory SQLite shared by every session of one test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class EventRecorder:
    """EventBus subscriber that keeps every event for assertions."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of(self, topic, event_type: Optional[str] = None):
        return [
            e for e in self.events
            if e.topic == topic and (event_type is None or e.payload.get("type") == event_type)
        ]


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        ENABLE_BACKGROUND_LOOPS=False,
        REDIS_URL=None,
        MQTT_BROKER_HOST=None,
        ENERGY_METER_URL=None,
        STALE_IDLE_READINGS=3,
    )


@pytest_asyncio.fixture
async def engine(test_settings):
    engine = build_engine(test_settings.ASYNC_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def device_client():
    client = MagicMock(spec=DeviceClient)
    client.query_status = AsyncMock()
    client.start_print = AsyncMock()
    client.pause_print = AsyncMock()
    client.resume_print = AsyncMock()
    client.cancel_print = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest_asyncio.fixture
async def fleet(test_settings, engine, device_client):
    fleet = FleetContext.build(test_settings, db_engine=engine, device_client=device_client)
    yield fleet
    await fleet.shutdown()


@pytest.fixture
def recorder(fleet):
    recorder = EventRecorder()
    fleet.event_bus.subscribe(recorder)
    return recorder


@pytest_asyncio.fixture
async def session(fleet):
    async with fleet.session_maker() as session:
        yield session


@pytest.fixture
def make_device(fleet):
    """Inserts a device with an already-known current status."""
    async def _make(name: str, status: DeviceStatusEnum = DeviceStatusEnum.IDLE, **fields) -> Device:
        async with fleet.session_maker() as session:
            device = Device(name=name, ip_address=f"10.0.0.{abs(hash(name)) % 250 + 2}", current_status=status, **fields)
            session.add(device)
            await session.commit()
            await session.refresh(device)
            return device
    return _make


@pytest.fixture
def make_entry(fleet):
    """Inserts a queued job and its queue entry, optionally at a fixed creation time."""
    async def _make(
        name: str,
        priority: JobPriorityEnum = JobPriorityEnum.MEDIUM,
        created_at: Optional[datetime] = None,
    ) -> QueueEntry:
        async with fleet.session_maker() as session:
            job = Job(job_code=f"JOB-{name.upper()}", name=name, file_name=f"{name}.gcode", priority=priority)
            session.add(job)
            await session.flush()
            entry = QueueEntry(job_id=job.id, priority=PRIORITY_RANK[priority])
            if created_at is not None:
                entry.created_at = created_at
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry
    return _make


@pytest.fixture
def record_load(fleet):
    """Stores an energy sample as if the controller had just measured it."""
    async def _record(current_kw: float, max_kw: float = 6.0) -> EnergyReading:
        async with fleet.session_maker() as session:
            reading = EnergyReading(
                current_kw=current_kw,
                max_kw=max_kw,
                active_device_count=0,
                source=EnergySourceEnum.CALCULATED,
            )
            session.add(reading)
            await session.commit()
            await session.refresh(reading)
            return reading
    return _record


@pytest.fixture
def klipper_status():
    """Builds a Moonraker `objects/query` status block."""
    def _status(state: str = "standby", extruder: float = 25.0, bed: float = 22.0, progress: float = 0.0, fan: float = 0.0) -> dict:
        return {
            "extruder": {"temperature": extruder, "target": 0.0},
            "heater_bed": {"temperature": bed, "target": 0.0},
            "print_stats": {"state": state, "progress": progress},
            "fan": {"speed": fan},
        }
    return _status
