from typing import Optional, List
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field, Relationship

from printfarm.utils.timeutils import utc_now


class DeviceStatusEnum(str, Enum):
    OFFLINE = "offline"
    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    ERROR = "error"
    MAINTENANCE = "maintenance"


class JobStatusEnum(str, Enum):
    QUEUED = "queued"
    PRINTING = "printing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = (JobStatusEnum.COMPLETED, JobStatusEnum.FAILED, JobStatusEnum.CANCELLED)

# A device is occupied while one of its jobs is in one of these states
OCCUPYING_JOB_STATUSES = (JobStatusEnum.PRINTING, JobStatusEnum.PAUSED)


class JobPriorityEnum(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Queue rank per priority; lower is served first
PRIORITY_RANK = {
    JobPriorityEnum.HIGH: 1,
    JobPriorityEnum.MEDIUM: 5,
    JobPriorityEnum.LOW: 10,
}


class QueueEntryStatusEnum(str, Enum):
    QUEUED = "queued"
    ASSIGNED = "assigned"
    DONE = "done"
    REMOVED = "removed"


ACTIVE_QUEUE_STATUSES = (QueueEntryStatusEnum.QUEUED, QueueEntryStatusEnum.ASSIGNED)


def _timestamp_column(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class Device(SQLModel, table=True):
    __tablename__ = "devices"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    ip_address: str
    port: int = Field(default=80)
    model: str = Field(default="Generic")
    firmware: str = Field(default="unknown")

    max_temp_extruder: float = Field(default=260.0)
    max_temp_bed: float = Field(default=110.0)
    power_rating_kw: float = Field(default=0.4)

    is_active: bool = Field(default=True, index=True)
    maintenance_mode: bool = Field(default=False)

    # Mirrors the newest DeviceReading; written in the same transaction
    current_status: DeviceStatusEnum = Field(default=DeviceStatusEnum.OFFLINE, index=True)
    current_power_kw: float = Field(default=0.0)
    last_seen_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column(nullable=True))

    created_at: datetime = Field(default_factory=utc_now, sa_column=_timestamp_column())


class DeviceReading(SQLModel, table=True):
    """Immutable telemetry snapshot. Written only by the device tracker."""
    __tablename__ = "device_readings"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: int = Field(foreign_key="devices.id", index=True)
    temperature_extruder: float = Field(default=0.0)
    temperature_bed: float = Field(default=0.0)
    progress: float = Field(default=0.0)  # Percentage 0-100
    status: DeviceStatusEnum = Field(default=DeviceStatusEnum.OFFLINE)
    fan_speed: int = Field(default=0)  # RPM
    power_draw_estimate: float = Field(default=0.0)  # kW

    recorded_at: datetime = Field(default_factory=utc_now, sa_column=_timestamp_column())


class DeviceEvent(SQLModel, table=True):
    __tablename__ = "device_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: int = Field(foreign_key="devices.id", index=True)
    level: str  # INFO, WARN, CRITICAL
    code: Optional[str] = None
    message: str
    value: Optional[float] = None

    created_at: datetime = Field(default_factory=utc_now, sa_column=_timestamp_column())


class Job(SQLModel, table=True):
    """A discrete unit of work. Lifecycle is independent of queue placement."""
    __tablename__ = "jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_code: str = Field(index=True)
    name: str
    material: str = Field(default="PLA")
    file_name: Optional[str] = None
    status: JobStatusEnum = Field(default=JobStatusEnum.QUEUED, index=True)
    priority: JobPriorityEnum = Field(default=JobPriorityEnum.MEDIUM)
    weight_grams: float = Field(default=0.0)
    estimated_duration_min: int = Field(default=0)

    assigned_device_id: Optional[int] = Field(default=None, foreign_key="devices.id", index=True)
    started_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column(nullable=True))
    completed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column(nullable=True))

    # Set when telemetry or restart reconciliation contradicts the stored state.
    # Cleared only by an operator.
    needs_reconciliation: bool = Field(default=False)
    reconciliation_note: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now, sa_column=_timestamp_column())

    queue_entries: List["QueueEntry"] = Relationship(back_populates="job")


class QueueEntry(SQLModel, table=True):
    __tablename__ = "queue_entries"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="jobs.id", index=True)
    device_id: Optional[int] = Field(default=None, foreign_key="devices.id")
    priority: int = Field(default=5, index=True)
    status: QueueEntryStatusEnum = Field(default=QueueEntryStatusEnum.QUEUED, index=True)

    # When the device start signal takes effect (stagger)
    start_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column(nullable=True))
    created_at: datetime = Field(default_factory=utc_now, sa_column=_timestamp_column())

    job: Optional[Job] = Relationship(back_populates="queue_entries")
