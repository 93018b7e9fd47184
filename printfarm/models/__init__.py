from .core import (
    Device,
    DeviceReading,
    DeviceEvent,
    Job,
    QueueEntry,
    DeviceStatusEnum,
    JobStatusEnum,
    JobPriorityEnum,
    QueueEntryStatusEnum,
    PRIORITY_RANK,
)
from .energy import EnergySettings, EnergyReading, PowerEvent, EnergySourceEnum, PowerEventTypeEnum

__all__ = [
    "Device",
    "DeviceReading",
    "DeviceEvent",
    "Job",
    "QueueEntry",
    "DeviceStatusEnum",
    "JobStatusEnum",
    "JobPriorityEnum",
    "QueueEntryStatusEnum",
    "PRIORITY_RANK",
    "EnergySettings",
    "EnergyReading",
    "PowerEvent",
    "EnergySourceEnum",
    "PowerEventTypeEnum",
]
