import time
from enum import Enum
from typing import Any, Dict
from pydantic import BaseModel, Field


class EventTopic(str, Enum):
    DEVICE_TELEMETRY = "device.telemetry"
    DEVICE_ANOMALY = "device.anomaly"
    QUEUE_UPDATED = "queue.updated"
    ENERGY_READING = "energy.reading"
    POWER_EVENT = "power.event"


class FleetEvent(BaseModel):
    """
    Advisory notification fanned out to subscribers. Delivery is
    at-most-once; the database stays the source of truth.
    """
    topic: EventTopic
    payload: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: float = Field(default_factory=time.time)
