from typing import Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict

from .core import DeviceStatusEnum


class DeviceRead(BaseModel):
    id: int
    name: str
    ip_address: str
    port: int
    model: str
    firmware: str
    max_temp_extruder: float
    max_temp_bed: float
    power_rating_kw: float
    is_active: bool
    maintenance_mode: bool
    current_status: DeviceStatusEnum
    current_power_kw: float
    last_seen_at: Optional[datetime] = None
    current_job_id: Optional[int] = None
    current_job_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class DeviceCreate(BaseModel):
    name: str
    ip_address: str
    port: int = 80
    model: str = "Generic"
    firmware: str = "unknown"
    max_temp_extruder: float = 260.0
    max_temp_bed: float = 110.0
    power_rating_kw: float = 0.4


class MaintenanceToggle(BaseModel):
    enabled: bool
