from typing import Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict

from .core import JobPriorityEnum, JobStatusEnum, QueueEntryStatusEnum


class JobCreate(BaseModel):
    name: str
    material: str = "PLA"
    file_name: Optional[str] = None
    weight_grams: float = 0.0
    estimated_duration_min: int = 0
    priority: JobPriorityEnum = JobPriorityEnum.MEDIUM


class JobRead(BaseModel):
    id: int
    job_code: str
    name: str
    material: str
    file_name: Optional[str] = None
    status: JobStatusEnum
    priority: JobPriorityEnum
    weight_grams: float
    estimated_duration_min: int
    assigned_device_id: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    needs_reconciliation: bool
    reconciliation_note: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QueueEntryRead(BaseModel):
    id: int
    job_id: int
    device_id: Optional[int] = None
    priority: int
    status: QueueEntryStatusEnum
    start_at: Optional[datetime] = None
    created_at: datetime
    job: Optional[JobRead] = None

    model_config = ConfigDict(from_attributes=True)


class AssignRequest(BaseModel):
    device_id: int


class PriorityUpdate(BaseModel):
    priority: JobPriorityEnum


class JobStatusUpdate(BaseModel):
    status: JobStatusEnum
