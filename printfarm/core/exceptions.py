from typing import Any, Optional
from fastapi import HTTPException, status


class FleetException(HTTPException):
    """Base exception for fleet logic errors surfaced to callers."""
    def __init__(self, status_code: int, detail: Any):
        super().__init__(status_code=status_code, detail=detail)


class ResourceNotFoundError(FleetException):
    """Strict 404 for when a specific business entity is missing."""
    def __init__(self, resource_type: str, identifier: Any):
        self.resource_type = resource_type
        self.identifier = identifier
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource_type} with ID {identifier} not found."
        )


class DeviceBusyError(FleetException):
    """
    Raised when work is assigned to a device that is not idle, or that is
    still occupied by another job.
    """
    def __init__(self, device_id: int, current_status: str):
        self.device_id = device_id
        self.current_status = current_status
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Device {device_id} is currently {current_status}. Only idle devices accept work."
        )


class EnergyThresholdError(FleetException):
    """
    Raised when the admission gate blocks an assignment. Carries the
    reading that caused the block so the operator can act on it.
    """
    def __init__(self, current_kw: float, limit_kw: float, threshold_kw: float, reason: Optional[str] = None):
        self.current_kw = current_kw
        self.limit_kw = limit_kw
        self.threshold_kw = threshold_kw
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "PEAK PROTECTION ACTIVE: Energy load too high to start new job",
                "reason": reason,
                "currentKw": current_kw,
                "maxKw": limit_kw,
                "thresholdKw": threshold_kw,
            }
        )


class QueueConflictError(FleetException):
    """Raised when a queue entry is not in a state that allows the operation."""
    def __init__(self, queue_entry_id: int, current_status: str):
        self.queue_entry_id = queue_entry_id
        self.current_status = current_status
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Queue entry {queue_entry_id} is {current_status}; operation not allowed."
        )


class InvalidTransitionError(FleetException):
    def __init__(self, job_id: int, from_status: str, to_status: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} cannot move from {from_status} to {to_status}."
        )


class JobNotFlaggedError(FleetException):
    """Raised when an operator resolution targets a job that is not flagged."""
    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is not flagged for reconciliation."
        )


class InvalidSettingsError(FleetException):
    """Rejected configuration value. Never clamped silently."""
    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid value {value!r} for {field}: {reason}"
        )


class DeviceUnreachable(Exception):
    """
    Transport failure while querying a device (timeout, refused connection,
    malformed response). Internal only: the tracker turns it into an
    offline reading.
    """
    def __init__(self, device_id: int, message: str):
        self.device_id = device_id
        self.message = message
        super().__init__(f"Device {device_id} unreachable: {message}")


class MeterUnavailable(Exception):
    """External power meter could not be read."""
