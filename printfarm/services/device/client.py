import logging
import urllib.parse
from typing import Any, Dict, Optional

import httpx

from printfarm.core.exceptions import DeviceUnreachable
from printfarm.models.core import Device, Job

logger = logging.getLogger("DeviceClient")

STATUS_QUERY_PATH = "/printer/objects/query?extruder&heater_bed&print_stats&display_status&fan"


class DeviceClient:
    """
    HTTP access to Moonraker-compatible printers. Every call is bounded
    by the configured timeout.
    """

    def __init__(self, timeout: float = 3.0, http_client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def base_url(device: Device) -> str:
        return f"http://{device.ip_address}:{device.port}"

    async def query_status(self, device: Device) -> Dict[str, Any]:
        """Returns the `result.status` block or raises DeviceUnreachable."""
        url = f"{self.base_url(device)}{STATUS_QUERY_PATH}"
        try:
            response = await self._client.get(url, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise DeviceUnreachable(device.id, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise DeviceUnreachable(device.id, f"Malformed response: {e}") from e

        result = body.get("result") if isinstance(body, dict) else None
        status = result.get("status") if isinstance(result, dict) else None
        if not isinstance(status, dict):
            raise DeviceUnreachable(device.id, "Malformed response: missing result.status")
        return status

    async def start_print(self, device: Device, job: Job) -> None:
        """Signals the device to start the job's file."""
        filename = job.file_name or job.name
        url = f"{self.base_url(device)}/printer/print/start?filename={urllib.parse.quote(filename)}"
        try:
            response = await self._client.post(url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeviceUnreachable(device.id, f"Start signal failed: {e}") from e
        logger.info(f"Start signal sent to device {device.id} for job {job.id} ({filename}).")

    async def pause_print(self, device: Device) -> None:
        await self._print_command(device, "pause")

    async def resume_print(self, device: Device) -> None:
        await self._print_command(device, "resume")

    async def cancel_print(self, device: Device) -> None:
        await self._print_command(device, "cancel")

    async def _print_command(self, device: Device, action: str) -> None:
        url = f"{self.base_url(device)}/printer/print/{action}"
        try:
            response = await self._client.post(url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeviceUnreachable(device.id, f"{action.capitalize()} command failed: {e}") from e
        logger.info(f"{action.capitalize()} command sent to device {device.id}.")

    async def close(self) -> None:
        await self._client.aclose()
