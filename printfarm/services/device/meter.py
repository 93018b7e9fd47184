import logging
from typing import Optional

import httpx

from printfarm.core.exceptions import MeterUnavailable

logger = logging.getLogger("MeterClient")


class MeterClient:
    """Reads aggregate load (kW) from an external HTTP power meter."""

    def __init__(self, url: str, timeout: float = 2.0, http_client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def read_kw(self) -> float:
        try:
            response = await self._client.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
            value = body.get("kw", body.get("currentKw"))
            if value is None:
                raise MeterUnavailable("Meter response carries no 'kw' value")
            return float(value)
        except MeterUnavailable:
            raise
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            raise MeterUnavailable(f"{type(e).__name__}: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
