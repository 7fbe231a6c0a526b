"""Workload controller HTTP client for suspending and resuming a team's workloads"""

import httpx
from bison_billing.domain.exceptions import ActionError
from bison_billing.config import settings


class WorkloadClient:
    """Client for the workload controller; both calls are idempotent on the server side"""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.workload_api_base
        self.timeout = timeout or settings.workload_timeout_seconds

    async def suspend(self, entity_id: str) -> None:
        """Scale all of the team's workloads to zero"""
        await self._call(entity_id, "suspend")

    async def resume(self, entity_id: str) -> None:
        """Restore the team's workloads to their recorded replica counts"""
        await self._call(entity_id, "resume")

    async def _call(self, entity_id: str, action: str) -> None:
        """
        Raises:
            ActionError: On timeout, HTTP errors, or network failures
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(f"{self.base_url}/v1/teams/{entity_id}/{action}")
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise ActionError(f"Workload {action} timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise ActionError(f"Workload {action} error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ActionError(f"Workload controller unreachable: {e}") from e
