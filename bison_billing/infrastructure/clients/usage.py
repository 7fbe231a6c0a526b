"""Usage source HTTP client for an OpenCost-compatible allocation API"""

import httpx
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict
from bison_billing.domain.models import UsageReport, Window
from bison_billing.domain.exceptions import TransientFetchError
from bison_billing.config import settings

# Allocation fields mapped to the resource kinds used in the pricing table
RESOURCE_FIELDS = {
    "cpu": "cpuCoreHours",
    "memory": "ramGBHours",
    "gpu": "gpuHours",
}


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _amount(raw) -> Decimal:
    amount = Decimal(str(raw))
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"invalid usage amount {raw!r}")
    return amount


class UsageClient:
    """Client for the usage source, aggregating allocations by the team label"""

    def __init__(self, base_url: str | None = None, timeout: float | None = None, team_label: str | None = None):
        self.base_url = base_url or settings.usage_api_base
        self.timeout = timeout or settings.usage_timeout_seconds
        self.team_label = team_label or settings.usage_team_label

    async def get_usage(self, entity_id: str, window_start: datetime, window_end: datetime) -> UsageReport:
        """
        Fetch accumulated resource-hours for one team over [window_start, window_end).

        Raises:
            TransientFetchError: On timeout, HTTP errors, or invalid response
        """
        params = {
            "window": f"{_rfc3339(window_start)},{_rfc3339(window_end)}",
            "aggregate": f"label:{self.team_label}",
            "accumulate": "true",
            "filter": f'label[{self.team_label}]:"{entity_id}"',
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.get(f"{self.base_url}/allocation/compute", params=params)
                response.raise_for_status()
                data = response.json()

                if data.get("code") != 200:
                    raise TransientFetchError(
                        f"Usage source returned code {data.get('code')}: {data.get('message', '')}"
                    )

                usage: Dict[str, Decimal] = {resource: Decimal("0") for resource in RESOURCE_FIELDS}
                total_cost = Decimal("0")
                for step in data.get("data") or []:
                    for allocation in step.values():
                        if allocation is None:
                            continue
                        for resource, field in RESOURCE_FIELDS.items():
                            usage[resource] += _amount(allocation.get(field, 0))
                        total_cost += _amount(allocation.get("totalCost", 0))

                return UsageReport(
                    entity_id=entity_id,
                    window=Window(start=window_start, end=window_end),
                    usage=usage,
                    total_cost=total_cost,
                )

            except httpx.TimeoutException as e:
                raise TransientFetchError(f"Usage source timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise TransientFetchError(f"Usage source error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise TransientFetchError(f"Usage source unreachable: {e}") from e
            except (AttributeError, KeyError, ValueError, TypeError, InvalidOperation) as e:
                raise TransientFetchError(f"Invalid usage data from usage source: {e}") from e
