"""Yield data sources — where reward-curve strategies read APY and TVL."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

log = structlog.get_logger()

# The chart's most recent points are still being revised; read this far back.
SAMPLE_OFFSET = 10


class YieldDataError(RuntimeError):
    pass


@dataclass(frozen=True)
class YieldPoint:
    apy: float
    tvl: float


class YieldSourceBase:
    async def fetch(self) -> YieldPoint:
        raise NotImplementedError


class StaticYieldSource(YieldSourceBase):
    """Fixed APY/TVL for venues without a public feed."""

    def __init__(self, apy: float, tvl: float) -> None:
        self._point = YieldPoint(apy=apy, tvl=tvl)

    async def fetch(self) -> YieldPoint:
        return self._point


class DefiLlamaClient:
    """DefiLlama yields API client."""

    def __init__(self, base_url: str = "https://yields.llama.fi", timeout: float = 30.0,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_pool_point(self, pool_id: str) -> YieldPoint:
        url = f"{self._base_url}/chart/{pool_id}"
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
            rows = resp.json()["data"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise YieldDataError(f"Error fetching yield data for {pool_id}: {e}") from e

        if not rows:
            raise YieldDataError(f"No yield data for {pool_id}")
        row = rows[max(0, len(rows) - SAMPLE_OFFSET)]
        try:
            return YieldPoint(apy=float(row["apy"]), tvl=float(row["tvlUsd"]))
        except (KeyError, TypeError, ValueError) as e:
            raise YieldDataError(f"Malformed yield point for {pool_id}: {row}") from e


class DefiLlamaYieldSource(YieldSourceBase):
    def __init__(self, client: DefiLlamaClient, pool_id: str) -> None:
        self._client = client
        self._pool_id = pool_id

    async def fetch(self) -> YieldPoint:
        point = await self._client.get_pool_point(self._pool_id)
        log.debug("yield_data.fetched", pool=self._pool_id, apy=point.apy, tvl=point.tvl)
        return point
