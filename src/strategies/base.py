"""Reward-curve strategy base.

Venues here are modelled by a constant reward pool: the yield paid out
(tvl * apy) stays fixed while liquidity is added, so the venue can absorb
`tvl * apy / target - tvl` before its yield compresses to `target`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from src.shell.contract import LiquidityQuote, StrategyBase, StrategyOperationError
from src.shell.units import floor_to_two_decimals
from src.strategies.yield_data import YieldPoint, YieldSourceBase

log = structlog.get_logger()

DEFAULT_CACHE_SECONDS = 300.0


@dataclass(frozen=True)
class CachedValue:
    value: YieldPoint
    expires_at: float


async def get_or_refresh(
    cached: CachedValue | None,
    fetch: Callable[[], Awaitable[YieldPoint]],
    ttl: float,
    now: float,
) -> CachedValue:
    """Return `cached` while it is fresh, otherwise a new value from `fetch`."""
    if cached is not None and now < cached.expires_at:
        return cached
    return CachedValue(value=await fetch(), expires_at=now + ttl)


class RewardCurveStrategy(StrategyBase):
    """Strategy whose capacity curve follows the constant-reward model.

    Subclasses implement _deposit() and _withdraw(); this class handles
    minimum-amount skipping and error wrapping.
    """

    def __init__(
        self,
        name: str,
        yield_source: YieldSourceBase,
        min_debt: float = 0.0,
        max_debt: float = 1_000_000.0,
        min_operation_amount: float = 1.0,
        cache_seconds: float = DEFAULT_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._source = yield_source
        self._min_debt = min_debt
        self._max_debt = max_debt
        self._min_operation = min_operation_amount
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._cache: CachedValue | None = None

    async def _yield_point(self) -> YieldPoint:
        self._cache = await get_or_refresh(
            self._cache, self._source.fetch, self._cache_seconds, self._clock(),
        )
        return self._cache.value

    async def get_apy(self) -> float:
        return (await self._yield_point()).apy

    async def get_tvl(self) -> float:
        return (await self._yield_point()).tvl

    async def get_liquidity_available_at_apy(self, target_apy: float) -> LiquidityQuote:
        if target_apy <= 0:
            raise ValueError("Target APY must be greater than 0")

        point = await self._yield_point()
        reward = point.tvl * point.apy
        required_tvl = reward / target_apy
        delta = required_tvl - point.tvl
        return LiquidityQuote(
            available_liquidity=floor_to_two_decimals(max(0.0, min(delta, self._max_debt))),
        )

    async def get_minimum_liquidity(self) -> float:
        return self._min_debt

    async def deposit(self, amount: float) -> bool:
        if amount < self._min_operation:
            log.info("strategy.deposit_skipped", strategy=self.name, amount=amount,
                     minimum=self._min_operation)
            return False
        try:
            await self._deposit(amount)
        except StrategyOperationError:
            raise
        except Exception as e:
            log.error("strategy.deposit_failed", strategy=self.name, amount=amount, error=str(e))
            raise StrategyOperationError(f"{self.name}: deposit failed: {e}") from e
        log.info("strategy.deposited", strategy=self.name, amount=amount)
        return True

    async def withdraw(self, amount: float) -> bool:
        if amount < self._min_operation:
            log.info("strategy.withdraw_skipped", strategy=self.name, amount=amount,
                     minimum=self._min_operation)
            return False
        try:
            await self._withdraw(amount)
        except StrategyOperationError:
            raise
        except Exception as e:
            log.error("strategy.withdraw_failed", strategy=self.name, amount=amount, error=str(e))
            raise StrategyOperationError(f"{self.name}: withdraw failed: {e}") from e
        log.info("strategy.withdrew", strategy=self.name, amount=amount)
        return True

    async def _deposit(self, amount: float) -> None:
        raise NotImplementedError

    async def _withdraw(self, amount: float) -> None:
        raise NotImplementedError
