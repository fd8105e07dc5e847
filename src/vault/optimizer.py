"""Allocation optimizer — binary search for the best blended APY.

Given the deployable total and the registered strategies, find the highest
APY at which the strategies' capacity curves can absorb the whole budget
above their minimums, and the per-strategy allocation at that APY.

The budget walk is greedy in registration order: earlier strategies take
their full capacity before later ones get anything. Changing the order
changes the plan.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Sequence, TypeVar

import structlog

from src.shell.contract import AllocationEntry, AllocationPlan, OptimizerQueryError, StrategyBase

log = structlog.get_logger()

APY_FLOOR = 0.0
APY_CEILING = 100.0
SEARCH_TOLERANCE = 0.001
# Float slack when comparing the summed walk against the budget
BUDGET_EPSILON = 1e-9

T = TypeVar("T")


async def _query(strategy: StrategyBase, what: str, call: Awaitable[T], timeout: float | None) -> T:
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as e:
        raise OptimizerQueryError(f"{strategy.name}: {what} timed out after {timeout}s") from e
    except OptimizerQueryError:
        raise
    except Exception as e:
        raise OptimizerQueryError(f"{strategy.name}: {what} failed: {e}") from e


async def _walk_budget(
    strategies: Sequence[StrategyBase],
    budget: float,
    apy: float,
    timeout: float | None,
) -> tuple[list[float], bool]:
    """One greedy pass at a candidate APY. Returns (allocations, feasible)."""
    remaining = budget
    allocations: list[float] = []
    exhausted = False

    for strategy in strategies:
        quote = await _query(
            strategy, "get_liquidity_available_at_apy",
            strategy.get_liquidity_available_at_apy(apy), timeout,
        )
        available = quote.available_liquidity
        if remaining > available:
            allocations.append(available)
            remaining -= available
        else:
            allocations.append(max(0.0, min(remaining, available)))
            remaining = 0.0
            exhausted = True
            break

    allocations.extend([0.0] * (len(strategies) - len(allocations)))
    feasible = (
        budget > 0
        and exhausted
        and remaining <= 0
        and sum(allocations) >= budget - BUDGET_EPSILON * max(1.0, budget)
    )
    return allocations, feasible


async def optimize(
    strategies: Sequence[StrategyBase],
    total_asset: float,
    query_timeout: float | None = None,
) -> AllocationPlan:
    """Compute the allocation plan for `total_asset` across `strategies`.

    Raises OptimizerQueryError if any strategy query fails or times out;
    no partial plan is ever returned.
    """
    if total_asset < 0:
        raise ValueError(f"total_asset must be >= 0, got {total_asset}")
    if not strategies:
        log.info("optimizer.no_strategies")
        return AllocationPlan(apy=APY_FLOOR, minimum_liquidity=0.0, entries=())

    minimums = []
    for strategy in strategies:
        minimums.append(await _query(
            strategy, "get_minimum_liquidity", strategy.get_minimum_liquidity(), query_timeout,
        ))
    minimum_total = sum(minimums)
    budget = total_asset - minimum_total

    lo, hi = APY_FLOOR, APY_CEILING
    best = [0.0] * len(strategies)
    passes = 0
    while lo < hi - SEARCH_TOLERANCE:
        mid = (lo + hi) / 2
        allocations, feasible = await _walk_budget(strategies, budget, mid, query_timeout)
        passes += 1
        if feasible:
            lo = mid
            best = allocations
        else:
            hi = mid

    entries = []
    for strategy, minimum, available in zip(strategies, minimums, best):
        balance = await _query(strategy, "get_balance", strategy.get_balance(), query_timeout)
        entries.append(AllocationEntry(
            strategy=strategy,
            available_liquidity=available,
            current_liquidity=balance,
            minimum_liquidity=minimum,
        ))

    plan = AllocationPlan(apy=lo, minimum_liquidity=minimum_total, entries=tuple(entries))
    log.info("optimizer.converged", apy=round(lo, 4), total_asset=total_asset,
             minimum_liquidity=minimum_total, passes=passes)
    return plan
