"""Balance snapshot — real per-strategy balances plus the agent's idle cash."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Sequence

import structlog

from src.shell.contract import AgentWalletBase, OptimizerQueryError, StrategyBase

log = structlog.get_logger()


@dataclass(frozen=True)
class BalanceSnapshot:
    balances: dict[str, float]
    idle_cash: float
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> float:
        return sum(self.balances.values()) + self.idle_cash

    @property
    def complete(self) -> bool:
        return not self.failed


async def take_snapshot(
    strategies: Sequence[StrategyBase],
    wallet: AgentWalletBase,
    strict: bool = True,
    timeout: float | None = None,
) -> BalanceSnapshot:
    """Read every strategy balance concurrently, then the agent cash.

    strict=True raises OptimizerQueryError on the first failed read.
    strict=False records failed strategies and leaves them out of the totals.
    The cash read always propagates its failure.
    """
    results = await asyncio.gather(
        *(asyncio.wait_for(s.get_balance(), timeout) for s in strategies),
        return_exceptions=True,
    )

    balances: dict[str, float] = {}
    failed: list[str] = []
    for strategy, result in zip(strategies, results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if strict:
                raise OptimizerQueryError(
                    f"{strategy.name}: get_balance failed: {result!r}"
                ) from result
            log.warning("snapshot.balance_failed", strategy=strategy.name, error=repr(result))
            failed.append(strategy.name)
            continue
        balances[strategy.name] = result

    try:
        idle_cash = await asyncio.wait_for(wallet.get_cash_balance(), timeout)
    except asyncio.TimeoutError as e:
        raise OptimizerQueryError(f"agent cash balance timed out after {timeout}s") from e
    except Exception as e:
        raise OptimizerQueryError(f"agent cash balance failed: {e}") from e

    snapshot = BalanceSnapshot(balances=balances, idle_cash=idle_cash, failed=failed)
    log.debug("snapshot.taken", balances=balances, idle_cash=idle_cash, failed=failed)
    return snapshot
