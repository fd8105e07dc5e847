"""Vault reconciler — books profit/loss of the off-chain strategies.

Compares the debt the ledger credits to the agent against the real value
held (strategy balances + agent cash) and submits the difference. Never
raises: a failed report degrades to ReportResult(0, 0).
"""

from __future__ import annotations

import asyncio
from typing import Sequence

import structlog

from src.shell.contract import (
    AgentWalletBase,
    ReconciliationError,
    ReportResult,
    StrategyBase,
    VaultLedgerBase,
)
from src.vault.snapshot import take_snapshot

log = structlog.get_logger()


class VaultReconciler:
    def __init__(
        self,
        strategies: Sequence[StrategyBase],
        ledger: VaultLedgerBase,
        wallet: AgentWalletBase,
        query_timeout: float | None = None,
        ledger_timeout: float | None = None,
    ) -> None:
        self._strategies = strategies
        self._ledger = ledger
        self._wallet = wallet
        self._query_timeout = query_timeout
        self._ledger_timeout = ledger_timeout

    async def report(self) -> ReportResult:
        try:
            return await self._report()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = e if isinstance(e, ReconciliationError) else ReconciliationError(str(e))
            log.error("reconciler.report_failed", error=str(err), type=type(e).__name__)
            return ReportResult()

    async def _report(self) -> ReportResult:
        snapshot = await take_snapshot(
            self._strategies, self._wallet, strict=False, timeout=self._query_timeout,
        )
        if not snapshot.complete:
            # Missing balances would be booked as a loss.
            raise ReconciliationError(f"incomplete snapshot, failed: {snapshot.failed}")

        real_debt = snapshot.total
        recorded_debt = await asyncio.wait_for(self._ledger.total_debt(), self._ledger_timeout)

        profit = max(0.0, real_debt - recorded_debt)
        loss = max(0.0, recorded_debt - real_debt)
        result = ReportResult(profit=profit, loss=loss)

        tx = await asyncio.wait_for(self._ledger.update_debt(profit, loss), self._ledger_timeout)
        log.info("reconciler.reported", real_debt=round(real_debt, 6),
                 recorded_debt=round(recorded_debt, 6), profit=round(profit, 6),
                 loss=round(loss, 6), tx=tx.tx_hash)
        return result
