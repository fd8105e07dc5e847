"""Rebalance Orchestrator — drives one cycle from current to target allocation.

Cycle: pull idle vault funds -> deployable total -> optimize -> withdraw
phase -> deposit phase -> (report). Withdrawals run first so deposits are
funded from freed capital only. All strategy operations are sequential and
in registration order: they share one agent wallet and its nonce.

Failure policy:
- idle pull failure: logged, cycle continues
- optimizer query failure: aborts this cycle
- deposit/withdraw failure: logged per strategy, cycle continues
- report failure: zero report
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Awaitable, Callable

import structlog

from src.shell.config import RebalanceConfig, TimeoutConfig
from src.shell.contract import (
    AgentWalletBase,
    AllocationPlan,
    CycleInProgressError,
    CycleResult,
    CycleState,
    IdlePullError,
    OperationKind,
    OperationRecord,
    ReportResult,
    StrategyBase,
    VaultLedgerBase,
)
from src.shell.journal import CycleJournal
from src.shell.units import floor_to_decimals
from src.vault.optimizer import optimize
from src.vault.reconciler import VaultReconciler
from src.vault.snapshot import take_snapshot

log = structlog.get_logger()


class RebalanceOrchestrator:
    """Owns the strategy registry and the single-cycle lock."""

    def __init__(
        self,
        ledger: VaultLedgerBase,
        wallet: AgentWalletBase,
        rebalance: RebalanceConfig | None = None,
        timeouts: TimeoutConfig | None = None,
        token_decimals: int = 6,
        journal: CycleJournal | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._wallet = wallet
        self._config = rebalance or RebalanceConfig()
        self._timeouts = timeouts or TimeoutConfig()
        self._decimals = token_decimals
        self._journal = journal
        self._sleep = sleep
        self._strategies: list[StrategyBase] = []
        self._lock = asyncio.Lock()
        self._state = CycleState.IDLE
        self._reconciler = VaultReconciler(
            self._strategies, ledger, wallet,
            query_timeout=self._timeouts.query_seconds,
            ledger_timeout=self._timeouts.ledger_seconds,
        )

    # --- Registry ---

    def add_strategy(self, strategy: StrategyBase) -> None:
        if any(s.name == strategy.name for s in self._strategies):
            raise ValueError(f"Strategy already registered: {strategy.name}")
        self._strategies.append(strategy)
        log.info("rebalance.strategy_added", strategy=strategy.name, position=len(self._strategies))

    @property
    def strategies(self) -> tuple[StrategyBase, ...]:
        return tuple(self._strategies)

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # --- Entry points ---

    async def run_if_idle(self) -> bool:
        """Run one cycle unless one is already in flight. Returns False if skipped.

        Errors escaping the cycle are logged here; the lock is always released.
        """
        if self._lock.locked():
            log.warning("rebalance.tick_skipped", reason="cycle already running",
                        state=self._state.value)
            return False
        async with self._lock:
            try:
                await self._run_cycle_locked()
            except Exception as e:
                log.error("rebalance.cycle_aborted", error=str(e), type=type(e).__name__)
        return True

    async def run_cycle(self) -> CycleResult:
        """Run one cycle now. Raises CycleInProgressError if one is in flight."""
        if self._lock.locked():
            raise CycleInProgressError(f"cycle already running (state {self._state.value})")
        async with self._lock:
            return await self._run_cycle_locked()

    async def _run_cycle_locked(self) -> CycleResult:
        cycle_id = uuid.uuid4().hex[:12]
        with structlog.contextvars.bound_contextvars(cycle_id=cycle_id):
            log.info("rebalance.cycle_started", strategies=len(self._strategies))
            if self._journal:
                await self._journal.cycle_started(cycle_id)
            try:
                result = await self._run(cycle_id)
            except Exception as e:
                if self._journal:
                    await self._journal.cycle_failed(cycle_id, f"{type(e).__name__}: {e}")
                raise
            finally:
                self._state = CycleState.IDLE

            if self._journal:
                await self._journal.cycle_finished(result)
            log.info("rebalance.cycle_completed", skipped=result.skipped,
                     operations=len(result.operations),
                     failed=len(result.failed_operations))
            return result

    async def report(self, cycle_id: str | None = None) -> ReportResult:
        result = await self._reconciler.report()
        if self._journal:
            await self._journal.report(cycle_id, result)
        return result

    # --- Cycle steps ---

    async def _run(self, cycle_id: str) -> CycleResult:
        result = CycleResult(cycle_id=cycle_id)

        self._state = CycleState.PULLING_IDLE
        result.idle_pull_error = await self._pull_idle()

        deployable = await self._deployable_total()
        result.deployable_total = deployable
        if deployable < self._config.dust_threshold:
            log.info("rebalance.nothing_to_deploy", deployable=deployable,
                     threshold=self._config.dust_threshold)
            result.skipped = True
            return result

        self._state = CycleState.OPTIMIZING
        plan = await optimize(self._strategies, deployable, self._timeouts.query_seconds)
        result.plan = plan
        log.info("rebalance.plan", apy=round(plan.apy, 4), deployable=deployable,
                 entries=plan.summary())

        self._state = CycleState.WITHDRAWING
        await self._withdraw_phase(plan, result)

        self._state = CycleState.DEPOSITING
        await self._deposit_phase(plan, result)

        if self._config.report_after_cycle:
            self._state = CycleState.REPORTING
            result.report = await self.report(cycle_id)

        return result

    async def _pull_idle(self) -> str:
        """Move idle vault funds into agent custody. Returns an error string on failure."""
        try:
            idle = await asyncio.wait_for(self._ledger.total_idle(), self._timeouts.ledger_seconds)
            if idle < self._config.dust_threshold:
                return ""
            tx = await asyncio.wait_for(
                self._ledger.agent_withdraw(idle), self._timeouts.ledger_seconds,
            )
        except Exception as e:
            err = IdlePullError(f"{type(e).__name__}: {e}")
            log.error("rebalance.idle_pull_failed", error=str(err))
            return str(err)
        log.info("rebalance.idle_pulled", amount=idle, tx=tx.tx_hash)
        return ""

    async def _deployable_total(self) -> float:
        if self._config.deployable_source == "balances":
            snapshot = await take_snapshot(
                self._strategies, self._wallet, strict=True,
                timeout=self._timeouts.query_seconds,
            )
            return snapshot.total - self._config.idle_buffer
        return await asyncio.wait_for(self._ledger.total_debt(), self._timeouts.ledger_seconds)

    async def _read_cash(self) -> float:
        return await asyncio.wait_for(
            self._wallet.get_cash_balance(), self._timeouts.query_seconds,
        )

    async def _withdraw_phase(self, plan: AllocationPlan, result: CycleResult) -> None:
        for entry in plan.entries:
            if entry.current_liquidity > entry.target_liquidity:
                excess = entry.current_liquidity - entry.available_liquidity - entry.minimum_liquidity
                await self._operate(entry.strategy, OperationKind.WITHDRAW, excess, result)

    async def _deposit_phase(self, plan: AllocationPlan, result: CycleResult) -> None:
        remaining = await self._read_cash()
        for entry in plan.entries:
            if entry.current_liquidity < entry.target_liquidity:
                deficit = entry.available_liquidity + entry.minimum_liquidity - entry.current_liquidity
                amount = min(deficit, remaining)
                if await self._operate(entry.strategy, OperationKind.DEPOSIT, amount, result):
                    remaining = await self._read_cash()

    async def _operate(
        self,
        strategy: StrategyBase,
        kind: OperationKind,
        amount: float,
        result: CycleResult,
    ) -> bool:
        """Issue one isolated deposit/withdraw followed by the settle delay.

        Returns False when nothing was issued: the amount floors to zero or
        the strategy declined it as below its minimum operation.
        """
        amount = floor_to_decimals(amount, self._decimals)
        if amount <= 0:
            return False

        call = strategy.withdraw(amount) if kind == OperationKind.WITHDRAW else strategy.deposit(amount)
        op = OperationRecord(strategy=strategy.name, kind=kind, amount=amount, success=True)
        try:
            issued = await asyncio.wait_for(call, self._timeouts.operation_seconds)
        except asyncio.TimeoutError:
            op.success = False
            op.error = f"timed out after {self._timeouts.operation_seconds}s"
        except Exception as e:
            op.success = False
            op.error = f"{type(e).__name__}: {e}"
        else:
            if issued is False:
                log.info("rebalance.operation_not_issued", strategy=strategy.name,
                         kind=kind.value, amount=amount)
                return False

        if op.success:
            log.info("rebalance.operation", strategy=strategy.name, kind=kind.value, amount=amount)
        else:
            log.error("rebalance.operation_failed", strategy=strategy.name,
                      kind=kind.value, amount=amount, error=op.error)
        result.operations.append(op)
        if self._journal:
            await self._journal.operation(result.cycle_id, op)

        await self._sleep(self._config.settle_delay_seconds)
        return True
