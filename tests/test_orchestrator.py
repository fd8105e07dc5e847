"""Rebalance orchestrator: cycle ordering, isolation, clamping, boundaries."""

import asyncio

import pytest

from src.shell.config import RebalanceConfig, TimeoutConfig
from src.shell.contract import (
    CycleInProgressError,
    CycleState,
    OperationKind,
    OptimizerQueryError,
    ReportResult,
)
from src.strategies.paper import PaperStrategy
from src.strategies.yield_data import StaticYieldSource
from src.vault.orchestrator import RebalanceOrchestrator
from src.vault.paper import PaperVaultLedger, PaperWallet
from tests.fakes import CurveStrategy, flat


def _setup(debt=0.0, idle=0.0, cash=0.0, timeouts=None, ledger_cls=PaperVaultLedger, **rebalance):
    wallet = PaperWallet(6, initial_cash=cash)
    ledger = ledger_cls(wallet, initial_idle=idle, initial_debt=debt)
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    rebalance.setdefault("settle_delay_seconds", 5)
    orch = RebalanceOrchestrator(
        ledger, wallet,
        rebalance=RebalanceConfig(**rebalance),
        timeouts=timeouts,
        sleep=fake_sleep,
    )
    return orch, ledger, wallet, sleeps


@pytest.mark.asyncio
async def test_cycle_deploys_pulled_idle_funds():
    orch, ledger, wallet, sleeps = _setup(idle=10)
    a = CurveStrategy("A", flat(3), minimum=1, wallet=wallet)
    b = CurveStrategy("B", flat(100), minimum=1, wallet=wallet)
    c = CurveStrategy("C", flat(3), minimum=1, wallet=wallet)
    for s in (a, b, c):
        orch.add_strategy(s)

    result = await orch.run_cycle()

    assert not result.skipped
    assert result.deployable_total == 10
    assert await ledger.total_idle() == 0
    assert (a.deposits, b.deposits, c.deposits) == ([4], [5], [1])
    assert (a.balance, b.balance, c.balance) == (4, 5, 1)
    assert await wallet.get_cash_balance() == 0
    assert sleeps == [5, 5, 5]
    assert all(op.success for op in result.operations)
    assert orch.state == CycleState.IDLE


@pytest.mark.asyncio
async def test_withdrawals_run_before_deposits_in_registration_order():
    events = []
    orch, _, wallet, sleeps = _setup(debt=10)
    a = CurveStrategy("A", flat(2), balance=6, wallet=wallet, events=events)
    b = CurveStrategy("B", flat(1), balance=4, wallet=wallet, events=events)
    c = CurveStrategy("C", flat(50), balance=0, wallet=wallet, events=events)
    for s in (a, b, c):
        orch.add_strategy(s)

    await orch.run_cycle()

    assert events == [
        ("withdraw", "A", 4),
        ("withdraw", "B", 3),
        ("deposit", "C", 7),
    ]
    assert sleeps == [5, 5, 5]


@pytest.mark.asyncio
async def test_failed_withdraw_is_isolated():
    orch, _, wallet, _ = _setup(debt=14)
    a = CurveStrategy("A", flat(3), minimum=1, balance=8, wallet=wallet)
    b = CurveStrategy("B", flat(2), minimum=1, balance=6, wallet=wallet)
    c = CurveStrategy("C", flat(10), minimum=1, balance=0, wallet=wallet)
    b.fail_on.add("withdraw")
    for s in (a, b, c):
        orch.add_strategy(s)

    result = await orch.run_cycle()

    assert a.withdrawals == [4]
    assert b.withdrawals == [3]
    # Only A's freed capital is available to C
    assert c.deposits == [4]
    assert [op.strategy for op in result.failed_operations] == ["B"]
    assert result.failed_operations[0].kind == OperationKind.WITHDRAW
    assert "withdraw reverted" in result.failed_operations[0].error
    assert b.balance == 6


@pytest.mark.asyncio
async def test_failed_deposit_does_not_stop_later_deposits():
    orch, _, wallet, _ = _setup(idle=10)
    a = CurveStrategy("A", flat(5), wallet=wallet)
    b = CurveStrategy("B", flat(50), wallet=wallet)
    a.fail_on.add("deposit")
    orch.add_strategy(a)
    orch.add_strategy(b)

    result = await orch.run_cycle()

    assert a.deposits == [5]
    assert b.deposits == [5]
    assert [op.strategy for op in result.failed_operations] == ["A"]


@pytest.mark.asyncio
async def test_remaining_cash_reread_after_each_deposit():
    orch, _, wallet, _ = _setup(debt=12, cash=10)
    a = CurveStrategy("A", flat(4), wallet=wallet)
    a.deposit_fill_ratio = 0.5
    b = CurveStrategy("B", flat(100), wallet=wallet)
    orch.add_strategy(a)
    orch.add_strategy(b)

    await orch.run_cycle()

    assert a.deposits == [4]
    # A only took 2, so 8 is left in the wallet
    assert b.deposits == [8]


@pytest.mark.asyncio
async def test_deposit_amount_floored_to_token_precision():
    orch, _, wallet, _ = _setup(debt=5, cash=5)
    a = CurveStrategy("A", flat(100), balance=0.0000005, wallet=wallet)
    orch.add_strategy(a)

    await orch.run_cycle()

    assert a.deposits == [4.999999]


@pytest.mark.asyncio
async def test_deployable_below_dust_is_noop():
    orch, _, wallet, sleeps = _setup(debt=0.5)
    a = CurveStrategy("A", flat(100), wallet=wallet)
    orch.add_strategy(a)

    result = await orch.run_cycle()

    assert result.skipped
    assert result.plan is None
    assert result.operations == []
    assert a.queries == 0
    assert sleeps == []


@pytest.mark.asyncio
async def test_idle_below_dust_not_pulled():
    orch, ledger, _, _ = _setup(idle=0.5)
    result = await orch.run_cycle()

    assert result.skipped
    assert await ledger.total_idle() == 0.5


@pytest.mark.asyncio
async def test_idle_pull_failure_does_not_abort_cycle():
    class PausedVault(PaperVaultLedger):
        async def agent_withdraw(self, amount):
            raise RuntimeError("vault paused")

    orch, _, wallet, _ = _setup(debt=10, idle=5, cash=10, ledger_cls=PausedVault)
    a = CurveStrategy("A", flat(100), wallet=wallet)
    orch.add_strategy(a)

    result = await orch.run_cycle()

    assert "vault paused" in result.idle_pull_error
    assert a.deposits == [10]


@pytest.mark.asyncio
async def test_optimizer_failure_aborts_cycle_before_operations():
    orch, _, wallet, _ = _setup(debt=10, cash=10)
    a = CurveStrategy("A", flat(100), wallet=wallet)
    b = CurveStrategy("B", flat(100), wallet=wallet)
    b.query_error = ConnectionError("rpc down")
    orch.add_strategy(a)
    orch.add_strategy(b)

    with pytest.raises(OptimizerQueryError):
        await orch.run_cycle()

    assert a.deposits == [] and a.withdrawals == []
    assert orch.state == CycleState.IDLE

    # The scheduled path swallows it and releases the lock
    assert await orch.run_if_idle() is True
    assert not orch.is_running


@pytest.mark.asyncio
async def test_balances_mode_deploys_real_total_minus_buffer():
    orch, _, wallet, _ = _setup(debt=0, cash=2, deployable_source="balances")
    a = CurveStrategy("A", flat(100), balance=5, wallet=wallet)
    b = CurveStrategy("B", flat(100), balance=3, wallet=wallet)
    orch.add_strategy(a)
    orch.add_strategy(b)

    result = await orch.run_cycle()

    assert result.deployable_total == 9
    # A takes the whole 9: withdraw B's 3, deposit 4 into A (5 cash available)
    assert b.withdrawals == [3]
    assert a.deposits == [4]


@pytest.mark.asyncio
async def test_operation_timeout_is_isolated():
    orch, _, wallet, _ = _setup(idle=10, timeouts=TimeoutConfig(operation_seconds=0.01))
    a = CurveStrategy("A", flat(5), wallet=wallet)
    a.block = asyncio.Event()
    b = CurveStrategy("B", flat(50), wallet=wallet)
    orch.add_strategy(a)
    orch.add_strategy(b)

    result = await orch.run_cycle()

    assert "timed out" in result.failed_operations[0].error
    assert b.deposits == [5]


@pytest.mark.asyncio
async def test_state_machine_phases():
    orch, _, wallet, _ = _setup(debt=10)
    seen = {}

    class Observed(CurveStrategy):
        async def withdraw(self, amount):
            seen["withdraw"] = orch.state
            return await super().withdraw(amount)

        async def deposit(self, amount):
            seen["deposit"] = orch.state
            return await super().deposit(amount)

    orch.add_strategy(Observed("A", flat(0), balance=10, wallet=wallet))
    orch.add_strategy(Observed("B", flat(100), wallet=wallet))

    await orch.run_cycle()

    assert seen == {"withdraw": CycleState.WITHDRAWING, "deposit": CycleState.DEPOSITING}
    assert orch.state == CycleState.IDLE


@pytest.mark.asyncio
async def test_report_after_cycle():
    orch, ledger, wallet, _ = _setup(idle=10, report_after_cycle=True)
    orch.add_strategy(CurveStrategy("A", flat(100), wallet=wallet))

    result = await orch.run_cycle()

    assert result.report == ReportResult(profit=0.0, loss=0.0)
    assert await ledger.total_debt() == 10


def test_duplicate_strategy_name_rejected():
    orch, _, _, _ = _setup()
    orch.add_strategy(CurveStrategy("A", flat(1)))
    with pytest.raises(ValueError):
        orch.add_strategy(CurveStrategy("A", flat(2)))


@pytest.mark.asyncio
async def test_operation_below_strategy_minimum_not_recorded():
    orch, _, wallet, sleeps = _setup(idle=10)
    big = PaperStrategy("big", wallet, StaticYieldSource(apy=50, tvl=1_000_000),
                        max_debt=9.5, min_operation_amount=1)
    small = PaperStrategy("small", wallet, StaticYieldSource(apy=5, tvl=1000),
                          max_debt=100, min_operation_amount=1)
    orch.add_strategy(big)
    orch.add_strategy(small)

    result = await orch.run_cycle()

    assert [(op.strategy, op.amount, op.success) for op in result.operations] == [("big", 9.5, True)]
    assert sleeps == [5]
    assert await small.get_balance() == 0
    assert await wallet.get_cash_balance() == 0.5


@pytest.mark.asyncio
async def test_run_cycle_refuses_to_overlap():
    orch, _, wallet, _ = _setup(debt=10, cash=10, settle_delay_seconds=0)
    slow = CurveStrategy("slow", flat(100), wallet=wallet)
    slow.block = asyncio.Event()
    orch.add_strategy(slow)

    first = asyncio.create_task(orch.run_cycle())
    await asyncio.wait_for(slow.entered.wait(), 1)

    with pytest.raises(CycleInProgressError):
        await orch.run_cycle()
    assert await orch.run_if_idle() is False

    slow.block.set()
    result = await first
    assert [op.amount for op in result.operations] == [10]
    assert not orch.is_running
