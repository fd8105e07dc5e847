"""Vault reconciler: profit/loss booking and degrade-to-zero on failure."""

import pytest

from src.shell.contract import ReportResult
from src.vault.paper import PaperVaultLedger, PaperWallet
from src.vault.reconciler import VaultReconciler
from tests.fakes import CurveStrategy, flat


def _world(debt, cash, balances):
    wallet = PaperWallet(6, initial_cash=cash)
    ledger = PaperVaultLedger(wallet, initial_debt=debt)
    strategies = [CurveStrategy(f"s{i}", flat(0), balance=b) for i, b in enumerate(balances)]
    return ledger, wallet, strategies


@pytest.mark.asyncio
async def test_profit_booked():
    ledger, wallet, strategies = _world(debt=8, cash=2, balances=[5, 3])
    result = await VaultReconciler(strategies, ledger, wallet).report()

    assert result == ReportResult(profit=2.0, loss=0.0)
    assert await ledger.total_debt() == 10


@pytest.mark.asyncio
async def test_loss_booked():
    ledger, wallet, strategies = _world(debt=12, cash=1, balances=[5, 4])
    result = await VaultReconciler(strategies, ledger, wallet).report()

    assert result.profit == 0
    assert result.loss == pytest.approx(2.0)
    assert await ledger.total_debt() == 10


@pytest.mark.asyncio
async def test_balance_failure_degrades_to_zero():
    ledger, wallet, strategies = _world(debt=8, cash=2, balances=[5, 3])
    strategies[1].balance_error = ConnectionError("rpc down")

    result = await VaultReconciler(strategies, ledger, wallet).report()

    assert result == ReportResult()
    assert await ledger.total_debt() == 8


@pytest.mark.asyncio
async def test_submission_failure_degrades_to_zero():
    class RejectingLedger(PaperVaultLedger):
        async def update_debt(self, profit, loss):
            raise RuntimeError("execution reverted")

    wallet = PaperWallet(6, initial_cash=4)
    ledger = RejectingLedger(wallet, initial_debt=1)

    result = await VaultReconciler([], ledger, wallet).report()

    assert result == ReportResult(profit=0.0, loss=0.0)


@pytest.mark.asyncio
async def test_ledger_receives_profit_and_loss():
    from unittest.mock import AsyncMock

    from src.shell.contract import TxOutcome, VaultLedgerBase

    ledger = AsyncMock(spec=VaultLedgerBase)
    ledger.total_debt.return_value = 8.0
    ledger.update_debt.return_value = TxOutcome(tx_hash="0xabc")
    wallet = PaperWallet(6, initial_cash=2)
    strategies = [CurveStrategy("a", flat(0), balance=5), CurveStrategy("b", flat(0), balance=3)]

    result = await VaultReconciler(strategies, ledger, wallet).report()

    assert result == ReportResult(profit=2.0, loss=0.0)
    ledger.update_debt.assert_awaited_once_with(2.0, 0.0)
