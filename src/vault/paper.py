"""Paper vault — simulated ledger and agent wallet.

Balances are kept in integer base units so simulated transfers are exact.
"""

from __future__ import annotations

import uuid

import structlog

from src.shell.contract import AgentWalletBase, TxOutcome, VaultLedgerBase
from src.shell.units import from_base_units, to_base_units

log = structlog.get_logger()


def _paper_tx() -> TxOutcome:
    return TxOutcome(tx_hash=f"paper-{uuid.uuid4().hex[:16]}")


class PaperWallet(AgentWalletBase):
    """Agent custody of the vault token."""

    def __init__(self, decimals: int = 6, initial_cash: float = 0.0) -> None:
        self.decimals = decimals
        self._units = to_base_units(initial_cash, decimals)

    async def get_cash_balance(self) -> float:
        return from_base_units(self._units, self.decimals)

    def credit(self, units: int) -> None:
        self._units += units

    def debit(self, units: int) -> None:
        if units > self._units:
            raise RuntimeError(
                f"Insufficient agent cash: need {units}, have {self._units} base units"
            )
        self._units -= units


class PaperVaultLedger(VaultLedgerBase):
    """Vault bookkeeping: idle funds awaiting pull and debt credited to the agent."""

    def __init__(self, wallet: PaperWallet, initial_idle: float = 0.0, initial_debt: float = 0.0) -> None:
        self._wallet = wallet
        self._decimals = wallet.decimals
        self._idle_units = to_base_units(initial_idle, self._decimals)
        self._debt_units = to_base_units(initial_debt, self._decimals)

    async def total_debt(self) -> float:
        return from_base_units(self._debt_units, self._decimals)

    async def total_idle(self) -> float:
        return from_base_units(self._idle_units, self._decimals)

    async def agent_withdraw(self, amount: float) -> TxOutcome:
        units = to_base_units(amount, self._decimals)
        if units > self._idle_units:
            raise RuntimeError(f"agent_withdraw {amount} exceeds idle {await self.total_idle()}")
        self._idle_units -= units
        self._debt_units += units
        self._wallet.credit(units)
        tx = _paper_tx()
        log.info("paper_vault.agent_withdraw", amount=amount, tx=tx.tx_hash)
        return tx

    async def update_debt(self, profit: float, loss: float) -> TxOutcome:
        self._debt_units += to_base_units(profit, self._decimals)
        self._debt_units -= to_base_units(loss, self._decimals)
        tx = _paper_tx()
        log.info("paper_vault.debt_updated", profit=profit, loss=loss,
                 debt=from_base_units(self._debt_units, self._decimals), tx=tx.tx_hash)
        return tx

    def fund_idle(self, amount: float) -> None:
        """Simulate a user deposit landing in the vault."""
        self._idle_units += to_base_units(amount, self._decimals)
