"""Paper strategy — reward-curve venue whose position lives in memory."""

from __future__ import annotations

import structlog

from src.shell.units import from_base_units, to_base_units
from src.strategies.base import RewardCurveStrategy
from src.vault.paper import PaperWallet

log = structlog.get_logger()


class PaperStrategy(RewardCurveStrategy):
    """Moves cash between the paper wallet and an in-memory position."""

    def __init__(self, name: str, wallet: PaperWallet, *args, initial_balance: float = 0.0, **kwargs) -> None:
        super().__init__(name, *args, **kwargs)
        self._wallet = wallet
        self._decimals = wallet.decimals
        self._units = to_base_units(initial_balance, self._decimals)

    async def get_balance(self) -> float:
        return from_base_units(self._units, self._decimals)

    async def _deposit(self, amount: float) -> None:
        units = to_base_units(amount, self._decimals)
        self._wallet.debit(units)
        self._units += units

    async def _withdraw(self, amount: float) -> None:
        # A venue pays out at most what the position holds.
        units = min(to_base_units(amount, self._decimals), self._units)
        self._units -= units
        self._wallet.credit(units)
