"""IO Contract — fixed interfaces between the rebalance core and its collaborators.

Strategies, the vault ledger and the agent wallet are consumed ONLY through
these types. The optimizer and orchestrator never introspect an implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


# --- Errors ---

class RebalanceError(Exception):
    """Base class for every failure raised by the rebalance core."""


class OptimizerQueryError(RebalanceError):
    """A strategy failed to answer a capacity/yield/balance query. Cycle-fatal."""


class StrategyOperationError(RebalanceError):
    """A deposit or withdrawal failed. Isolated to that strategy."""


class ReconciliationError(RebalanceError):
    """Profit/loss computation or submission failed. Degrades to a zero report."""


class CycleInProgressError(RebalanceError):
    """A cycle was requested while another one holds the cycle lock."""


class IdlePullError(RebalanceError):
    """Moving idle vault funds into agent custody failed. Logged, cycle continues."""


# --- Enums ---

class CycleState(Enum):
    IDLE = "IDLE"
    PULLING_IDLE = "PULLING_IDLE"
    OPTIMIZING = "OPTIMIZING"
    WITHDRAWING = "WITHDRAWING"
    DEPOSITING = "DEPOSITING"
    REPORTING = "REPORTING"


class OperationKind(Enum):
    WITHDRAW = "WITHDRAW"
    DEPOSIT = "DEPOSIT"


# --- Value types ---

@dataclass(frozen=True)
class LiquidityQuote:
    available_liquidity: float


@dataclass(frozen=True)
class TxOutcome:
    tx_hash: str
    success: bool = True


@dataclass(frozen=True)
class AllocationEntry:
    strategy: "StrategyBase"
    available_liquidity: float
    current_liquidity: float
    minimum_liquidity: float

    @property
    def target_liquidity(self) -> float:
        return self.available_liquidity + self.minimum_liquidity


@dataclass(frozen=True)
class AllocationPlan:
    apy: float
    minimum_liquidity: float
    entries: tuple[AllocationEntry, ...] = ()

    @property
    def total_target(self) -> float:
        return sum(e.target_liquidity for e in self.entries)

    def summary(self) -> list[dict]:
        """Loggable view of the plan (strategy objects replaced by names)."""
        return [
            {
                "strategy": e.strategy.name,
                "available": round(e.available_liquidity, 6),
                "current": round(e.current_liquidity, 6),
                "minimum": round(e.minimum_liquidity, 6),
            }
            for e in self.entries
        ]


@dataclass(frozen=True)
class ReportResult:
    profit: float = 0.0
    loss: float = 0.0


@dataclass
class OperationRecord:
    strategy: str
    kind: OperationKind
    amount: float
    success: bool
    error: str = ""


@dataclass
class CycleResult:
    cycle_id: str
    skipped: bool = False
    deployable_total: float = 0.0
    plan: AllocationPlan | None = None
    operations: list[OperationRecord] = field(default_factory=list)
    report: ReportResult | None = None
    idle_pull_error: str = ""

    @property
    def failed_operations(self) -> list[OperationRecord]:
        return [op for op in self.operations if not op.success]


# --- Strategy Interface ---

class StrategyBase:
    """Capability every yield venue implements.

    Strategies MUST implement every coroutine below. Query methods are
    read-only; deposit() and withdraw() raise StrategyOperationError on
    chain/network failure. Amounts are human token units.
    """

    name: str = ""

    async def get_apy(self) -> float:
        """Current annualized yield in percent. May be cached by the strategy."""
        raise NotImplementedError

    async def get_tvl(self) -> float:
        """Total value locked in the venue. Informational."""
        raise NotImplementedError

    async def get_liquidity_available_at_apy(self, target_apy: float) -> LiquidityQuote:
        """Capital the venue absorbs before its yield compresses to target_apy.

        Must be monotone non-increasing in target_apy.
        """
        raise NotImplementedError

    async def get_balance(self) -> float:
        """Capital currently held by this strategy."""
        raise NotImplementedError

    async def get_minimum_liquidity(self) -> float:
        """Capital this strategy must always retain."""
        raise NotImplementedError

    async def deposit(self, amount: float) -> bool:
        """Move `amount` from the agent wallet into the venue.

        Returns False when nothing was issued (amount below the venue's
        minimum operation). Raises StrategyOperationError on failure.
        """
        raise NotImplementedError

    async def withdraw(self, amount: float) -> bool:
        """Move `amount` back to the agent wallet. Same return contract as deposit()."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


# --- Vault Interfaces ---

class VaultLedgerBase:
    """External bookkeeping of the assets credited to the agent."""

    async def total_debt(self) -> float:
        raise NotImplementedError

    async def total_idle(self) -> float:
        raise NotImplementedError

    async def agent_withdraw(self, amount: float) -> TxOutcome:
        """Pull idle funds into agent custody."""
        raise NotImplementedError

    async def update_debt(self, profit: float, loss: float) -> TxOutcome:
        raise NotImplementedError


class AgentWalletBase:
    """The agent's custodial cash balance."""

    async def get_cash_balance(self) -> float:
        raise NotImplementedError
