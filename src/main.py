"""Yield Router — off-chain rebalance agent.

Main entry point. Wires all components, manages lifecycle, runs the scheduler.

Startup: load config -> connect DB -> build vault + strategies -> orchestrator -> start scheduler
Shutdown: stop scheduler -> wait for in-flight cycle -> close data client -> close DB
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path

import structlog

from src.shell.config import Config, StrategyConfig, load_config
from src.shell.database import Database
from src.shell.journal import CycleJournal
from src.strategies.paper import PaperStrategy
from src.strategies.yield_data import (
    DefiLlamaClient,
    DefiLlamaYieldSource,
    StaticYieldSource,
    YieldSourceBase,
)
from src.utils.logging import setup_logging
from src.vault.orchestrator import RebalanceOrchestrator
from src.vault.paper import PaperVaultLedger, PaperWallet
from src.vault.scheduler import RebalanceScheduler

log = structlog.get_logger()

SHUTDOWN_GRACE_SECONDS = 60


def build_yield_source(cfg: StrategyConfig, client: DefiLlamaClient) -> YieldSourceBase:
    if cfg.defillama_pool:
        return DefiLlamaYieldSource(client, cfg.defillama_pool)
    return StaticYieldSource(apy=cfg.apy, tvl=cfg.tvl)


def build_orchestrator(
    config: Config,
    journal: CycleJournal | None,
    client: DefiLlamaClient,
) -> tuple[RebalanceOrchestrator, PaperVaultLedger, PaperWallet]:
    """Paper ledger + wallet + one PaperStrategy per enabled strategy, in config order."""
    wallet = PaperWallet(config.token_decimals, initial_cash=config.paper.initial_cash)
    ledger = PaperVaultLedger(wallet, initial_idle=config.paper.initial_idle)
    orchestrator = RebalanceOrchestrator(
        ledger, wallet,
        rebalance=config.rebalance,
        timeouts=config.timeouts,
        token_decimals=config.token_decimals,
        journal=journal,
    )
    for cfg in config.enabled_strategies:
        orchestrator.add_strategy(PaperStrategy(
            cfg.name, wallet, build_yield_source(cfg, client),
            min_debt=cfg.min_debt,
            max_debt=cfg.max_debt,
            min_operation_amount=config.rebalance.min_operation_amount,
            cache_seconds=config.data.cache_seconds,
        ))
    return orchestrator, ledger, wallet


class YieldRouter:
    """Main application — owns every component's lifecycle."""

    def __init__(self) -> None:
        self._config: Config | None = None
        self._db: Database | None = None
        self._journal: CycleJournal | None = None
        self._data_client: DefiLlamaClient | None = None
        self._orchestrator: RebalanceOrchestrator | None = None
        self._scheduler: RebalanceScheduler | None = None
        self._running = False

    async def start(self) -> None:
        """Full startup sequence."""
        log.info("router.starting")

        # 1. Config
        self._config = load_config()
        setup_logging(
            self._config.log_level,
            service="yield-router",
            mode=self._config.mode,
            token=self._config.token_symbol,
        )
        log.info("config.loaded", mode=self._config.mode,
                 strategies=[s.name for s in self._config.enabled_strategies])
        if not self._config.enabled_strategies:
            log.warning("router.no_strategies", note="Cycles will pull idle funds but allocate nothing")

        # 2. Database
        self._db = Database(self._config.db_path)
        await self._db.connect()
        self._journal = CycleJournal(self._db)

        # 3. Vault + strategies
        self._data_client = DefiLlamaClient(
            self._config.data.defillama_url, timeout=self._config.data.http_timeout_seconds,
        )
        self._orchestrator, _, _ = build_orchestrator(self._config, self._journal, self._data_client)

        # 4. Scheduler
        self._scheduler = RebalanceScheduler(self._orchestrator)
        self._scheduler.start(self._config.rebalance.interval_hours * 3600)

        self._running = True
        log.info("router.started", mode=self._config.mode,
                 interval_hours=self._config.rebalance.interval_hours)

        # Keep alive
        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("router.stopping")
        self._running = False

        # 1. Stop scheduler
        if self._scheduler:
            self._scheduler.stop()

        # 2. Let an in-flight cycle finish its current operation sequence
        if self._orchestrator and self._orchestrator.is_running:
            log.info("router.waiting_for_cycle", state=self._orchestrator.state.value)
            for _ in range(SHUTDOWN_GRACE_SECONDS):
                if not self._orchestrator.is_running:
                    break
                await asyncio.sleep(1)
            else:
                log.warning("router.cycle_still_running", state=self._orchestrator.state.value)

        # 3. Close yield data client
        if self._data_client:
            await self._data_client.close()

        # 4. Close database
        if self._db:
            await self._db.close()

        log.info("router.stopped")


LOCK_FILE = Path(__file__).resolve().parent.parent / "data" / "router.pid"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # signal 0: existence check only
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def acquire_wallet_lock(lock_file: Path = LOCK_FILE) -> None:
    """Claim the agent wallet for this process.

    One router per agent wallet: a live holder makes this process exit.
    A stale or unreadable lockfile is taken over.
    """
    current_pid = os.getpid()
    holder = None
    if lock_file.exists():
        try:
            holder = int(lock_file.read_text().strip())
        except (ValueError, OSError):
            log.warning("wallet_lock.corrupt", lock_file=str(lock_file))

    if holder is not None and holder != current_pid:
        if _pid_alive(holder):
            log.error("wallet_lock.held", holder_pid=holder, lock_file=str(lock_file))
            raise SystemExit(
                f"Agent wallet is already driven by router PID {holder} ({lock_file}). Exiting."
            )
        log.warning("wallet_lock.stale", holder_pid=holder)

    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_file.write_text(str(current_pid))
    log.info("wallet_lock.acquired", pid=current_pid)


def release_wallet_lock(lock_file: Path = LOCK_FILE) -> None:
    """Drop the wallet claim if this process still holds it."""
    try:
        if lock_file.exists() and lock_file.read_text().strip() == str(os.getpid()):
            lock_file.unlink()
    except OSError as e:
        log.warning("wallet_lock.release_failed", error=str(e))


async def main() -> None:
    acquire_wallet_lock()

    router = YieldRouter()

    # Handle SIGTERM/SIGINT for graceful shutdown
    loop = asyncio.get_running_loop()

    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(router.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await router.start()
    except KeyboardInterrupt:
        pass
    finally:
        if _stop_task is not None:
            await _stop_task
        else:
            await router.stop()
        release_wallet_lock()


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
